"""Signing identities for ledger transactions."""

from arkswap.signing.base import Identity, SignerType, SigningError
from arkswap.signing.local import LocalIdentity
from arkswap.signing.preimage import PreimageRevealingSigner

__all__ = [
    "Identity",
    "LocalIdentity",
    "PreimageRevealingSigner",
    "SignerType",
    "SigningError",
]

"""Local signing backend.

Signs taproot script path inputs with an in-memory secp256k1 key.

WARNING: The private key lives in process memory. Suitable for tests, regtest
and small hot wallets.
"""

import logging
from typing import Optional, Union

from coincurve import PrivateKey
from embit.psbt import PSBT

from arkswap.signing.base import Identity, SignerType, SigningError
from arkswap.tx.psbt import add_tap_script_sig, get_tap_leaf, prevouts, unsigned_tx
from arkswap.tx.sighash import taproot_sighash

logger = logging.getLogger(__name__)


class LocalIdentity(Identity):
    """Identity backed by a private key held in memory."""

    def __init__(self, private_key: Union[PrivateKey, bytes, str, None] = None):
        super().__init__(SignerType.LOCAL)
        if private_key is None:
            private_key = PrivateKey()
        elif isinstance(private_key, str):
            private_key = PrivateKey(bytes.fromhex(private_key))
        elif isinstance(private_key, bytes):
            private_key = PrivateKey(private_key)
        self._key = private_key
        self._compressed = private_key.public_key.format(compressed=True)

    async def x_only_public_key(self) -> bytes:
        return self._compressed[1:]

    async def compressed_public_key(self) -> bytes:
        return self._compressed

    async def sign(self, psbt: PSBT, input_indexes: Optional[list[int]] = None) -> PSBT:
        xonly = self._compressed[1:]
        tx = unsigned_tx(psbt)
        try:
            spent = prevouts(psbt)
        except ValueError as e:
            raise SigningError(str(e)) from e

        indexes = input_indexes if input_indexes is not None else range(len(psbt.inputs))
        signed = 0
        for index in indexes:
            leaf = get_tap_leaf(psbt, index)
            if leaf is None:
                if input_indexes is not None:
                    raise SigningError(f"Input {index} has no tap leaf script")
                continue
            if xonly not in leaf.script:
                if input_indexes is not None:
                    raise SigningError(f"Input {index} does not require our signature")
                continue
            sighash = taproot_sighash(tx, index, spent, leaf_hash=leaf.leaf_hash)
            signature = self._key.sign_schnorr(sighash)
            add_tap_script_sig(psbt, index, xonly, leaf.leaf_hash, signature)
            signed += 1

        logger.debug(f"Signed {signed} inputs with key {xonly.hex()[:16]}")
        return psbt

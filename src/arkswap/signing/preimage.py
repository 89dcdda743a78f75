"""Signer decorator revealing a hash lock preimage."""

from typing import Optional

from embit.psbt import PSBT

from arkswap.signing.base import Identity, SignerType
from arkswap.tx.psbt import get_tap_leaf, set_condition_witness


class PreimageRevealingSigner(Identity):
    """Signs through a wrapped identity, then attaches the preimage.

    Every input that is signed gets the preimage as its condition witness, so
    the claim leaf's HASH160 check can be satisfied at finalization.
    """

    def __init__(self, identity: Identity, preimage: bytes):
        super().__init__(SignerType.DELEGATED)
        self.identity = identity
        self.preimage = preimage

    async def x_only_public_key(self) -> bytes:
        return await self.identity.x_only_public_key()

    async def compressed_public_key(self) -> bytes:
        return await self.identity.compressed_public_key()

    async def sign(self, psbt: PSBT, input_indexes: Optional[list[int]] = None) -> PSBT:
        signed = await self.identity.sign(psbt, input_indexes)
        indexes = input_indexes if input_indexes is not None else range(len(signed.inputs))
        for index in indexes:
            if get_tap_leaf(signed, index) is not None:
                set_condition_witness(signed, index, [self.preimage])
        return signed

    def __repr__(self) -> str:
        return f"PreimageRevealingSigner({self.identity!r})"

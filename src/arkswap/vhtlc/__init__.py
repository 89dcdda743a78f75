"""VHTLC script derivation."""

from typing import Union

from arkswap.vhtlc.address import ArkAddress, hrp_for_network
from arkswap.vhtlc.script import (
    LeafRole,
    RelativeTimelock,
    VHTLCOptions,
    VHTLCScript,
    extract_timelock,
    normalize_key,
)
from arkswap.vhtlc.taproot import NUMS_INTERNAL_KEY, TapLeafScript, TaprootTree


def build_vhtlc(
    network: str,
    preimage_hash: Union[bytes, str],
    receiver: Union[bytes, str],
    sender: Union[bytes, str],
    server: Union[bytes, str],
    refund_locktime: int,
    unilateral_claim_delay: int,
    unilateral_refund_delay: int,
    unilateral_refund_without_receiver_delay: int,
) -> tuple[VHTLCScript, str]:
    """Derive a VHTLC and its Ark address.

    Keys may be x-only (32 bytes) or compressed (33 bytes), as bytes or hex.
    Delays below 512 are block counts, larger values are seconds.
    """
    if isinstance(preimage_hash, str):
        preimage_hash = bytes.fromhex(preimage_hash)
    server_key = normalize_key(server, "server")
    script = VHTLCScript(
        VHTLCOptions(
            sender=normalize_key(sender, "sender"),
            receiver=normalize_key(receiver, "receiver"),
            server=server_key,
            preimage_hash=preimage_hash,
            refund_locktime=refund_locktime,
            unilateral_claim_delay=RelativeTimelock.from_value(unilateral_claim_delay),
            unilateral_refund_delay=RelativeTimelock.from_value(unilateral_refund_delay),
            unilateral_refund_without_receiver_delay=RelativeTimelock.from_value(
                unilateral_refund_without_receiver_delay
            ),
        )
    )
    address = ArkAddress(
        server_pubkey=server_key,
        tweaked_pubkey=script.tweaked_public_key,
        hrp=hrp_for_network(network),
    )
    return script, address.encode()


__all__ = [
    "ArkAddress",
    "LeafRole",
    "NUMS_INTERNAL_KEY",
    "RelativeTimelock",
    "TapLeafScript",
    "TaprootTree",
    "VHTLCOptions",
    "VHTLCScript",
    "build_vhtlc",
    "extract_timelock",
    "normalize_key",
]

"""Claim transactions for the Bitcoin leg of chain swaps.

The counterparty locks coins to a taproot output whose internal key is the
MuSig2 aggregate of its key and ours; the cooperative claim spends it through
the key path with a single aggregated signature.
"""

import math
from typing import Callable, Optional

from embit.script import Script, Witness
from embit.transaction import Transaction, TransactionInput, TransactionOutput

from arkswap.vhtlc.taproot import tap_branch_hash, tap_leaf_hash

# Opt into replace-by-fee
SEQUENCE_RBF = 0xFFFFFFFD
DUMMY_SIGNATURE = b"\x00" * 64


def detect_swap_output(tx: Transaction, tweaked_xonly: bytes) -> Optional[tuple[int, TransactionOutput]]:
    """Find the output paying to ``OP_1 <tweaked key>``."""
    expected = b"\x51\x20" + tweaked_xonly
    for index, out in enumerate(tx.vout):
        if out.script_pubkey.data == expected:
            return index, out
    return None


def construct_claim_transaction(
    lockup_txid: bytes,
    vout: int,
    prevout_value: int,
    destination_script: bytes,
    fee: int,
) -> Transaction:
    """Single-input claim paying ``prevout_value - fee`` to the destination.

    The input carries a 64-byte placeholder witness so size estimates match
    the signed transaction.
    """
    if fee < 0:
        raise ValueError("Fee cannot be negative")
    if fee >= prevout_value:
        raise ValueError(f"Fee {fee} leaves nothing of the {prevout_value} sat output")
    return Transaction(
        version=2,
        vin=[
            TransactionInput(
                lockup_txid, vout, sequence=SEQUENCE_RBF, witness=Witness([DUMMY_SIGNATURE])
            )
        ],
        vout=[TransactionOutput(prevout_value - fee, Script(destination_script))],
        locktime=0,
    )


def _strip_witness(tx: Transaction) -> Transaction:
    return Transaction(
        version=tx.version,
        vin=[TransactionInput(i.txid, i.vout, sequence=i.sequence) for i in tx.vin],
        vout=tx.vout,
        locktime=tx.locktime,
    )


def virtual_size(tx: Transaction) -> int:
    base = len(_strip_witness(tx).serialize())
    total = len(tx.serialize())
    return math.ceil((base * 3 + total) / 4)


def target_fee(sat_per_vbyte: float, construct: Callable[[int], Transaction]) -> int:
    """Fee for ``construct(fee)`` at the given rate, one extra vbyte per input."""
    tx = construct(1)
    return math.ceil((virtual_size(tx) + len(tx.vin)) * sat_per_vbyte)


def set_key_path_witness(tx: Transaction, index: int, signature: bytes) -> None:
    tx.vin[index].witness = Witness([signature])


def swap_tree_merkle_root(leaves: list[tuple[int, bytes]]) -> bytes:
    """Merkle root of the counterparty's (claim, refund) swap tree.

    Leaves are (leaf version, script) pairs.
    """
    if len(leaves) != 2:
        raise ValueError(f"Swap tree must have two leaves, got {len(leaves)}")
    (claim_version, claim_script), (refund_version, refund_script) = leaves
    return tap_branch_hash(
        tap_leaf_hash(claim_script, claim_version), tap_leaf_hash(refund_script, refund_version)
    )

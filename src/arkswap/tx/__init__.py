"""Transaction building for the ledger and the Bitcoin leg."""

from arkswap.tx.batch import build_intent_proof, join_batch
from arkswap.tx.claim import (
    construct_claim_transaction,
    detect_swap_output,
    set_key_path_witness,
    swap_tree_merkle_root,
    target_fee,
    virtual_size,
)
from arkswap.tx.offchain import (
    OffchainTx,
    VirtualInput,
    build_offchain_tx,
    claim_with_offchain_tx,
    refund_with_offchain_tx,
    verify_tapscript_signatures,
)
from arkswap.tx.sighash import taproot_sighash

__all__ = [
    "OffchainTx",
    "VirtualInput",
    "build_intent_proof",
    "build_offchain_tx",
    "claim_with_offchain_tx",
    "construct_claim_transaction",
    "detect_swap_output",
    "join_batch",
    "refund_with_offchain_tx",
    "set_key_path_witness",
    "swap_tree_merkle_root",
    "target_fee",
    "taproot_sighash",
    "verify_tapscript_signatures",
    "virtual_size",
]

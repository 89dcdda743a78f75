"""Tests for Bitcoin claim transaction construction."""

import pytest
from embit.script import Script
from embit.transaction import Transaction, TransactionInput, TransactionOutput

from arkswap.tx.claim import (
    SEQUENCE_RBF,
    construct_claim_transaction,
    detect_swap_output,
    set_key_path_witness,
    swap_tree_merkle_root,
    target_fee,
    virtual_size,
)
from arkswap.vhtlc.taproot import tap_branch_hash, tap_leaf_hash

DESTINATION = b"\x51\x20" + b"\x44" * 32


def _lockup(*scripts: bytes) -> Transaction:
    return Transaction(
        version=2,
        vin=[TransactionInput(b"\x01" * 32, 0)],
        vout=[TransactionOutput(10_000 + i, Script(s)) for i, s in enumerate(scripts)],
    )


class TestDetectSwapOutput:
    """Tests for locating the lockup output."""

    def test_finds_output(self):
        key = b"\x33" * 32
        tx = _lockup(b"\x00\x14" + b"\x11" * 20, b"\x51\x20" + key)
        index, output = detect_swap_output(tx, key)
        assert index == 1
        assert output.value == 10_001

    def test_missing_output(self):
        assert detect_swap_output(_lockup(b"\x51\x20" + b"\x22" * 32), b"\x33" * 32) is None


class TestConstructClaimTransaction:
    """Tests for the single-input claim."""

    def test_structure(self):
        tx = construct_claim_transaction(b"\x01" * 32, 1, 20_000, DESTINATION, 500)
        assert len(tx.vin) == 1
        assert tx.vin[0].vout == 1
        assert tx.vin[0].sequence == SEQUENCE_RBF
        assert tx.vout[0].value == 19_500
        assert tx.vout[0].script_pubkey.data == DESTINATION

    def test_fee_bounds(self):
        with pytest.raises(ValueError):
            construct_claim_transaction(b"\x01" * 32, 0, 20_000, DESTINATION, -1)
        with pytest.raises(ValueError, match="leaves nothing"):
            construct_claim_transaction(b"\x01" * 32, 0, 20_000, DESTINATION, 20_000)

    def test_key_path_witness(self):
        tx = construct_claim_transaction(b"\x01" * 32, 0, 20_000, DESTINATION, 500)
        set_key_path_witness(tx, 0, b"\x07" * 64)
        assert tx.vin[0].witness.items == [b"\x07" * 64]


class TestTargetFee:
    """Tests for fee estimation."""

    def _construct(self, fee: int) -> Transaction:
        return construct_claim_transaction(b"\x01" * 32, 0, 20_000, DESTINATION, fee)

    def test_virtual_size(self):
        # One key path input, one P2TR output
        assert virtual_size(self._construct(1)) == 111

    def test_fee_scales_with_rate(self):
        assert target_fee(1, self._construct) == 112
        assert target_fee(2, self._construct) == 224
        assert target_fee(0.5, self._construct) == 56


class TestSwapTreeMerkleRoot:
    """Tests for the counterparty's two-leaf swap tree."""

    def test_root(self):
        claim, refund = b"\x51", b"\x52"
        root = swap_tree_merkle_root([(0xC0, claim), (0xC0, refund)])
        assert root == tap_branch_hash(tap_leaf_hash(claim, 0xC0), tap_leaf_hash(refund, 0xC0))

    def test_requires_two_leaves(self):
        with pytest.raises(ValueError):
            swap_tree_merkle_root([(0xC0, b"\x51")])

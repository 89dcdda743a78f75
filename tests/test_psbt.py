"""Tests for ledger PSBT fields."""

from coincurve import PrivateKey
from embit.psbt import PSBT
from embit.script import Script
from embit.transaction import Transaction, TransactionInput, TransactionOutput

from arkswap.tx.psbt import (
    CONDITION_WITNESS_KEY,
    add_tap_script_sig,
    combine_tapscript_sigs,
    get_condition_witness,
    get_tap_leaf,
    get_tap_script_sigs,
    get_tap_tree,
    new_psbt,
    psbt_from_base64,
    psbt_to_base64,
    set_condition_witness,
    set_tap_leaf,
    set_tap_tree,
)
from arkswap.vhtlc.taproot import TaprootTree, write_compact


def _tx() -> Transaction:
    return Transaction(
        version=2,
        vin=[TransactionInput(b"\x01" * 32, 0), TransactionInput(b"\x02" * 32, 1)],
        vout=[TransactionOutput(1000, Script(b"\x51\x20" + b"\x22" * 32))],
    )


def _xonly() -> bytes:
    return PrivateKey().public_key.format(compressed=True)[1:]


def _reparse(psbt: PSBT) -> PSBT:
    return psbt_from_base64(psbt_to_base64(psbt))


class TestFreshFields:
    """Tests that PSBTs built from transactions never share field storage."""

    def test_inputs_do_not_share_unknowns(self):
        first = new_psbt(_tx())
        set_condition_witness(first, 0, [b"\x07" * 32])
        second = new_psbt(_tx())
        assert get_condition_witness(second, 0) == []
        assert get_condition_witness(first, 1) == []

    def test_plain_construction_still_works(self):
        psbt = new_psbt(_tx())
        set_condition_witness(psbt, 0, [b"\x07" * 32])
        set_condition_witness(psbt, 1, [b"\x08" * 32])
        # A shared default would now hold the key and fail to re-parse
        assert PSBT(_tx()).inputs[0].unknown == {}


class TestTapLeaf:
    """Tests for the BIP-371 leaf script field."""

    def test_stored_as_native_field(self):
        leaf = TaprootTree([b"\x51", b"\x52"]).leaf(0)
        psbt = new_psbt(_tx())
        set_tap_leaf(psbt, 0, leaf)

        assert psbt.inputs[0].taproot_scripts == {leaf.control_block: b"\x51\xc0"}
        assert psbt.inputs[0].unknown == {}
        raw = psbt.serialize()
        key = b"\x15" + leaf.control_block
        assert write_compact(len(key)) + key in raw

    def test_survives_base64(self):
        leaf = TaprootTree([b"\x51", b"\x52", b"\x53"]).leaf(2)
        psbt = new_psbt(_tx())
        set_tap_leaf(psbt, 1, leaf)

        parsed = _reparse(psbt)
        assert get_tap_leaf(parsed, 1) == leaf
        assert get_tap_leaf(parsed, 0) is None


class TestTapScriptSigs:
    """Tests for the BIP-371 script path signature field."""

    def test_stored_as_native_field(self):
        psbt = new_psbt(_tx())
        xonly, leaf_hash = _xonly(), b"\x33" * 32
        add_tap_script_sig(psbt, 0, xonly, leaf_hash, b"\x44" * 64)

        assert len(psbt.inputs[0].taproot_sigs) == 1
        assert get_tap_script_sigs(psbt, 0) == {(xonly, leaf_hash): b"\x44" * 64}
        assert b"\x14" + xonly + leaf_hash in psbt.serialize()

    def test_survives_base64(self):
        psbt = new_psbt(_tx())
        first, second = _xonly(), _xonly()
        add_tap_script_sig(psbt, 1, first, b"\x33" * 32, b"\x44" * 64)
        add_tap_script_sig(psbt, 1, second, b"\x33" * 32, b"\x55" * 64)

        sigs = get_tap_script_sigs(_reparse(psbt), 1)
        assert sigs == {
            (first, b"\x33" * 32): b"\x44" * 64,
            (second, b"\x33" * 32): b"\x55" * 64,
        }

    def test_combine(self):
        ours, theirs = new_psbt(_tx()), new_psbt(_tx())
        mine, server = _xonly(), _xonly()
        add_tap_script_sig(ours, 0, mine, b"\x33" * 32, b"\x44" * 64)
        add_tap_script_sig(theirs, 0, server, b"\x33" * 32, b"\x55" * 64)

        combined = combine_tapscript_sigs(ours, _reparse(theirs))
        assert set(get_tap_script_sigs(combined, 0)) == {
            (mine, b"\x33" * 32),
            (server, b"\x33" * 32),
        }


class TestArkFields:
    """Tests for the condition witness and tap tree unknown fields."""

    def test_condition_witness(self):
        psbt = new_psbt(_tx())
        items = [b"\x07" * 32, b"\x08" * 300]
        set_condition_witness(psbt, 0, items)

        parsed = _reparse(psbt)
        assert get_condition_witness(parsed, 0) == items
        assert CONDITION_WITNESS_KEY in parsed.inputs[0].unknown

    def test_tap_tree(self):
        tree = TaprootTree([b"\x51", b"\x52", b"\x53", b"\x54" * 10])
        psbt = new_psbt(_tx())
        set_tap_tree(psbt, 0, tree)

        scripts = get_tap_tree(_reparse(psbt), 0)
        assert sorted(scripts) == sorted(tree.leaves)
        assert get_tap_tree(psbt, 1) == []

    def test_depth_first_is_complete_tree(self):
        tree = TaprootTree([bytes([0x51 + i]) for i in range(6)])
        entries = tree.depth_first()
        assert len(entries) == 6
        assert sum(2 ** -depth for depth, _ in entries) == 1

"""PSBT field helpers for ledger transactions.

The leaf being spent and the tapscript signatures use the BIP-371 input
fields. Two ledger specific values travel as unknown input fields under the
Ark key type: the condition witness (the preimage of a hash lock) and the
taproot tree of the spent coin.
"""

from typing import Optional

from embit import ec
from embit.psbt import PSBT
from embit.script import Script
from embit.transaction import Transaction, TransactionOutput

from arkswap.vhtlc.taproot import TAPROOT_LEAF_VERSION, TapLeafScript, TaprootTree, write_compact

ARK_FIELD_TYPE = 0xDE
CONDITION_WITNESS_KEY = bytes([ARK_FIELD_TYPE]) + b"condition"
TAP_TREE_KEY = bytes([ARK_FIELD_TYPE]) + b"taptree"


def new_psbt(tx: Transaction) -> PSBT:
    psbt = PSBT(tx)
    # embit's scopes default to one shared unknown dict
    psbt.unknown = {}
    for scope in psbt.inputs + psbt.outputs:
        scope.unknown = {}
    return psbt


def psbt_to_base64(psbt: PSBT) -> str:
    return psbt.to_base64()


def psbt_from_base64(data: str) -> PSBT:
    return PSBT.from_base64(data)


def unsigned_tx(psbt: PSBT) -> Transaction:
    return psbt.tx


def set_witness_utxo(psbt: PSBT, index: int, value: int, pk_script: bytes) -> None:
    psbt.inputs[index].witness_utxo = TransactionOutput(value, Script(pk_script))


def prevouts(psbt: PSBT) -> list[TransactionOutput]:
    outs = []
    for i, inp in enumerate(psbt.inputs):
        if inp.witness_utxo is None:
            raise ValueError(f"Input {i} has no witness utxo")
        outs.append(inp.witness_utxo)
    return outs


def set_tap_leaf(psbt: PSBT, index: int, leaf: TapLeafScript) -> None:
    psbt.inputs[index].taproot_scripts[leaf.control_block] = leaf.script + bytes([leaf.leaf_version])


def get_tap_leaf(psbt: PSBT, index: int) -> Optional[TapLeafScript]:
    for control_block, value in psbt.inputs[index].taproot_scripts.items():
        return TapLeafScript(script=value[:-1], control_block=control_block)
    return None


def _read_compact(data: bytes, pos: int) -> tuple[int, int]:
    first = data[pos]
    if first < 0xFD:
        return first, pos + 1
    width = {0xFD: 2, 0xFE: 4, 0xFF: 8}[first]
    return int.from_bytes(data[pos + 1:pos + 1 + width], "little"), pos + 1 + width


def set_condition_witness(psbt: PSBT, index: int, items: list[bytes]) -> None:
    data = write_compact(len(items)) + b"".join(write_compact(len(i)) + i for i in items)
    psbt.inputs[index].unknown[CONDITION_WITNESS_KEY] = data


def get_condition_witness(psbt: PSBT, index: int) -> list[bytes]:
    data = psbt.inputs[index].unknown.get(CONDITION_WITNESS_KEY)
    if not data:
        return []
    count, pos = _read_compact(data, 0)
    items = []
    for _ in range(count):
        size, pos = _read_compact(data, pos)
        items.append(data[pos:pos + size])
        pos += size
    return items


def set_tap_tree(psbt: PSBT, index: int, tree: TaprootTree) -> None:
    """Record the spent coin's script tree as (depth, leaf version, script) entries."""
    data = b"".join(
        bytes([depth, TAPROOT_LEAF_VERSION]) + write_compact(len(script)) + script
        for depth, script in tree.depth_first()
    )
    psbt.inputs[index].unknown[TAP_TREE_KEY] = data


def get_tap_tree(psbt: PSBT, index: int) -> list[bytes]:
    """Leaf scripts of the recorded tree, depth-first."""
    data = psbt.inputs[index].unknown.get(TAP_TREE_KEY, b"")
    scripts, pos = [], 0
    while pos < len(data):
        size, pos = _read_compact(data, pos + 2)
        scripts.append(data[pos:pos + size])
        pos += size
    return scripts


def add_tap_script_sig(
    psbt: PSBT, index: int, xonly: bytes, leaf_hash: bytes, signature: bytes
) -> None:
    psbt.inputs[index].taproot_sigs[(ec.PublicKey.from_xonly(xonly), leaf_hash)] = signature


def get_tap_script_sigs(psbt: PSBT, index: int) -> dict[tuple[bytes, bytes], bytes]:
    """Signatures of an input keyed by (x-only key, leaf hash)."""
    return {
        (pub.xonly(), leaf_hash): sig
        for (pub, leaf_hash), sig in psbt.inputs[index].taproot_sigs.items()
    }


def combine_tapscript_sigs(target: PSBT, source: PSBT) -> PSBT:
    """Copy every tapscript signature of source into target, input by input."""
    if len(target.inputs) != len(source.inputs):
        raise ValueError("Cannot combine PSBTs with different inputs")
    if unsigned_tx(target).txid() != unsigned_tx(source).txid():
        raise ValueError("Cannot combine PSBTs of different transactions")
    for index in range(len(source.inputs)):
        for (xonly, leaf_hash), sig in get_tap_script_sigs(source, index).items():
            add_tap_script_sig(target, index, xonly, leaf_hash, sig)
    return target

"""Offchain Ark transactions with checkpoints.

Spending a virtual coin directly takes two layers: a checkpoint transaction
per input, which moves the coin under a tree of (spending leaf, server unroll
script), and the Ark transaction that spends the checkpoint outputs to the
destination. The server co-signs both; the client finalizes the checkpoints
once the server has accepted the Ark transaction.
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from coincurve import PublicKeyXOnly
from embit.psbt import PSBT
from embit.script import Script
from embit.transaction import Transaction, TransactionInput, TransactionOutput

from arkswap.ark.base import ArkInfo, ArkProvider
from arkswap.errors import SwapError
from arkswap.signing.base import Identity
from arkswap.tx.psbt import (
    combine_tapscript_sigs,
    get_tap_leaf,
    get_tap_script_sigs,
    new_psbt,
    prevouts,
    psbt_from_base64,
    psbt_to_base64,
    set_tap_leaf,
    set_tap_tree,
    set_witness_utxo,
    unsigned_tx,
)
from arkswap.tx.sighash import taproot_sighash
from arkswap.vhtlc.script import (
    OP_CHECKLOCKTIMEVERIFY,
    OP_CHECKSEQUENCEVERIFY,
    iter_script,
    normalize_key,
    read_script_number,
)
from arkswap.vhtlc.taproot import TapLeafScript, TaprootTree

logger = logging.getLogger(__name__)

TX_VERSION = 3
# Pay-to-anchor output, lets anyone CPFP the unrolled transaction
ANCHOR_PK_SCRIPT = bytes.fromhex("51024e73")
ANCHOR_VALUE = 0

SEQUENCE_FINAL = 0xFFFFFFFF
SEQUENCE_LOCKTIME_ENABLED = 0xFFFFFFFE

RefundFunc = Callable[[str, str, str], Awaitable[tuple[str, str]]]


@dataclass
class VirtualInput:
    """A coin to spend through one of its tap leaves.

    Attributes:
        txid: Hex txid of the coin
        vout: Output index of the coin
        value: Amount in sats
        pk_script: Output script locking the coin
        tap_leaf: Leaf used to spend it, with control block
        tap_tree: Full script tree of the coin, when known
    """

    txid: str
    vout: int
    value: int
    pk_script: bytes
    tap_leaf: TapLeafScript
    tap_tree: Optional[TaprootTree] = None

    @property
    def sequence(self) -> int:
        for op, data in _timelock_ops(self.tap_leaf.script):
            if op == OP_CHECKSEQUENCEVERIFY:
                return read_script_number(*data)
            if op == OP_CHECKLOCKTIMEVERIFY:
                return SEQUENCE_LOCKTIME_ENABLED
        return SEQUENCE_FINAL

    @property
    def locktime(self) -> int:
        for op, data in _timelock_ops(self.tap_leaf.script):
            if op == OP_CHECKLOCKTIMEVERIFY:
                return read_script_number(*data)
        return 0


def _timelock_ops(script: bytes):
    ops = list(iter_script(script))
    for i in range(1, len(ops)):
        if ops[i][0] in (OP_CHECKSEQUENCEVERIFY, OP_CHECKLOCKTIMEVERIFY):
            yield ops[i][0], ops[i - 1]


def anchor_output() -> TransactionOutput:
    return TransactionOutput(ANCHOR_VALUE, Script(ANCHOR_PK_SCRIPT))


def _spend_psbt(inputs: list[VirtualInput], outputs: list[TransactionOutput]) -> PSBT:
    tx = Transaction(
        version=TX_VERSION,
        vin=[
            TransactionInput(bytes.fromhex(inp.txid), inp.vout, sequence=inp.sequence)
            for inp in inputs
        ],
        vout=list(outputs),
        locktime=max((inp.locktime for inp in inputs), default=0),
    )
    psbt = new_psbt(tx)
    for index, inp in enumerate(inputs):
        set_witness_utxo(psbt, index, inp.value, inp.pk_script)
        set_tap_leaf(psbt, index, inp.tap_leaf)
        if inp.tap_tree is not None:
            set_tap_tree(psbt, index, inp.tap_tree)
    return psbt


@dataclass
class OffchainTx:
    ark_tx: PSBT
    checkpoints: list[PSBT]


def build_offchain_tx(
    inputs: list[VirtualInput],
    outputs: list[TransactionOutput],
    server_unroll_script: bytes,
) -> OffchainTx:
    """Build the Ark transaction and one checkpoint per input."""
    if not inputs:
        raise ValueError("Offchain transaction needs at least one input")

    checkpoints = []
    checkpoint_inputs = []
    for inp in inputs:
        tree = TaprootTree([inp.tap_leaf.script, server_unroll_script])
        checkpoint = _spend_psbt(
            [inp],
            [TransactionOutput(inp.value, Script(tree.pk_script)), anchor_output()],
        )
        checkpoints.append(checkpoint)
        checkpoint_inputs.append(
            VirtualInput(
                txid=unsigned_tx(checkpoint).txid().hex(),
                vout=0,
                value=inp.value,
                pk_script=tree.pk_script,
                tap_leaf=tree.leaf(0),
                tap_tree=tree,
            )
        )

    ark_tx = _spend_psbt(checkpoint_inputs, list(outputs) + [anchor_output()])
    return OffchainTx(ark_tx=ark_tx, checkpoints=checkpoints)


def verify_tapscript_signatures(psbt: PSBT, xonly_keys: list[bytes]) -> bool:
    """Check that every input carries a valid signature from every key.

    Each input must have a witness utxo and a tap leaf; signatures are checked
    against the BIP-341 script path sighash of that leaf.
    """
    tx = unsigned_tx(psbt)
    try:
        spent = prevouts(psbt)
    except ValueError:
        return False
    for index in range(len(psbt.inputs)):
        leaf = get_tap_leaf(psbt, index)
        if leaf is None:
            return False
        sigs = get_tap_script_sigs(psbt, index)
        sighash = taproot_sighash(tx, index, spent, leaf_hash=leaf.leaf_hash)
        for key in xonly_keys:
            sig = sigs.get((key, leaf.leaf_hash))
            if sig is None or not PublicKeyXOnly(key).verify(sig[:64], sighash):
                logger.debug(f"Missing or invalid signature of {key.hex()} on input {index}")
                return False
    return True


async def claim_with_offchain_tx(
    ark_provider: ArkProvider,
    identity: Identity,
    vtxo_input: VirtualInput,
    output: TransactionOutput,
    ark_info: ArkInfo,
) -> str:
    """Spend a coin offchain, signing with ``identity`` (usually preimage revealing).

    Returns:
        The Ark txid
    """
    offchain = build_offchain_tx(
        [vtxo_input], [output], bytes.fromhex(ark_info.checkpoint_tapscript)
    )
    signed_ark_tx = await identity.sign(offchain.ark_tx)
    result = await ark_provider.submit_tx(
        psbt_to_base64(signed_ark_tx),
        [psbt_to_base64(checkpoint) for checkpoint in offchain.checkpoints],
    )

    server_key = normalize_key(ark_info.signer_pubkey, "server")
    final_ark_tx = psbt_from_base64(result.final_ark_tx)
    if not verify_tapscript_signatures(final_ark_tx, [server_key]):
        raise SwapError("Invalid final Ark transaction")

    signed_checkpoints = []
    for checkpoint in result.signed_checkpoint_txs:
        signed = await identity.sign(psbt_from_base64(checkpoint), [0])
        signed_checkpoints.append(psbt_to_base64(signed))

    await ark_provider.finalize_tx(result.ark_txid, signed_checkpoints)
    logger.info(f"Offchain claim finalized: {result.ark_txid}")
    return result.ark_txid


async def refund_with_offchain_tx(
    swap_id: str,
    ark_provider: ArkProvider,
    identity: Identity,
    counterparty_pubkey: bytes,
    vtxo_input: VirtualInput,
    output: TransactionOutput,
    ark_info: ArkInfo,
    refund_func: RefundFunc,
) -> str:
    """Spend a coin through the cooperative refund leaf.

    The counterparty signs first through ``refund_func(swap_id, ark_tx,
    checkpoint)``, then we add our signatures and submit to the server.

    Returns:
        The Ark txid
    """
    counterparty_key = normalize_key(counterparty_pubkey, "receiver")
    server_key = normalize_key(ark_info.signer_pubkey, "server")
    our_key = await identity.x_only_public_key()

    offchain = build_offchain_tx(
        [vtxo_input], [output], bytes.fromhex(ark_info.checkpoint_tapscript)
    )
    if len(offchain.checkpoints) != 1:
        raise SwapError(f"Expected one checkpoint transaction, got {len(offchain.checkpoints)}")
    unsigned_ark_tx = psbt_to_base64(offchain.ark_tx)
    unsigned_checkpoint = psbt_to_base64(offchain.checkpoints[0])

    counterparty_tx_b64, counterparty_checkpoint_b64 = await refund_func(
        swap_id, unsigned_ark_tx, unsigned_checkpoint
    )
    counterparty_tx = psbt_from_base64(counterparty_tx_b64)
    counterparty_checkpoint = psbt_from_base64(counterparty_checkpoint_b64)
    if not verify_tapscript_signatures(counterparty_tx, [counterparty_key]):
        raise SwapError("Invalid counterparty signature on refund transaction")
    if not verify_tapscript_signatures(counterparty_checkpoint, [counterparty_key]):
        raise SwapError("Invalid counterparty signature on refund checkpoint")

    signed_tx = await identity.sign(psbt_from_base64(unsigned_ark_tx))
    combine_tapscript_sigs(signed_tx, counterparty_tx)
    signed_checkpoint = await identity.sign(psbt_from_base64(unsigned_checkpoint))
    combine_tapscript_sigs(signed_checkpoint, counterparty_checkpoint)

    result = await ark_provider.submit_tx(psbt_to_base64(signed_tx), [unsigned_checkpoint])

    final_ark_tx = psbt_from_base64(result.final_ark_tx)
    if not verify_tapscript_signatures(final_ark_tx, [our_key, counterparty_key, server_key]):
        raise SwapError("Invalid final Ark transaction")
    if len(result.signed_checkpoint_txs) != 1:
        raise SwapError(
            f"Expected one signed checkpoint transaction, got {len(result.signed_checkpoint_txs)}"
        )

    server_checkpoint = psbt_from_base64(result.signed_checkpoint_txs[0])
    combine_tapscript_sigs(server_checkpoint, signed_checkpoint)
    await ark_provider.finalize_tx(result.ark_txid, [psbt_to_base64(server_checkpoint)])
    logger.info(f"Offchain refund finalized for swap {swap_id}: {result.ark_txid}")
    return result.ark_txid

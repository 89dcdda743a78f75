"""Settling a virtual coin through a ledger batch.

Coins the server has already swept can only move by joining a batch: the
client registers a signed intent, confirms when the batch picks it up and, for
coins that are not recoverable, signs a forfeit transaction.
"""

import hashlib
import json
import logging

from embit.psbt import PSBT
from embit.script import Script, address_to_scriptpubkey
from embit.transaction import Transaction, TransactionInput, TransactionOutput

from arkswap.ark.base import (
    ArkInfo,
    ArkProvider,
    BatchFailedEvent,
    BatchFinalizationEvent,
    BatchFinalizedEvent,
    BatchStartedEvent,
)
from arkswap.errors import SwapError
from arkswap.signing.base import Identity
from arkswap.tx.offchain import VirtualInput, anchor_output
from arkswap.tx.psbt import new_psbt, psbt_to_base64, set_tap_leaf, set_tap_tree, set_witness_utxo
from arkswap.vhtlc.taproot import tagged_hash

logger = logging.getLogger(__name__)

OP_RETURN_SCRIPT = b"\x6a"


def register_message() -> str:
    return json.dumps(
        {
            "type": "register",
            "onchain_output_indexes": [],
            "valid_at": 0,
            "expire_at": 0,
            "cosigners_public_keys": [],
        }
    )


def delete_message() -> str:
    return json.dumps({"type": "delete", "expire_at": 0})


def build_intent_proof(
    inputs: list[VirtualInput], outputs: list[TransactionOutput], message: str
) -> PSBT:
    """BIP-322 style proof of ownership committing to ``message``.

    Input 0 spends a virtual "to_spend" transaction bound to the message hash;
    the remaining inputs are the coins themselves.
    """
    msg_hash = tagged_hash("BIP0322-signed-message", message.encode())
    first = inputs[0]
    to_spend = Transaction(
        version=0,
        vin=[
            TransactionInput(
                b"\x00" * 32, 0xFFFFFFFF, script_sig=Script(b"\x00\x20" + msg_hash), sequence=0
            )
        ],
        vout=[TransactionOutput(0, Script(first.pk_script))],
        locktime=0,
    )
    proof_inputs = [
        VirtualInput(
            txid=to_spend.txid().hex(),
            vout=0,
            value=0,
            pk_script=first.pk_script,
            tap_leaf=first.tap_leaf,
            tap_tree=first.tap_tree,
        )
    ] + list(inputs)

    tx = Transaction(
        version=2,
        vin=[
            TransactionInput(bytes.fromhex(inp.txid), inp.vout, sequence=inp.sequence)
            for inp in proof_inputs
        ],
        vout=list(outputs) or [TransactionOutput(0, Script(OP_RETURN_SCRIPT))],
        locktime=max(inp.locktime for inp in inputs),
    )
    psbt = new_psbt(tx)
    for index, inp in enumerate(proof_inputs):
        set_witness_utxo(psbt, index, inp.value, inp.pk_script)
        set_tap_leaf(psbt, index, inp.tap_leaf)
        if inp.tap_tree is not None:
            set_tap_tree(psbt, index, inp.tap_tree)
    return psbt


def build_forfeit_tx(
    vtxo_input: VirtualInput,
    connector: TransactionOutput,
    connector_txid: str,
    connector_vout: int,
    forfeit_address: str,
) -> PSBT:
    """Forfeit the coin to the server in exchange for the batch output."""
    forfeit_script = address_to_scriptpubkey(forfeit_address)
    tx = Transaction(
        version=3,
        vin=[
            TransactionInput(
                bytes.fromhex(vtxo_input.txid), vtxo_input.vout, sequence=vtxo_input.sequence
            ),
            TransactionInput(bytes.fromhex(connector_txid), connector_vout),
        ],
        vout=[
            TransactionOutput(vtxo_input.value + connector.value, forfeit_script),
            anchor_output(),
        ],
        locktime=vtxo_input.locktime,
    )
    psbt = new_psbt(tx)
    set_witness_utxo(psbt, 0, vtxo_input.value, vtxo_input.pk_script)
    set_tap_leaf(psbt, 0, vtxo_input.tap_leaf)
    if vtxo_input.tap_tree is not None:
        set_tap_tree(psbt, 0, vtxo_input.tap_tree)
    psbt.inputs[1].witness_utxo = connector
    return psbt


def intent_id_hash(intent_id: str) -> str:
    return hashlib.sha256(intent_id.encode()).hexdigest()


async def join_batch(
    ark_provider: ArkProvider,
    identity: Identity,
    vtxo_input: VirtualInput,
    output: TransactionOutput,
    ark_info: ArkInfo,
    is_recoverable: bool = True,
) -> str:
    """Move a coin to ``output`` through the next batch.

    Returns:
        The commitment txid of the batch

    Raises:
        SwapError: If the batch fails or the event stream ends early
    """
    register = register_message()
    register_proof = await identity.sign(build_intent_proof([vtxo_input], [output], register))
    delete = delete_message()
    delete_proof = await identity.sign(build_intent_proof([vtxo_input], [], delete))

    intent_id = await ark_provider.register_intent(register, psbt_to_base64(register_proof))
    logger.info(f"Registered batch intent {intent_id} for {vtxo_input.txid}:{vtxo_input.vout}")

    try:
        expected_hash = intent_id_hash(intent_id)
        topics = [f"{vtxo_input.txid}:{vtxo_input.vout}"]
        async for event in ark_provider.get_event_stream(topics):
            if isinstance(event, BatchStartedEvent):
                if expected_hash in event.intent_id_hashes:
                    await ark_provider.confirm_registration(intent_id)
                    logger.debug(f"Confirmed intent {intent_id} in batch {event.id}")
            elif isinstance(event, BatchFinalizationEvent):
                if is_recoverable:
                    continue
                if not event.connectors:
                    raise SwapError("Batch finalization has no connector for the forfeit")
                connector = event.connectors[0]
                forfeit = build_forfeit_tx(
                    vtxo_input,
                    TransactionOutput(connector.value, Script(bytes.fromhex(connector.script))),
                    connector.txid,
                    connector.vout,
                    ark_info.forfeit_address,
                )
                signed = await identity.sign(forfeit, [0])
                await ark_provider.submit_signed_forfeit_txs([psbt_to_base64(signed)])
            elif isinstance(event, BatchFinalizedEvent):
                logger.info(f"Batch {event.id} finalized: {event.commitment_txid}")
                return event.commitment_txid
            elif isinstance(event, BatchFailedEvent):
                raise SwapError(f"Batch {event.id} failed: {event.reason}")
        raise SwapError("Batch event stream ended before finalization")
    except Exception:
        try:
            await ark_provider.delete_intent(delete, psbt_to_base64(delete_proof))
        except Exception as e:
            logger.error(f"Failed to delete intent {intent_id}: {e}")
        raise

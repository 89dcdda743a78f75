"""Tests for offchain claims, refunds and batch settlement."""

import hashlib

import pytest
from embit.script import Script
from embit.transaction import TransactionOutput

from arkswap.ark.base import BatchFailedEvent, BatchStartedEvent
from arkswap.errors import SwapError
from arkswap.signing import LocalIdentity
from arkswap.signing.preimage import PreimageRevealingSigner
from arkswap.tx.batch import intent_id_hash, join_batch
from arkswap.tx.offchain import (
    ANCHOR_PK_SCRIPT,
    SEQUENCE_FINAL,
    TX_VERSION,
    VirtualInput,
    build_offchain_tx,
    claim_with_offchain_tx,
    refund_with_offchain_tx,
    verify_tapscript_signatures,
)
from arkswap.tx.psbt import get_condition_witness, get_tap_tree, psbt_from_base64, unsigned_tx
from arkswap.vhtlc import LeafRole, build_vhtlc

from conftest import FakeArkProvider


def _vhtlc(preimage_hash, receiver: LocalIdentity, sender: LocalIdentity, server: LocalIdentity):
    script, _ = build_vhtlc(
        "regtest",
        preimage_hash,
        receiver=receiver._compressed,
        sender=sender._compressed,
        server=server._compressed,
        refund_locktime=800,
        unilateral_claim_delay=10,
        unilateral_refund_delay=20,
        unilateral_refund_without_receiver_delay=30,
    )
    return script


def _input(script, leaf, value=5000) -> VirtualInput:
    return VirtualInput("ab" * 32, 0, value, script.pk_script, leaf)


def _output(identity: LocalIdentity, value=5000) -> TransactionOutput:
    return TransactionOutput(value, Script(b"\x51\x20" + identity._compressed[1:]))


class TestBuildOffchainTx:
    """Tests for checkpoint and Ark transaction construction."""

    def test_one_checkpoint_per_input(self, preimage_hash, user_identity, server_identity):
        script = _vhtlc(preimage_hash, user_identity, LocalIdentity(), server_identity)
        offchain = build_offchain_tx(
            [_input(script, script.claim())], [_output(user_identity)], b"\x51"
        )
        assert len(offchain.checkpoints) == 1
        ark_tx = unsigned_tx(offchain.ark_tx)
        checkpoint = unsigned_tx(offchain.checkpoints[0])
        assert ark_tx.version == TX_VERSION
        assert ark_tx.vin[0].txid == checkpoint.txid()
        assert ark_tx.vout[-1].script_pubkey.data == ANCHOR_PK_SCRIPT
        assert checkpoint.vout[0].value == 5000
        assert sorted(get_tap_tree(offchain.ark_tx, 0)) == sorted([script.claim().script, b"\x51"])

    def test_sequence_follows_leaf(self, preimage_hash, user_identity, server_identity):
        script = _vhtlc(preimage_hash, user_identity, LocalIdentity(), server_identity)
        assert _input(script, script.claim()).sequence == SEQUENCE_FINAL
        assert _input(script, script.leaf(LeafRole.UNILATERAL_CLAIM)).sequence == 10
        assert _input(script, script.refund_without_receiver()).locktime == 800

    def test_requires_input(self, user_identity):
        with pytest.raises(ValueError):
            build_offchain_tx([], [_output(user_identity)], b"\x51")


class TestClaimWithOffchainTx:
    """Tests for spending through the claim leaf."""

    @pytest.mark.asyncio
    async def test_claim(self, preimage, preimage_hash, user_identity, server_identity, ark_provider):
        script = _vhtlc(preimage_hash, user_identity, LocalIdentity(), server_identity)
        ark_info = await ark_provider.get_info()

        txid = await claim_with_offchain_tx(
            ark_provider,
            PreimageRevealingSigner(user_identity, preimage),
            _input(script, script.claim()),
            _output(user_identity),
            ark_info,
        )

        assert len(ark_provider.finalized) == 1
        finalized_txid, checkpoints = ark_provider.finalized[0]
        assert finalized_txid == txid
        checkpoint = psbt_from_base64(checkpoints[0])
        assert verify_tapscript_signatures(
            checkpoint, [user_identity._compressed[1:], server_identity._compressed[1:]]
        )
        assert get_condition_witness(checkpoint, 0) == [preimage]

    @pytest.mark.asyncio
    async def test_server_signature_checked(self, preimage, preimage_hash, user_identity, server_identity):
        """Test a server that signs with the wrong key is rejected."""
        impostor = FakeArkProvider(LocalIdentity())
        ark_info = await FakeArkProvider(server_identity).get_info()
        script = _vhtlc(preimage_hash, user_identity, LocalIdentity(), server_identity)

        with pytest.raises(SwapError, match="Invalid final Ark transaction"):
            await claim_with_offchain_tx(
                impostor,
                PreimageRevealingSigner(user_identity, preimage),
                _input(script, script.claim()),
                _output(user_identity),
                ark_info,
            )
        assert impostor.finalized == []


class TestRefundWithOffchainTx:
    """Tests for the cooperative refund leaf."""

    @pytest.mark.asyncio
    async def test_refund(self, preimage_hash, user_identity, server_identity, ark_provider, swap_provider):
        script = _vhtlc(preimage_hash, swap_provider.identity, user_identity, server_identity)
        ark_info = await ark_provider.get_info()

        async def cosign(swap_id, transaction, checkpoint):
            response = await swap_provider.refund_submarine_swap(swap_id, transaction, checkpoint)
            return response.transaction, response.checkpoint

        txid = await refund_with_offchain_tx(
            "sub1",
            ark_provider,
            user_identity,
            swap_provider.key,
            _input(script, script.refund()),
            _output(user_identity),
            ark_info,
            cosign,
        )

        assert swap_provider.refund_requests == ["sub1"]
        finalized_txid, checkpoints = ark_provider.finalized[0]
        assert finalized_txid == txid
        assert verify_tapscript_signatures(
            psbt_from_base64(checkpoints[0]),
            [
                user_identity._compressed[1:],
                swap_provider.key[1:],
                server_identity._compressed[1:],
            ],
        )

    @pytest.mark.asyncio
    async def test_unsigned_counterparty_rejected(
        self, preimage_hash, user_identity, server_identity, ark_provider, swap_provider
    ):
        script = _vhtlc(preimage_hash, swap_provider.identity, user_identity, server_identity)
        ark_info = await ark_provider.get_info()

        async def echo(swap_id, transaction, checkpoint):
            return transaction, checkpoint

        with pytest.raises(SwapError, match="Invalid counterparty signature"):
            await refund_with_offchain_tx(
                "sub1",
                ark_provider,
                user_identity,
                swap_provider.key,
                _input(script, script.refund()),
                _output(user_identity),
                ark_info,
                echo,
            )
        assert ark_provider.submitted == []


class FailingBatchProvider(FakeArkProvider):
    async def get_event_stream(self, topics):
        yield BatchStartedEvent(id="batch-1", intent_id_hashes=[intent_id_hash(self.intents[-1])])
        yield BatchFailedEvent(id="batch-1", reason="not enough participants")


class TestJoinBatch:
    """Tests for settling swept coins through a batch."""

    @pytest.mark.asyncio
    async def test_join(self, preimage, preimage_hash, user_identity, server_identity, ark_provider):
        script = _vhtlc(preimage_hash, user_identity, LocalIdentity(), server_identity)
        ark_info = await ark_provider.get_info()

        commitment = await join_batch(
            ark_provider,
            PreimageRevealingSigner(user_identity, preimage),
            _input(script, script.claim()),
            _output(user_identity),
            ark_info,
        )

        assert commitment == "cc" * 32
        assert ark_provider.confirmed == ["intent-1"]
        assert ark_provider.deleted_intents == []

    @pytest.mark.asyncio
    async def test_failed_batch_deletes_intent(self, preimage, preimage_hash, user_identity, server_identity):
        ark_provider = FailingBatchProvider(server_identity)
        script = _vhtlc(preimage_hash, user_identity, LocalIdentity(), server_identity)
        ark_info = await ark_provider.get_info()

        with pytest.raises(SwapError, match="not enough participants"):
            await join_batch(
                ark_provider,
                PreimageRevealingSigner(user_identity, preimage),
                _input(script, script.claim()),
                _output(user_identity),
                ark_info,
            )
        assert len(ark_provider.deleted_intents) == 1

    def test_intent_id_hash(self):
        assert intent_id_hash("intent-1") == hashlib.sha256(b"intent-1").hexdigest()

"""Pytest configuration and fixtures."""

import hashlib
import os
import secrets
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["NETWORK"] = "regtest"
os.environ["DEBUG"] = "true"

from embit.bech32 import Encoding, bech32_encode, convertbits
from coincurve import PrivateKey
from embit.script import Script
from embit.transaction import Transaction, TransactionInput, TransactionOutput

from arkswap.ark.base import (
    ArkInfo,
    ArkProvider,
    BatchFinalizedEvent,
    BatchStartedEvent,
    IndexerProvider,
    SubmitTxResult,
    Vtxo,
    Wallet,
)
from arkswap.musig import Musig
from arkswap.providers.base import SwapProvider
from arkswap.providers.schemas import (
    ChainClaimDetails,
    ChainFeesResponse,
    ChainSwapDetails,
    ChainSwapRequest,
    ChainSwapResponse,
    FeesResponse,
    LimitsResponse,
    PartialSignature,
    PreimageResponse,
    RefundResponse,
    RestoredSwap,
    ReverseSwapRequest,
    ReverseSwapResponse,
    ReverseTransactionResponse,
    SubmarineSwapRequest,
    SubmarineSwapResponse,
    SwapStatusResponse,
    SwapTree,
    SwapTreeLeaf,
    TimeoutBlockHeights,
)
from arkswap.signing import LocalIdentity
from arkswap.storage.models import Base
from arkswap.tx.batch import intent_id_hash
from arkswap.tx.claim import swap_tree_merkle_root
from arkswap.tx.psbt import psbt_from_base64, psbt_to_base64, unsigned_tx
from arkswap.tx.sighash import taproot_sighash
from arkswap.utils.invoice import decode_invoice
from arkswap.utils.locks import clear_swap_locks
from arkswap.vhtlc import ArkAddress, build_vhtlc

NETWORK = "regtest"
TIMEOUTS = TimeoutBlockHeights(
    refund=800,
    unilateral_claim=10,
    unilateral_refund=20,
    unilateral_refund_without_receiver=30,
)
TAPSCRIPT_LEAF_VERSION = 0xC0


# ======================
# Helpers
# ======================


def _int_to_words(value: int, length: Optional[int] = None) -> list[int]:
    words = []
    while value:
        words.insert(0, value & 31)
        value >>= 5
    if length is not None:
        words = [0] * (length - len(words)) + words
    return words or [0]


def _tagged_field(tag: int, words: list[int]) -> list[int]:
    return [tag, len(words) // 32, len(words) % 32] + words


def make_invoice(
    amount_sats: int,
    payment_hash: str,
    description: str = "",
    expiry: int = 3600,
    timestamp: int = 1_700_000_000,
) -> str:
    """Unsigned regtest BOLT-11 invoice, enough for the decoder."""
    words = _int_to_words(timestamp, 7)
    words += _tagged_field(1, convertbits(bytes.fromhex(payment_hash), 8, 5, True))
    if description:
        words += _tagged_field(13, convertbits(description.encode(), 8, 5, True))
    words += _tagged_field(6, _int_to_words(expiry))
    words += [0] * 104
    return bech32_encode(Encoding.BECH32, f"lnbcrt{amount_sats * 10}n", words)


def xonly_hex(identity: LocalIdentity) -> str:
    return identity._compressed[1:].hex()


def compressed_hex(identity: LocalIdentity) -> str:
    return identity._compressed.hex()


def simple_leaf(key: bytes) -> SwapTreeLeaf:
    """``<key> OP_CHECKSIG`` leaf."""
    return SwapTreeLeaf(version=TAPSCRIPT_LEAF_VERSION, output=(b"\x20" + key + b"\xac").hex())


def random_txid() -> str:
    return secrets.token_hex(32)


# ======================
# Ledger fakes
# ======================


class FakeArkProvider(ArkProvider):
    """Ledger server that co-signs everything it is shown."""

    def __init__(self, server: LocalIdentity):
        self.server = server
        self.submitted: list[str] = []
        self.finalized: list[tuple[str, list[str]]] = []
        self.intents: list[str] = []
        self.deleted_intents: list[str] = []
        self.confirmed: list[str] = []
        self.forfeits: list[str] = []

    async def get_info(self) -> ArkInfo:
        xonly = xonly_hex(self.server)
        return ArkInfo(
            network=NETWORK,
            signer_pubkey=xonly,
            checkpoint_tapscript="20" + xonly + "ac",
            forfeit_pubkey=xonly,
        )

    async def submit_tx(self, ark_tx: str, checkpoint_txs: list[str]) -> SubmitTxResult:
        self.submitted.append(ark_tx)
        psbt = await self.server.sign(psbt_from_base64(ark_tx))
        checkpoints = [
            psbt_to_base64(await self.server.sign(psbt_from_base64(c))) for c in checkpoint_txs
        ]
        return SubmitTxResult(
            ark_txid=unsigned_tx(psbt).txid().hex(),
            final_ark_tx=psbt_to_base64(psbt),
            signed_checkpoint_txs=checkpoints,
        )

    async def finalize_tx(self, ark_txid: str, signed_checkpoint_txs: list[str]) -> None:
        self.finalized.append((ark_txid, signed_checkpoint_txs))

    async def register_intent(self, message: str, proof: str) -> str:
        intent_id = f"intent-{len(self.intents) + 1}"
        self.intents.append(intent_id)
        return intent_id

    async def delete_intent(self, message: str, proof: str) -> None:
        self.deleted_intents.append(message)

    async def confirm_registration(self, intent_id: str) -> None:
        self.confirmed.append(intent_id)

    async def submit_signed_forfeit_txs(
        self, signed_forfeit_txs: list[str], signed_commitment_tx: Optional[str] = None
    ) -> None:
        self.forfeits.extend(signed_forfeit_txs)

    async def get_event_stream(self, topics: list[str]):
        intent_id = self.intents[-1]
        yield BatchStartedEvent(id="batch-1", intent_id_hashes=[intent_id_hash(intent_id)])
        yield BatchFinalizedEvent(id="batch-1", commitment_txid="cc" * 32)


class FakeIndexer(IndexerProvider):
    def __init__(self):
        self.vtxos: dict[str, list[Vtxo]] = {}

    def add(self, pk_script: bytes, value: int, **kwargs) -> Vtxo:
        vtxo = Vtxo(txid=random_txid(), vout=0, value=value, script=pk_script.hex(), **kwargs)
        self.vtxos.setdefault(pk_script.hex(), []).append(vtxo)
        return vtxo

    async def get_vtxos(self, scripts: list[str], spendable_only: bool = False) -> list[Vtxo]:
        found = []
        for script in scripts:
            for vtxo in self.vtxos.get(script, []):
                if spendable_only and vtxo.is_spent:
                    continue
                found.append(vtxo)
        return found


class FakeWallet(Wallet):
    """Wallet that funds lockups by creating coins in the indexer."""

    def __init__(self, identity: LocalIdentity, server: LocalIdentity, indexer: FakeIndexer):
        self.identity = identity
        self.server = server
        self.indexer = indexer
        self.sent: list[tuple[str, int]] = []

    async def get_address(self) -> str:
        return ArkAddress(
            server_pubkey=self.server._compressed[1:],
            tweaked_pubkey=self.identity._compressed[1:],
            hrp="tark",
        ).encode()

    async def send_bitcoin(self, address: str, amount: int) -> str:
        self.sent.append((address, amount))
        vtxo = self.indexer.add(ArkAddress.decode(address).pk_script, amount)
        return vtxo.txid


# ======================
# Counterparty fake
# ======================


class FakeSwapProvider(SwapProvider):
    """In-process counterparty with scripted status sequences.

    Set ``tamper`` to hand out lockup addresses built with a foreign key.
    """

    name = "fake"
    poll_interval = 0

    def __init__(self, ark_server: LocalIdentity, indexer: FakeIndexer):
        self.identity = LocalIdentity()
        self.ark_server = ark_server
        self.indexer = indexer
        self.tamper = False
        self.statuses: dict[str, list[SwapStatusResponse]] = {}
        self.status_calls: dict[str, int] = {}
        self.preimages: dict[str, str] = {}
        self.created: dict[str, object] = {}
        self.refund_requests: list[str] = []
        self.quotes: list[tuple[str, int]] = []
        self.broadcast: list[str] = []
        self.claim_signatures: list[PartialSignature] = []
        self.claim_messages: dict[str, bytes] = {}
        self.cooperative_signatures: dict[str, bytes] = {}
        self.restorable: list[RestoredSwap] = []
        self.chain_fees = ChainFeesResponse.model_validate(
            {
                "percentage": 0.1,
                "minerFees": {"server": 300, "user": {"claim": 200, "lockup": 150}},
            }
        )
        self.fees = FeesResponse.model_validate(
            {
                "submarine": {"percentage": 0.1, "minerFees": 50},
                "reverse": {"percentage": 0.25, "minerFees": {"lockup": 100, "claim": 50}},
            }
        )
        # Bitcoin side of ARK -> BTC swaps
        self.btc_lockups: dict[str, tuple[Musig, TransactionOutput]] = {}
        self._counter = 0

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}{self._counter}"

    @property
    def key(self) -> bytes:
        return self.identity._compressed

    def _lockup_sender_key(self) -> bytes:
        # A key the client does not expect, used when tampering
        return PrivateKey().public_key.format() if self.tamper else self.key

    def script_statuses(self, swap_id: str, *statuses: str, transaction=None) -> None:
        self.statuses[swap_id] = [
            SwapStatusResponse(status=s, transaction=transaction) for s in statuses
        ]

    # Creation

    async def create_reverse_swap(self, request: ReverseSwapRequest) -> ReverseSwapResponse:
        swap_id = self._next_id("rev")
        ark_info = await FakeArkProvider(self.ark_server).get_info()
        script, address = build_vhtlc(
            NETWORK,
            request.preimage_hash,
            receiver=request.claim_public_key,
            sender=self._lockup_sender_key(),
            server=ark_info.signer_pubkey,
            refund_locktime=TIMEOUTS.refund,
            unilateral_claim_delay=TIMEOUTS.unilateral_claim,
            unilateral_refund_delay=TIMEOUTS.unilateral_refund,
            unilateral_refund_without_receiver_delay=TIMEOUTS.unilateral_refund_without_receiver,
        )
        onchain_amount = request.invoice_amount - 10
        self.created[swap_id] = script
        return ReverseSwapResponse(
            id=swap_id,
            invoice=make_invoice(request.invoice_amount, request.preimage_hash, "reverse"),
            onchain_amount=onchain_amount,
            lockup_address=address,
            refund_public_key=self.key.hex(),
            timeout_block_heights=TIMEOUTS,
        )

    def lock_reverse(self, swap_id: str, value: int, **kwargs) -> Vtxo:
        """Fund the VHTLC of a reverse swap."""
        return self.indexer.add(self.created[swap_id].pk_script, value, **kwargs)

    async def create_submarine_swap(self, request: SubmarineSwapRequest) -> SubmarineSwapResponse:
        swap_id = self._next_id("sub")
        decoded = decode_invoice(request.invoice)
        ark_info = await FakeArkProvider(self.ark_server).get_info()
        receiver = PrivateKey().public_key.format() if self.tamper else self.key
        _, address = build_vhtlc(
            NETWORK,
            decoded.payment_hash,
            receiver=receiver,
            sender=request.refund_public_key,
            server=ark_info.signer_pubkey,
            refund_locktime=TIMEOUTS.refund,
            unilateral_claim_delay=TIMEOUTS.unilateral_claim,
            unilateral_refund_delay=TIMEOUTS.unilateral_refund,
            unilateral_refund_without_receiver_delay=TIMEOUTS.unilateral_refund_without_receiver,
        )
        return SubmarineSwapResponse(
            id=swap_id,
            address=address,
            expected_amount=decoded.amount_sats + 5,
            claim_public_key=self.key.hex(),
            timeout_block_heights=TIMEOUTS,
        )

    async def create_chain_swap(self, request: ChainSwapRequest) -> ChainSwapResponse:
        swap_id = self._next_id("chain")
        ark_info = await FakeArkProvider(self.ark_server).get_info()
        if request.server_lock_amount is not None:
            server_amount = request.server_lock_amount
            user_amount = (
                server_amount
                + int(server_amount * self.chain_fees.percentage / 100)
                + self.chain_fees.miner_fees.server
            )
        else:
            user_amount = request.user_lock_amount
            server_amount = user_amount - 100

        def ark_vhtlc(receiver, sender) -> str:
            _, address = build_vhtlc(
                NETWORK,
                request.preimage_hash,
                receiver=receiver,
                sender=sender,
                server=ark_info.signer_pubkey,
                refund_locktime=TIMEOUTS.refund,
                unilateral_claim_delay=TIMEOUTS.unilateral_claim,
                unilateral_refund_delay=TIMEOUTS.unilateral_refund,
                unilateral_refund_without_receiver_delay=TIMEOUTS.unilateral_refund_without_receiver,
            )
            return address

        tree = SwapTree(claim_leaf=simple_leaf(self.key[1:]), refund_leaf=simple_leaf(self.key[1:]))
        btc_details = {
            "server_public_key": self.key.hex(),
            "lockup_address": "bcrt1p" + "q" * 58,
            "timeout_block_height": 1000,
            "swap_tree": tree,
        }
        if request.from_ == "ARK":
            lockup = ChainSwapDetails(
                server_public_key=self.key.hex(),
                amount=user_amount,
                lockup_address=ark_vhtlc(self._lockup_sender_key(), request.refund_public_key),
                timeout_block_height=TIMEOUTS.refund,
                timeouts=TIMEOUTS,
            )
            claim = ChainSwapDetails(amount=server_amount, **btc_details)
            self._prepare_btc_lockup(swap_id, bytes.fromhex(request.claim_public_key), tree, server_amount)
        else:
            lockup = ChainSwapDetails(amount=user_amount, **btc_details)
            claim = ChainSwapDetails(
                server_public_key=self.key.hex(),
                amount=server_amount,
                lockup_address=ark_vhtlc(request.claim_public_key, self._lockup_sender_key()),
                timeout_block_height=TIMEOUTS.refund,
                timeouts=TIMEOUTS,
            )
            self._prepare_btc_lockup(swap_id, bytes.fromhex(request.refund_public_key), tree, user_amount)
        return ChainSwapResponse(id=swap_id, claim_details=claim, lockup_details=lockup)

    def _prepare_btc_lockup(self, swap_id: str, user_key: bytes, tree: SwapTree, amount: int) -> None:
        musig = Musig(self.identity._key, [self.key, user_key])
        tweaked = musig.tweak_taproot(
            swap_tree_merkle_root(
                [
                    (tree.claim_leaf.version, bytes.fromhex(tree.claim_leaf.output)),
                    (tree.refund_leaf.version, bytes.fromhex(tree.refund_leaf.output)),
                ]
            )
        )
        output = TransactionOutput(amount, Script(b"\x51\x20" + tweaked))
        self.btc_lockups[swap_id] = (musig, output)

    def btc_lockup_tx(self, swap_id: str) -> str:
        _, output = self.btc_lockups[swap_id]
        tx = Transaction(
            version=2,
            vin=[TransactionInput(bytes.fromhex(random_txid()), 0)],
            vout=[TransactionOutput(1000, Script(b"\x00\x14" + b"\x11" * 20)), output],
        )
        return tx.serialize().hex()

    # Status

    async def get_swap_status(self, swap_id: str) -> SwapStatusResponse:
        self.status_calls[swap_id] = self.status_calls.get(swap_id, 0) + 1
        queue = self.statuses.get(swap_id)
        if not queue:
            return SwapStatusResponse(status="swap.created")
        if len(queue) > 1:
            return queue.pop(0)
        return queue[0]

    async def get_swap_preimage(self, swap_id: str) -> PreimageResponse:
        return PreimageResponse(preimage=self.preimages.get(swap_id, "00" * 32))

    async def get_reverse_swap_tx_id(self, swap_id: str) -> ReverseTransactionResponse:
        return ReverseTransactionResponse(id="ee" * 32)

    # Cooperative spends

    async def _cosign(self, transaction: str, checkpoint: str) -> RefundResponse:
        tx = await self.identity.sign(psbt_from_base64(transaction))
        cp = await self.identity.sign(psbt_from_base64(checkpoint))
        return RefundResponse(transaction=psbt_to_base64(tx), checkpoint=psbt_to_base64(cp))

    async def refund_submarine_swap(self, swap_id: str, transaction: str, checkpoint: str) -> RefundResponse:
        self.refund_requests.append(swap_id)
        return await self._cosign(transaction, checkpoint)

    async def refund_chain_swap(self, swap_id: str, transaction: str, checkpoint: str) -> RefundResponse:
        self.refund_requests.append(swap_id)
        return await self._cosign(transaction, checkpoint)

    async def get_chain_claim_details(self, swap_id: str) -> ChainClaimDetails:
        """Ask the user to co-sign our claim of their Bitcoin lockup."""
        musig, _ = self.btc_lockups[swap_id]
        message = hashlib.sha256(swap_id.encode()).digest()
        self.claim_messages[swap_id] = message
        nonce = musig.generate_nonce(message)
        return ChainClaimDetails(
            public_key=self.key.hex(), transaction_hash=message.hex(), pub_nonce=nonce.hex()
        )

    async def post_chain_claim_details(
        self,
        swap_id: str,
        preimage: Optional[str] = None,
        to_sign: Optional[dict] = None,
        signature: Optional[PartialSignature] = None,
    ) -> Optional[PartialSignature]:
        musig, output = self.btc_lockups[swap_id]
        user_key = [k for k in musig.public_keys if k != self.key][0]
        if signature is not None:
            self.claim_signatures.append(signature)
            message = self.claim_messages[swap_id]
            musig.aggregate_nonces([(user_key, bytes.fromhex(signature.pub_nonce))], message)
            musig.sign_partial()
            musig.add_partial(user_key, bytes.fromhex(signature.partial_signature))
            self.cooperative_signatures[swap_id] = musig.aggregate_partials()
        if to_sign is None:
            return None
        claim_tx = Transaction.parse(bytes.fromhex(to_sign["transaction"]))
        sighash = taproot_sighash(claim_tx, to_sign["index"], [output])
        nonce = musig.generate_nonce(sighash)
        musig.aggregate_nonces([(user_key, bytes.fromhex(to_sign["pubNonce"]))], sighash)
        partial = musig.sign_partial()
        return PartialSignature(pub_nonce=nonce.hex(), partial_signature=partial.hex())

    async def get_chain_quote(self, swap_id: str) -> int:
        return 20_500

    async def post_chain_quote(self, swap_id: str, amount: int) -> None:
        self.quotes.append((swap_id, amount))

    async def post_btc_transaction(self, tx_hex: str) -> str:
        self.broadcast.append(tx_hex)
        return Transaction.parse(bytes.fromhex(tx_hex)).txid().hex()

    # Fees, limits, restore

    async def get_fees(self) -> FeesResponse:
        return self.fees

    async def get_limits(self) -> LimitsResponse:
        return LimitsResponse(min=1000, max=1_000_000)

    async def get_chain_fees(self, from_: str, to: str) -> ChainFeesResponse:
        return self.chain_fees

    async def get_chain_limits(self, from_: str, to: str) -> LimitsResponse:
        return LimitsResponse(min=10_000, max=5_000_000)

    async def restore_swaps(self, public_key: str) -> list[RestoredSwap]:
        return self.restorable


# ======================
# Fixtures
# ======================


@pytest.fixture(autouse=True)
def reset_swap_locks():
    clear_swap_locks()
    yield
    clear_swap_locks()


@pytest.fixture
def server_identity() -> LocalIdentity:
    return LocalIdentity()


@pytest.fixture
def user_identity() -> LocalIdentity:
    return LocalIdentity()


@pytest.fixture
def ark_provider(server_identity) -> FakeArkProvider:
    return FakeArkProvider(server_identity)


@pytest.fixture
def indexer() -> FakeIndexer:
    return FakeIndexer()


@pytest.fixture
def wallet(user_identity, server_identity, indexer) -> FakeWallet:
    return FakeWallet(user_identity, server_identity, indexer)


@pytest.fixture
def swap_provider(server_identity, indexer) -> FakeSwapProvider:
    return FakeSwapProvider(server_identity, indexer)


@pytest.fixture
def preimage() -> bytes:
    return secrets.token_bytes(32)


@pytest.fixture
def preimage_hash(preimage) -> str:
    return hashlib.sha256(preimage).hexdigest()


@pytest_asyncio.fixture
async def db_engine():
    """Create in-memory database engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for testing."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def invoice_factory():
    """Build unsigned regtest invoices."""
    return make_invoice

"""Swap orchestrator.

Single entry point for Lightning <-> Ark and Ark <-> Bitcoin swaps. Creates
swap records, checks every address the counterparty hands out against our own
derivation, and claims or refunds virtual coins. A SwapManager, when enabled,
watches the created swaps in the background and calls back into the claim and
refund paths defined here.
"""

import functools
import hashlib
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Optional, Union

from coincurve import PrivateKey
from embit.script import Script, address_to_scriptpubkey
from embit.transaction import Transaction, TransactionOutput

from arkswap.ark.base import ArkInfo, ArkProvider, IndexerProvider, Vtxo, Wallet
from arkswap.config import Settings, get_settings
from arkswap.errors import (
    ArkSwapError,
    InvalidTransitionError,
    InvoiceExpiredError,
    InvoiceFailedToPayError,
    SwapError,
    SwapExpiredError,
    TransactionFailedError,
    TransactionLockupFailedError,
    TransactionRefundedError,
)
from arkswap.musig import Musig
from arkswap.providers.base import SwapProvider
from arkswap.providers.boltz import BoltzSwapProvider
from arkswap.providers.schemas import (
    ChainFeesResponse,
    ChainSwapRequest,
    FeesResponse,
    LimitsResponse,
    PartialSignature,
    ReverseSwapRequest,
    SubmarineSwapRequest,
    SwapStatusResponse,
    SwapTree,
    TimeoutBlockHeights,
)
from arkswap.signing.preimage import PreimageRevealingSigner
from arkswap.storage.repository import InMemorySwapRepository, SqlSwapRepository, SwapRepository
from arkswap.swap.manager import ACTION_REFUND, SwapActions, SwapManager, SwapManagerConfig
from arkswap.swap.models import (
    PendingChainSwap,
    PendingReverseSwap,
    PendingSubmarineSwap,
    PendingSwapBase,
)
from arkswap.swap.restore import restored_reverse_swap, restored_submarine_swap
from arkswap.swap.status import (
    CHAIN_CLAIMABLE,
    CHAIN_SIGNABLE,
    REVERSE_CLAIMABLE,
    SUBMARINE_REFUNDABLE,
    SwapStatus,
    SwapType,
    is_final_status,
    next_status,
)
from arkswap.tx.batch import join_batch
from arkswap.tx.claim import (
    construct_claim_transaction,
    detect_swap_output,
    set_key_path_witness,
    swap_tree_merkle_root,
    target_fee,
)
from arkswap.tx.offchain import VirtualInput, claim_with_offchain_tx, refund_with_offchain_tx
from arkswap.tx.sighash import taproot_sighash
from arkswap.utils.invoice import decode_invoice
from arkswap.vhtlc import ArkAddress, VHTLCScript, build_vhtlc

logger = logging.getLogger(__name__)

ARK = "ARK"
BTC = "BTC"

_SUBMARINE_ERRORS = {
    SwapStatus.SWAP_EXPIRED: SwapExpiredError,
    SwapStatus.INVOICE_FAILED_TO_PAY: InvoiceFailedToPayError,
    SwapStatus.TRANSACTION_LOCKUP_FAILED: TransactionLockupFailedError,
}


# ======================
# Results
# ======================


@dataclass
class LightningInvoice:
    """Invoice to receive a Lightning payment into Ark.

    Attributes:
        amount: Sats that will land in the wallet after fees
        expiry: Invoice expiry in seconds
        invoice: BOLT-11 invoice to hand to the payer
        payment_hash: Hex payment hash
        preimage: Hex preimage, kept secret until the claim
        pending_swap: The reverse swap record
    """

    amount: int
    expiry: int
    invoice: str
    payment_hash: str
    preimage: str
    pending_swap: PendingReverseSwap


@dataclass
class PaymentResult:
    """Outcome of paying a Lightning invoice from Ark."""

    amount: int
    preimage: str
    txid: str


@dataclass
class ArkToBtcResult:
    amount_to_pay: int
    ark_address: str
    pending_swap: PendingChainSwap


@dataclass
class BtcToArkResult:
    amount_to_pay: int
    btc_address: str
    pending_swap: PendingChainSwap


@dataclass
class RestoredSwaps:
    reverse_swaps: list[PendingReverseSwap] = field(default_factory=list)
    submarine_swaps: list[PendingSubmarineSwap] = field(default_factory=list)


def _swap_tree_root(tree: Optional[SwapTree]) -> bytes:
    if tree is None:
        raise SwapError("Swap tree is missing from the swap details")
    return swap_tree_merkle_root(
        [
            (tree.claim_leaf.version, bytes.fromhex(tree.claim_leaf.output)),
            (tree.refund_leaf.version, bytes.fromhex(tree.refund_leaf.output)),
        ]
    )


class SwapOrchestrator:
    """Creates, claims and refunds swaps against a swap counterparty.

    Example:
        async with SwapOrchestrator(wallet, ark, indexer, BoltzSwapProvider()) as swaps:
            invoice = await swaps.create_lightning_invoice(50_000)
            txid = await swaps.wait_and_claim(invoice.pending_swap)
    """

    def __init__(
        self,
        wallet: Wallet,
        ark_provider: ArkProvider,
        indexer: IndexerProvider,
        swap_provider: SwapProvider,
        repository: Optional[SwapRepository] = None,
        swap_manager: Union[bool, SwapManagerConfig, None] = None,
        default_fee_sats_per_byte: float = 1.0,
    ):
        """Initialize the orchestrator.

        Args:
            wallet: Wallet receiving claims and funding lockups
            ark_provider: Ledger server client
            indexer: Virtual coin lookup
            swap_provider: Swap counterparty client
            repository: Swap storage, in memory when omitted
            swap_manager: True or a config to supervise swaps in the background
            default_fee_sats_per_byte: Fee rate of Bitcoin claims when none is given
        """
        self.wallet = wallet
        self.ark_provider = ark_provider
        self.indexer = indexer
        self.swap_provider = swap_provider
        self.repository = repository or InMemorySwapRepository()
        self.default_fee_sats_per_byte = default_fee_sats_per_byte

        self.swap_manager: Optional[SwapManager] = None
        if swap_manager:
            config = swap_manager if isinstance(swap_manager, SwapManagerConfig) else SwapManagerConfig()
            self.swap_manager = SwapManager(
                swap_provider,
                SwapActions(
                    claim=self._claim_swap,
                    refund=self._refund_swap,
                    persist=self.repository.save_swap,
                    sign_server_claim=self.sign_cooperative_claim_for_server,
                    renegotiate=self._renegotiate,
                ),
                config,
            )

    @classmethod
    def from_settings(
        cls,
        wallet: Wallet,
        ark_provider: ArkProvider,
        indexer: IndexerProvider,
        settings: Optional[Settings] = None,
        swap_provider: Optional[SwapProvider] = None,
        repository: Optional[SwapRepository] = None,
    ) -> "SwapOrchestrator":
        """Wire an orchestrator from application settings.

        Defaults to the Boltz client for the configured network and the
        SQL repository on the configured database.
        """
        settings = settings or get_settings()
        if swap_provider is None:
            swap_provider = BoltzSwapProvider(
                api_url=settings.resolved_swap_api_url,
                network=settings.network,
                timeout=settings.http_timeout,
                poll_interval=settings.poll_interval,
            )
        return cls(
            wallet,
            ark_provider,
            indexer,
            swap_provider,
            repository=repository or SqlSwapRepository(),
            swap_manager=(
                SwapManagerConfig.from_settings(settings) if settings.swap_manager_enabled else None
            ),
            default_fee_sats_per_byte=settings.default_fee_sats_per_byte,
        )

    # ======================
    # Helpers
    # ======================

    def _apply_status(self, swap: PendingSwapBase, status: Union[SwapStatus, str]) -> bool:
        """Move a swap to ``status`` when the transition tables allow it."""
        try:
            new_status = SwapStatus(status)
        except ValueError:
            logger.warning(f"Ignoring unknown status {status!r} for swap {swap.id}")
            return False
        if new_status == swap.status:
            return False
        try:
            swap.status = next_status(swap.type, swap.status, new_status)
        except InvalidTransitionError as e:
            logger.warning(f"Ignoring status of swap {swap.id}: {e}")
            return False
        return True

    async def _record_status(self, swap: PendingSwapBase, status: SwapStatus) -> None:
        if self._apply_status(swap, status):
            await self.repository.save_swap(swap)

    async def _refresh_status(self, swap: PendingSwapBase) -> None:
        response = await self.swap_provider.get_swap_status(swap.id)
        self._apply_status(swap, response.status)
        await self.repository.save_swap(swap)

    def _track(self, swap: PendingSwapBase) -> None:
        if self.swap_manager is not None:
            self.swap_manager.add_swap(swap)

    def _status_feed(self, swap: PendingSwapBase):
        return self.swap_provider.status_updates(
            swap.id, is_terminal=functools.partial(is_final_status, swap.type)
        )

    async def _wallet_output(self, value: int) -> TransactionOutput:
        address = await self.wallet.get_address()
        return TransactionOutput(value, Script(ArkAddress.decode(address).pk_script))

    async def _find_vtxo(
        self, script: VHTLCScript, not_found: str, spendable_only: bool = False
    ) -> Vtxo:
        vtxos = await self.indexer.get_vtxos([script.pk_script.hex()], spendable_only=spendable_only)
        if not vtxos:
            raise SwapError(not_found)
        for vtxo in vtxos:
            if not vtxo.is_spent:
                return vtxo
        raise SwapError("VHTLC is already spent")

    async def _claim_vtxo(
        self, script: VHTLCScript, vtxo: Vtxo, preimage: bytes, ark_info: ArkInfo
    ) -> str:
        identity = PreimageRevealingSigner(self.wallet.identity, preimage)
        vtxo_input = VirtualInput(
            vtxo.txid, vtxo.vout, vtxo.value, script.pk_script, script.claim(), script.tree
        )
        output = await self._wallet_output(vtxo.value)
        if vtxo.is_recoverable:
            return await join_batch(self.ark_provider, identity, vtxo_input, output, ark_info)
        return await claim_with_offchain_tx(self.ark_provider, identity, vtxo_input, output, ark_info)

    async def _refund_vtxo(
        self,
        swap_id: str,
        script: VHTLCScript,
        vtxo: Vtxo,
        counterparty_pubkey: str,
        ark_info: ArkInfo,
        refund_func,
    ) -> str:
        output = await self._wallet_output(vtxo.value)
        if vtxo.is_recoverable:
            # Swept coins can only leave through a batch, without the receiver
            vtxo_input = VirtualInput(
                vtxo.txid,
                vtxo.vout,
                vtxo.value,
                script.pk_script,
                script.refund_without_receiver(),
                script.tree,
            )
            return await join_batch(
                self.ark_provider, self.wallet.identity, vtxo_input, output, ark_info
            )
        vtxo_input = VirtualInput(
            vtxo.txid, vtxo.vout, vtxo.value, script.pk_script, script.refund(), script.tree
        )
        return await refund_with_offchain_tx(
            swap_id,
            self.ark_provider,
            self.wallet.identity,
            bytes.fromhex(counterparty_pubkey),
            vtxo_input,
            output,
            ark_info,
            refund_func,
        )

    async def _refund_submarine(self, swap_id: str, transaction: str, checkpoint: str) -> tuple[str, str]:
        response = await self.swap_provider.refund_submarine_swap(swap_id, transaction, checkpoint)
        return response.transaction, response.checkpoint

    async def _refund_chain(self, swap_id: str, transaction: str, checkpoint: str) -> tuple[str, str]:
        response = await self.swap_provider.refund_chain_swap(swap_id, transaction, checkpoint)
        return response.transaction, response.checkpoint

    # ======================
    # Manager actions
    # ======================

    async def _claim_swap(self, swap: PendingSwapBase) -> None:
        if isinstance(swap, PendingReverseSwap):
            await self.claim_vhtlc(swap)
        elif isinstance(swap, PendingChainSwap):
            if swap.to == ARK:
                await self.claim_ark(swap)
            else:
                await self.claim_btc(swap)
        else:
            raise SwapError(f"Cannot claim a {swap.type} swap", pending_swap=swap)

    async def _refund_swap(self, swap: PendingSwapBase) -> None:
        if isinstance(swap, PendingSubmarineSwap):
            await self.refund_vhtlc(swap)
        elif isinstance(swap, PendingChainSwap):
            await self.refund_ark(swap)
        else:
            raise SwapError(f"Cannot refund a {swap.type} swap", pending_swap=swap)

    async def _renegotiate(self, swap: PendingSwapBase) -> None:
        await self.quote_swap(swap.id)

    # ======================
    # Lightning -> Ark (reverse swaps)
    # ======================

    async def create_lightning_invoice(
        self, amount: int, description: Optional[str] = None
    ) -> LightningInvoice:
        """Create a reverse swap and return its invoice."""
        swap = await self.create_reverse_swap(amount, description)
        try:
            decoded = decode_invoice(swap.response.invoice)
        except ValueError as e:
            raise SwapError(f"Invalid Lightning invoice: {e}", pending_swap=swap) from e
        return LightningInvoice(
            amount=swap.response.onchain_amount,
            expiry=decoded.expiry,
            invoice=swap.response.invoice,
            payment_hash=decoded.payment_hash,
            preimage=swap.preimage,
            pending_swap=swap,
        )

    async def create_reverse_swap(
        self, amount: int, description: Optional[str] = None
    ) -> PendingReverseSwap:
        if amount <= 0:
            raise SwapError("Amount must be greater than 0")

        claim_public_key = (await self.wallet.identity.compressed_public_key()).hex()
        preimage = secrets.token_bytes(32)
        request = ReverseSwapRequest(
            invoice_amount=amount,
            claim_public_key=claim_public_key,
            preimage_hash=hashlib.sha256(preimage).hexdigest(),
            description=description,
        )
        response = await self.swap_provider.create_reverse_swap(request)

        swap = PendingReverseSwap(
            id=response.id,
            created_at=int(time.time()),
            status=SwapStatus.SWAP_CREATED,
            preimage=preimage.hex(),
            request=request,
            response=response,
        )
        await self.repository.save_swap(swap)
        self._track(swap)
        logger.info(f"Created reverse swap {swap.id} for {amount} sats")
        return swap

    async def claim_vhtlc(self, swap: PendingReverseSwap) -> str:
        """Claim the coin locked by the counterparty, revealing the preimage.

        Returns:
            The Ark txid, or the batch commitment txid for swept coins
        """
        if not swap.preimage:
            raise SwapError("Preimage is required to claim VHTLC", pending_swap=swap)
        preimage = bytes.fromhex(swap.preimage)

        ark_info = await self.ark_provider.get_info()
        our_key = await self.wallet.identity.x_only_public_key()
        script, address = self.create_vhtlc_script(
            network=ark_info.network,
            preimage_hash=swap.request.preimage_hash,
            receiver_pubkey=our_key,
            sender_pubkey=swap.response.refund_public_key,
            server_pubkey=ark_info.signer_pubkey,
            timeout_block_heights=swap.response.timeout_block_heights,
        )
        if address != swap.response.lockup_address:
            raise SwapError("Boltz is trying to scam us", pending_swap=swap)
        if not script.check_preimage(preimage):
            raise SwapError("Preimage does not match the VHTLC hash lock", pending_swap=swap)

        vtxo = await self._find_vtxo(script, "No spendable virtual coins found")
        txid = await self._claim_vtxo(script, vtxo, preimage, ark_info)
        logger.info(f"Claimed reverse swap {swap.id}: {txid}")
        await self._refresh_status(swap)
        return txid

    async def wait_and_claim(self, swap: PendingReverseSwap) -> str:
        """Claim as soon as the counterparty locks, then wait for settlement.

        Returns:
            The counterparty's settlement txid
        """
        if self.swap_manager is not None and self.swap_manager.has_swap(swap.id):
            return await self.swap_manager.wait_for_swap_completion(swap.id)

        claimed = False
        async for status, data in self._status_feed(swap):
            await self._record_status(swap, status)
            if status in REVERSE_CLAIMABLE:
                if not claimed:
                    claimed = True
                    await self.claim_vhtlc(swap)
            elif status == SwapStatus.INVOICE_SETTLED:
                response = await self.swap_provider.get_reverse_swap_tx_id(swap.id)
                if not response.id.strip():
                    raise SwapError(
                        f"Transaction ID not available for settled swap {swap.id}",
                        pending_swap=swap,
                    )
                return response.id
            elif status == SwapStatus.INVOICE_EXPIRED:
                raise InvoiceExpiredError(pending_swap=swap)
            elif status == SwapStatus.SWAP_EXPIRED:
                raise SwapExpiredError(pending_swap=swap)
            elif status == SwapStatus.TRANSACTION_FAILED:
                raise TransactionFailedError(data.failure_reason, pending_swap=swap)
            elif status == SwapStatus.TRANSACTION_REFUNDED:
                raise TransactionRefundedError(pending_swap=swap)
        raise SwapError(f"Status feed of swap {swap.id} ended early", pending_swap=swap)

    # ======================
    # Ark -> Lightning (submarine swaps)
    # ======================

    async def send_lightning_payment(self, invoice: str) -> PaymentResult:
        """Pay a Lightning invoice from the wallet's virtual coins.

        Lockups that fail are refunded before the error surfaces. When a swap
        manager tracks the swap the refund runs through its action gate, so
        the manager does not refund a second time.
        """
        swap = await self.create_submarine_swap(invoice)
        txid = await self.wallet.send_bitcoin(swap.response.address, swap.response.expected_amount)
        logger.info(f"Funded submarine swap {swap.id}: {txid}")

        try:
            preimage = await self.wait_for_swap_settlement(swap)
        except SwapError as e:
            if e.is_refundable and not swap.refunded:
                logger.warning(f"Submarine swap {swap.id} failed ({e}), refunding")
                if self.swap_manager is not None:
                    await self.swap_manager.execute_action(swap, ACTION_REFUND)
                else:
                    await self.refund_vhtlc(swap)
                await self._refresh_status(swap)
            raise
        return PaymentResult(amount=swap.response.expected_amount, preimage=preimage, txid=txid)

    async def create_submarine_swap(self, invoice: str) -> PendingSubmarineSwap:
        if not invoice:
            raise SwapError("Invoice is required")
        try:
            decoded = decode_invoice(invoice)
        except ValueError as e:
            raise SwapError(f"Invalid Lightning invoice: {e}") from e

        refund_public_key = (await self.wallet.identity.compressed_public_key()).hex()
        request = SubmarineSwapRequest(invoice=invoice, refund_public_key=refund_public_key)
        response = await self.swap_provider.create_submarine_swap(request)

        ark_info = await self.ark_provider.get_info()
        _, address = self.create_vhtlc_script(
            network=ark_info.network,
            preimage_hash=decoded.payment_hash,
            receiver_pubkey=response.claim_public_key,
            sender_pubkey=await self.wallet.identity.x_only_public_key(),
            server_pubkey=ark_info.signer_pubkey,
            timeout_block_heights=response.timeout_block_heights,
        )
        if address != response.address:
            raise SwapError("Boltz is trying to scam us (invalid address)")

        swap = PendingSubmarineSwap(
            id=response.id,
            created_at=int(time.time()),
            status=SwapStatus.INVOICE_SET,
            request=request,
            response=response,
            preimage_hash=decoded.payment_hash,
        )
        await self.repository.save_swap(swap)
        self._track(swap)
        logger.info(f"Created submarine swap {swap.id} for {response.expected_amount} sats")
        return swap

    async def wait_for_swap_settlement(self, swap: PendingSubmarineSwap) -> str:
        """Wait until the counterparty paid the invoice.

        Returns:
            The hex preimage

        Raises:
            SwapError: A refundable lifecycle error when the payment failed
        """
        async for status, _data in self._status_feed(swap):
            if status in SUBMARINE_REFUNDABLE:
                self._apply_status(swap, status)
                swap.refundable = True
                await self.repository.save_swap(swap)
                raise _SUBMARINE_ERRORS[status](is_refundable=True, pending_swap=swap)
            if status == SwapStatus.TRANSACTION_CLAIMED:
                response = await self.swap_provider.get_swap_preimage(swap.id)
                self._apply_status(swap, status)
                swap.preimage = response.preimage
                await self.repository.save_swap(swap)
                return response.preimage
            if status == SwapStatus.TRANSACTION_REFUNDED:
                await self._record_status(swap, status)
                raise TransactionRefundedError(pending_swap=swap)
            await self._record_status(swap, status)
        raise SwapError(f"Status feed of swap {swap.id} ended early", pending_swap=swap)

    async def refund_vhtlc(self, swap: PendingSubmarineSwap) -> str:
        """Take back the coin locked for a failed submarine swap."""
        if swap.request.invoice:
            try:
                preimage_hash = decode_invoice(swap.request.invoice).payment_hash
            except ValueError as e:
                raise SwapError(f"Invalid Lightning invoice: {e}", pending_swap=swap) from e
        else:
            preimage_hash = swap.preimage_hash
        if not preimage_hash:
            raise SwapError("Payment hash is required to refund VHTLC", pending_swap=swap)

        ark_info = await self.ark_provider.get_info()
        script, address = self.create_vhtlc_script(
            network=ark_info.network,
            preimage_hash=preimage_hash,
            receiver_pubkey=swap.response.claim_public_key,
            sender_pubkey=await self.wallet.identity.x_only_public_key(),
            server_pubkey=ark_info.signer_pubkey,
            timeout_block_heights=swap.response.timeout_block_heights,
        )
        if address != swap.response.address:
            raise SwapError("Boltz is trying to scam us (invalid address)", pending_swap=swap)

        vtxo = await self._find_vtxo(script, f"VHTLC not found for address {swap.response.address}")
        txid = await self._refund_vtxo(
            swap.id,
            script,
            vtxo,
            swap.response.claim_public_key,
            ark_info,
            self._refund_submarine,
        )
        swap.refundable = True
        swap.refunded = True
        await self.repository.save_swap(swap)
        logger.info(f"Refunded submarine swap {swap.id}: {txid}")
        return txid

    # ======================
    # Ark <-> Bitcoin (chain swaps)
    # ======================

    async def ark_to_btc(
        self,
        btc_address: str,
        sender_lock_amount: Optional[int] = None,
        receiver_lock_amount: Optional[int] = None,
        fee_sats_per_byte: Optional[float] = None,
    ) -> ArkToBtcResult:
        """Create and verify a swap paying virtual coins for onchain coins."""
        swap = await self.create_chain_swap(
            to=BTC,
            from_=ARK,
            to_address=btc_address,
            fee_sats_per_byte=fee_sats_per_byte,
            sender_lock_amount=sender_lock_amount,
            receiver_lock_amount=receiver_lock_amount,
        )
        await self._verify_or_abort(swap)
        return ArkToBtcResult(
            amount_to_pay=swap.response.lockup_details.amount,
            ark_address=swap.response.lockup_details.lockup_address,
            pending_swap=swap,
        )

    async def btc_to_ark(
        self,
        sender_lock_amount: Optional[int] = None,
        receiver_lock_amount: Optional[int] = None,
        fee_sats_per_byte: Optional[float] = None,
    ) -> BtcToArkResult:
        """Create and verify a swap paying onchain coins for virtual coins."""
        swap = await self.create_chain_swap(
            to=ARK,
            from_=BTC,
            to_address=await self.wallet.get_address(),
            fee_sats_per_byte=fee_sats_per_byte,
            sender_lock_amount=sender_lock_amount,
            receiver_lock_amount=receiver_lock_amount,
        )
        await self._verify_or_abort(swap)
        return BtcToArkResult(
            amount_to_pay=swap.response.lockup_details.amount,
            btc_address=swap.response.lockup_details.lockup_address,
            pending_swap=swap,
        )

    async def _verify_or_abort(self, swap: PendingChainSwap) -> None:
        ark_info = await self.ark_provider.get_info()
        try:
            await self.verify_chain_swap(swap, ark_info)
        except (ArkSwapError, ValueError) as e:
            if self.swap_manager is not None:
                self.swap_manager.remove_swap(swap.id)
            raise SwapError(f"Chain swap verification failed: {e}", pending_swap=swap) from e

    async def create_chain_swap(
        self,
        to: str,
        from_: str,
        to_address: str,
        fee_sats_per_byte: Optional[float] = None,
        sender_lock_amount: Optional[int] = None,
        receiver_lock_amount: Optional[int] = None,
    ) -> PendingChainSwap:
        """Create a chain swap.

        Exactly one side anchors the amount: ``receiver_lock_amount`` fixes
        what we receive (the counterparty's claim fee is added to its lock),
        ``sender_lock_amount`` fixes what we lock.
        """
        if (from_, to) not in ((ARK, BTC), (BTC, ARK)):
            raise SwapError(f"Unsupported chain swap direction {from_} -> {to}")
        if not to_address:
            raise SwapError("Destination address is required")
        fee_rate = self.default_fee_sats_per_byte if fee_sats_per_byte is None else fee_sats_per_byte
        if fee_rate <= 0:
            raise SwapError("Invalid feeSatsPerByte")
        amount = receiver_lock_amount or sender_lock_amount
        if not amount or amount <= 0:
            raise SwapError("Invalid lock amount")

        server_lock_amount = None
        user_lock_amount = None
        if receiver_lock_amount:
            fees = await self.swap_provider.get_chain_fees(from_, to)
            server_lock_amount = receiver_lock_amount + fees.miner_fees.user.claim
        else:
            user_lock_amount = sender_lock_amount

        preimage = secrets.token_bytes(32)
        ephemeral = PrivateKey()
        ephemeral_public_key = ephemeral.public_key.format(compressed=True).hex()
        our_public_key = (await self.wallet.identity.compressed_public_key()).hex()
        # The ephemeral key signs on the Bitcoin side only
        if to == ARK:
            claim_public_key, refund_public_key = our_public_key, ephemeral_public_key
        else:
            claim_public_key, refund_public_key = ephemeral_public_key, our_public_key

        request = ChainSwapRequest(
            from_=from_,
            to=to,
            preimage_hash=hashlib.sha256(preimage).hexdigest(),
            claim_public_key=claim_public_key,
            refund_public_key=refund_public_key,
            server_lock_amount=server_lock_amount,
            user_lock_amount=user_lock_amount,
        )
        response = await self.swap_provider.create_chain_swap(request)

        swap = PendingChainSwap(
            id=response.id,
            created_at=int(time.time()),
            status=SwapStatus.SWAP_CREATED,
            preimage=preimage.hex(),
            request=request,
            response=response,
            amount=amount,
            ephemeral_key=ephemeral.secret.hex(),
            fee_sats_per_byte=fee_rate,
            to_address=to_address,
        )
        await self.repository.save_swap(swap)
        self._track(swap)
        logger.info(f"Created {from_} -> {to} chain swap {swap.id} for {amount} sats")
        return swap

    async def verify_chain_swap(
        self, swap: PendingChainSwap, ark_info: Optional[ArkInfo] = None
    ) -> bool:
        """Check the Ark side lockup address against our own derivation.

        Raises:
            SwapError: If details are missing or the address differs
        """
        ark_info = ark_info or await self.ark_provider.get_info()
        our_key = await self.wallet.identity.x_only_public_key()
        if swap.from_ == ARK:
            details = swap.response.lockup_details
            receiver, sender = details.server_public_key, our_key
        else:
            details = swap.response.claim_details
            receiver, sender = our_key, details.server_public_key
        if details.timeouts is None:
            raise SwapError("Timeouts are missing from the Ark lockup details")

        _, address = self.create_vhtlc_script(
            network=ark_info.network,
            preimage_hash=swap.request.preimage_hash,
            receiver_pubkey=receiver,
            sender_pubkey=sender,
            server_pubkey=ark_info.signer_pubkey,
            timeout_block_heights=details.timeouts,
        )
        if address != details.lockup_address:
            raise SwapError("Boltz is trying to scam us (invalid address)")
        return True

    async def claim_ark(self, swap: PendingChainSwap) -> str:
        """Claim the virtual coin the counterparty locked for a BTC -> ARK swap."""
        details = swap.response.claim_details
        if not swap.preimage:
            raise SwapError("Preimage is required to claim VHTLC", pending_swap=swap)
        if details.timeouts is None:
            raise SwapError("Timeouts are missing from the claim details", pending_swap=swap)
        preimage = bytes.fromhex(swap.preimage)

        ark_info = await self.ark_provider.get_info()
        script, address = self.create_vhtlc_script(
            network=ark_info.network,
            preimage_hash=swap.request.preimage_hash,
            receiver_pubkey=await self.wallet.identity.x_only_public_key(),
            sender_pubkey=details.server_public_key,
            server_pubkey=ark_info.signer_pubkey,
            timeout_block_heights=details.timeouts,
        )
        if not script.check_preimage(preimage):
            raise SwapError("Preimage does not match the VHTLC hash lock", pending_swap=swap)
        if address != details.lockup_address:
            raise SwapError("Unable to claim: invalid VHTLC address", pending_swap=swap)

        vtxo = await self._find_vtxo(script, "No spendable virtual coins found", spendable_only=True)
        txid = await self._claim_vtxo(script, vtxo, preimage, ark_info)
        logger.info(f"Claimed chain swap {swap.id} on Ark: {txid}")
        await self._refresh_status(swap)
        return txid

    async def claim_btc(self, swap: PendingChainSwap) -> str:
        """Claim the onchain coin of an ARK -> BTC swap with a MuSig2 key path spend.

        Returns:
            The broadcast txid
        """
        details = swap.response.claim_details
        if not swap.btc_tx_hex:
            raise SwapError("Lockup transaction of the server is unknown", pending_swap=swap)
        if not swap.to_address:
            raise SwapError("Destination address is required", pending_swap=swap)
        if not details.server_public_key:
            raise SwapError("Server public key is missing from the claim details", pending_swap=swap)
        if not swap.preimage:
            raise SwapError("Preimage is required to claim", pending_swap=swap)

        server_key = bytes.fromhex(details.server_public_key)
        musig = Musig(PrivateKey(bytes.fromhex(swap.ephemeral_key)), [server_key, self._ephemeral_public_key(swap)])
        tweaked_key = musig.tweak_taproot(_swap_tree_root(details.swap_tree))

        lockup_tx = Transaction.parse(bytes.fromhex(swap.btc_tx_hex))
        found = detect_swap_output(lockup_tx, tweaked_key)
        if found is None:
            raise SwapError("Swap output not found in the lockup transaction", pending_swap=swap)
        vout, lockup_output = found

        destination = address_to_scriptpubkey(swap.to_address).data
        lockup_txid = lockup_tx.txid()

        def construct(fee: int) -> Transaction:
            return construct_claim_transaction(
                lockup_txid, vout, lockup_output.value, destination, fee
            )

        # Receiver anchored swaps budgeted the claim fee into the server's lock
        shortfall = 0
        if swap.request.server_lock_amount:
            shortfall = swap.request.server_lock_amount - swap.amount
        fee = max(shortfall, target_fee(swap.fee_sats_per_byte, construct))
        claim_tx = construct(fee)
        sighash = taproot_sighash(claim_tx, 0, [lockup_output])

        our_nonce = musig.generate_nonce(sighash)
        server_signature = await self.swap_provider.post_chain_claim_details(
            swap.id,
            preimage=swap.preimage,
            to_sign={"pubNonce": our_nonce.hex(), "transaction": claim_tx.serialize().hex(), "index": 0},
        )
        if server_signature is None:
            raise SwapError("Invalid signature data from server", pending_swap=swap)

        musig.aggregate_nonces([(server_key, bytes.fromhex(server_signature.pub_nonce))], sighash)
        musig.sign_partial()
        musig.add_partial(server_key, bytes.fromhex(server_signature.partial_signature))
        set_key_path_witness(claim_tx, 0, musig.aggregate_partials())

        txid = await self.swap_provider.post_btc_transaction(claim_tx.serialize().hex())
        logger.info(f"Claimed chain swap {swap.id} on Bitcoin: {txid}")
        await self._refresh_status(swap)
        return txid

    @staticmethod
    def _ephemeral_public_key(swap: PendingChainSwap) -> bytes:
        return PrivateKey(bytes.fromhex(swap.ephemeral_key)).public_key.format(compressed=True)

    async def refund_ark(self, swap: PendingChainSwap) -> str:
        """Take back the virtual coin locked for a failed ARK -> BTC swap."""
        if swap.from_ != ARK:
            raise SwapError("Only swaps funded from Ark can be refunded on Ark", pending_swap=swap)
        details = swap.response.lockup_details
        if details.timeouts is None:
            raise SwapError("Timeouts are missing from the lockup details", pending_swap=swap)

        ark_info = await self.ark_provider.get_info()
        script, address = self.create_vhtlc_script(
            network=ark_info.network,
            preimage_hash=swap.request.preimage_hash,
            receiver_pubkey=details.server_public_key,
            sender_pubkey=await self.wallet.identity.x_only_public_key(),
            server_pubkey=ark_info.signer_pubkey,
            timeout_block_heights=details.timeouts,
        )
        if address != details.lockup_address:
            raise SwapError("Boltz is trying to scam us (invalid address)", pending_swap=swap)

        vtxo = await self._find_vtxo(script, f"VHTLC not found for address {details.lockup_address}")
        txid = await self._refund_vtxo(
            swap.id, script, vtxo, details.server_public_key, ark_info, self._refund_chain
        )
        swap.refundable = True
        swap.refunded = True
        await self.repository.save_swap(swap)
        logger.info(f"Refunded chain swap {swap.id}: {txid}")
        return txid

    async def sign_cooperative_claim_for_server(self, swap: PendingChainSwap) -> None:
        """Co-sign the counterparty's key path claim of our Bitcoin lockup."""
        details = swap.response.lockup_details
        claim = await self.swap_provider.get_chain_claim_details(swap.id)
        server_key = bytes.fromhex(claim.public_key)

        musig = Musig(
            PrivateKey(bytes.fromhex(swap.ephemeral_key)),
            [server_key, self._ephemeral_public_key(swap)],
        )
        musig.tweak_taproot(_swap_tree_root(details.swap_tree))
        message = bytes.fromhex(claim.transaction_hash)
        our_nonce = musig.generate_nonce(message)
        musig.aggregate_nonces([(server_key, bytes.fromhex(claim.pub_nonce))], message)
        partial = musig.sign_partial()

        await self.swap_provider.post_chain_claim_details(
            swap.id,
            signature=PartialSignature(pub_nonce=our_nonce.hex(), partial_signature=partial.hex()),
        )
        logger.info(f"Signed the server claim of chain swap {swap.id}")

    async def wait_and_claim_chain(self, swap: PendingChainSwap) -> str:
        """Wait for the counterparty's lockup and claim it.

        Returns:
            The claim txid when known, otherwise the swap id
        """
        if self.swap_manager is not None and self.swap_manager.has_swap(swap.id):
            return await self.swap_manager.wait_for_swap_completion(swap.id)
        if swap.to == ARK:
            return await self.wait_and_claim_ark(swap)
        return await self.wait_and_claim_btc(swap)

    def _chain_failure(self, swap: PendingChainSwap, status: SwapStatus, data: SwapStatusResponse):
        refundable = swap.from_ == ARK and not swap.refunded
        if status == SwapStatus.SWAP_EXPIRED:
            return SwapExpiredError(is_refundable=refundable, pending_swap=swap)
        if status == SwapStatus.TRANSACTION_FAILED:
            return TransactionFailedError(
                data.failure_reason, is_refundable=refundable, pending_swap=swap
            )
        return TransactionRefundedError(pending_swap=swap)

    async def wait_and_claim_ark(self, swap: PendingChainSwap) -> str:
        claim_txid = None
        async for status, data in self._status_feed(swap):
            await self._record_status(swap, status)
            if status in CHAIN_CLAIMABLE:
                if claim_txid is None:
                    claim_txid = await self.claim_ark(swap)
            elif status in CHAIN_SIGNABLE:
                try:
                    await self.sign_cooperative_claim_for_server(swap)
                except Exception as e:
                    logger.error(f"Failed to sign the server claim of swap {swap.id}: {e}")
            elif status == SwapStatus.TRANSACTION_CLAIMED:
                return claim_txid or swap.id
            elif status in (
                SwapStatus.SWAP_EXPIRED,
                SwapStatus.TRANSACTION_FAILED,
                SwapStatus.TRANSACTION_REFUNDED,
            ):
                raise self._chain_failure(swap, status, data)
        raise SwapError(f"Status feed of swap {swap.id} ended early", pending_swap=swap)

    async def wait_and_claim_btc(self, swap: PendingChainSwap) -> str:
        claim_txid = None
        async for status, data in self._status_feed(swap):
            await self._record_status(swap, status)
            if status in CHAIN_CLAIMABLE:
                if claim_txid is not None:
                    continue
                if data.transaction is not None and data.transaction.hex:
                    swap.btc_tx_hex = data.transaction.hex
                    await self.repository.save_swap(swap)
                if not swap.btc_tx_hex:
                    raise SwapError("Lockup transaction of the server is unknown", pending_swap=swap)
                claim_txid = await self.claim_btc(swap)
            elif status == SwapStatus.TRANSACTION_LOCKUP_FAILED:
                try:
                    await self.quote_swap(swap.id)
                except Exception as e:
                    raise SwapError(f"Failed to renegotiate quote: {e}", pending_swap=swap) from e
            elif status == SwapStatus.TRANSACTION_CLAIMED:
                return claim_txid or swap.id
            elif status in (
                SwapStatus.SWAP_EXPIRED,
                SwapStatus.TRANSACTION_FAILED,
                SwapStatus.TRANSACTION_REFUNDED,
            ):
                raise self._chain_failure(swap, status, data)
        raise SwapError(f"Status feed of swap {swap.id} ended early", pending_swap=swap)

    async def quote_swap(self, swap_id: str) -> int:
        """Accept the counterparty's current quote for a chain swap.

        Returns:
            The quoted amount in sats
        """
        amount = await self.swap_provider.get_chain_quote(swap_id)
        await self.swap_provider.post_chain_quote(swap_id, amount)
        logger.info(f"Accepted quote of {amount} sats for chain swap {swap_id}")
        return amount

    # ======================
    # Scripts, fees, queries
    # ======================

    def create_vhtlc_script(
        self,
        network: str,
        preimage_hash: Union[bytes, str],
        receiver_pubkey: Union[bytes, str],
        sender_pubkey: Union[bytes, str],
        server_pubkey: Union[bytes, str],
        timeout_block_heights: TimeoutBlockHeights,
    ) -> tuple[VHTLCScript, str]:
        timeouts = timeout_block_heights
        return build_vhtlc(
            network,
            preimage_hash=preimage_hash,
            receiver=receiver_pubkey,
            sender=sender_pubkey,
            server=server_pubkey,
            refund_locktime=timeouts.refund,
            unilateral_claim_delay=timeouts.unilateral_claim,
            unilateral_refund_delay=timeouts.unilateral_refund,
            unilateral_refund_without_receiver_delay=timeouts.unilateral_refund_without_receiver,
        )

    async def get_fees(
        self, from_: Optional[str] = None, to: Optional[str] = None
    ) -> Union[FeesResponse, ChainFeesResponse]:
        if from_ and to:
            return await self.swap_provider.get_chain_fees(from_, to)
        return await self.swap_provider.get_fees()

    async def get_limits(self, from_: Optional[str] = None, to: Optional[str] = None) -> LimitsResponse:
        if from_ and to:
            return await self.swap_provider.get_chain_limits(from_, to)
        return await self.swap_provider.get_limits()

    async def get_swap_status(self, swap_id: str) -> SwapStatusResponse:
        return await self.swap_provider.get_swap_status(swap_id)

    async def get_pending_reverse_swaps(self) -> list[PendingReverseSwap]:
        swaps = await self.repository.get_all_swaps(SwapType.REVERSE)
        return [s for s in swaps if s.status == SwapStatus.SWAP_CREATED]

    async def get_pending_submarine_swaps(self) -> list[PendingSubmarineSwap]:
        swaps = await self.repository.get_all_swaps(SwapType.SUBMARINE)
        return [s for s in swaps if s.status == SwapStatus.INVOICE_SET]

    async def get_pending_chain_swaps(self) -> list[PendingChainSwap]:
        swaps = await self.repository.get_all_swaps(SwapType.CHAIN)
        return [s for s in swaps if s.status == SwapStatus.SWAP_CREATED]

    async def get_swap_history(self) -> list[PendingSwapBase]:
        """All swaps, newest first."""
        swaps = await self.repository.get_all_swaps()
        return sorted(swaps, key=lambda s: s.created_at, reverse=True)

    async def refresh_swaps_status(self) -> int:
        """Poll every non-final swap once and store status changes.

        Returns:
            Number of swaps whose status changed
        """
        changed = 0
        for swap in await self.repository.get_all_swaps():
            if is_final_status(swap.type, swap.status):
                continue
            try:
                response = await self.swap_provider.get_swap_status(swap.id)
                if self._apply_status(swap, response.status):
                    await self.repository.save_swap(swap)
                    changed += 1
            except Exception as e:
                logger.error(f"Failed to refresh status of swap {swap.id}: {e}")
        return changed

    # ======================
    # Restore
    # ======================

    async def restore_swaps(self, fees: Optional[FeesResponse] = None) -> RestoredSwaps:
        """Rebuild reverse and submarine swaps from the counterparty's records.

        Restored swaps are saved unless a record with the same id exists.
        """
        public_key = (await self.wallet.identity.compressed_public_key()).hex()
        restored = await self.swap_provider.restore_swaps(public_key)
        if fees is None:
            fees = await self.swap_provider.get_fees()

        result = RestoredSwaps()
        for item in restored:
            swap = restored_reverse_swap(item, public_key, fees)
            if swap is not None:
                result.reverse_swaps.append(swap)
                continue
            swap = restored_submarine_swap(item, public_key)
            if swap is not None:
                result.submarine_swaps.append(swap)
            else:
                logger.debug(f"Skipping restored {item.type} swap {item.id}")

        for swap in [*result.reverse_swaps, *result.submarine_swaps]:
            if await self.repository.get_swap(swap.id) is None:
                await self.repository.save_swap(swap)
        logger.info(
            f"Restored {len(result.reverse_swaps)} reverse and "
            f"{len(result.submarine_swaps)} submarine swaps"
        )
        return result

    def enrich_reverse_swap_preimage(
        self, swap: PendingReverseSwap, preimage: str
    ) -> PendingReverseSwap:
        """Attach the preimage of a restored reverse swap after checking its hash."""
        try:
            digest = hashlib.sha256(bytes.fromhex(preimage)).hexdigest()
        except ValueError as e:
            raise SwapError("Preimage must be hex", pending_swap=swap) from e
        if digest != swap.request.preimage_hash:
            raise SwapError("Preimage does not match swap", pending_swap=swap)
        swap.preimage = preimage
        return swap

    def enrich_submarine_swap_invoice(
        self, swap: PendingSubmarineSwap, invoice: str
    ) -> PendingSubmarineSwap:
        """Attach the invoice of a restored submarine swap after checking its hash."""
        try:
            decoded = decode_invoice(invoice)
        except ValueError as e:
            raise SwapError(f"Invalid Lightning invoice: {e}", pending_swap=swap) from e
        if swap.preimage_hash and decoded.payment_hash != swap.preimage_hash:
            raise SwapError("Invoice does not match swap", pending_swap=swap)
        swap.request.invoice = invoice
        swap.preimage_hash = decoded.payment_hash
        return swap

    # ======================
    # Lifecycle
    # ======================

    async def start_swap_manager(self) -> None:
        if self.swap_manager is None:
            raise SwapError("Swap manager is not enabled")
        await self.swap_manager.start(await self.repository.get_all_swaps())

    async def stop_swap_manager(self) -> None:
        if self.swap_manager is not None:
            await self.swap_manager.stop()

    async def dispose(self) -> None:
        await self.stop_swap_manager()

    async def __aenter__(self) -> "SwapOrchestrator":
        if self.swap_manager is not None and self.swap_manager.config.auto_start:
            await self.start_swap_manager()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.dispose()

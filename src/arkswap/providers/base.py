"""Swap counterparty interface."""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import AsyncIterator, Awaitable, Callable, Optional

from arkswap.providers.schemas import (
    ChainClaimDetails,
    ChainFeesResponse,
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
)
from arkswap.swap.status import SwapStatus, is_terminal_status

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 30.0

StatusUpdate = tuple[SwapStatus, SwapStatusResponse]


class SwapProvider(ABC):
    """Client of the swap counterparty.

    Concrete providers implement the request/response calls; the status feed
    is built on top of ``get_swap_status`` by polling.
    """

    name = "base"
    poll_interval = DEFAULT_POLL_INTERVAL

    # ======================
    # Swap creation
    # ======================

    @abstractmethod
    async def create_reverse_swap(self, request: ReverseSwapRequest) -> ReverseSwapResponse:
        pass

    @abstractmethod
    async def create_submarine_swap(self, request: SubmarineSwapRequest) -> SubmarineSwapResponse:
        pass

    @abstractmethod
    async def create_chain_swap(self, request: ChainSwapRequest) -> ChainSwapResponse:
        pass

    # ======================
    # Status
    # ======================

    @abstractmethod
    async def get_swap_status(self, swap_id: str) -> SwapStatusResponse:
        pass

    @abstractmethod
    async def get_swap_preimage(self, swap_id: str) -> PreimageResponse:
        pass

    @abstractmethod
    async def get_reverse_swap_tx_id(self, swap_id: str) -> ReverseTransactionResponse:
        pass

    # ======================
    # Cooperative spends
    # ======================

    @abstractmethod
    async def refund_submarine_swap(
        self, swap_id: str, transaction: str, checkpoint: str
    ) -> RefundResponse:
        pass

    @abstractmethod
    async def refund_chain_swap(
        self, swap_id: str, transaction: str, checkpoint: str
    ) -> RefundResponse:
        pass

    @abstractmethod
    async def get_chain_claim_details(self, swap_id: str) -> ChainClaimDetails:
        pass

    @abstractmethod
    async def post_chain_claim_details(
        self,
        swap_id: str,
        preimage: Optional[str] = None,
        to_sign: Optional[dict] = None,
        signature: Optional[PartialSignature] = None,
    ) -> Optional[PartialSignature]:
        """Send our preimage/transaction to co-sign, or our partial signature."""
        pass

    @abstractmethod
    async def get_chain_quote(self, swap_id: str) -> int:
        pass

    @abstractmethod
    async def post_chain_quote(self, swap_id: str, amount: int) -> None:
        pass

    @abstractmethod
    async def post_btc_transaction(self, tx_hex: str) -> str:
        """Broadcast a Bitcoin transaction, returning its txid."""
        pass

    # ======================
    # Fees, limits, restore
    # ======================

    @abstractmethod
    async def get_fees(self) -> FeesResponse:
        pass

    @abstractmethod
    async def get_limits(self) -> LimitsResponse:
        pass

    @abstractmethod
    async def get_chain_fees(self, from_: str, to: str) -> ChainFeesResponse:
        pass

    @abstractmethod
    async def get_chain_limits(self, from_: str, to: str) -> LimitsResponse:
        pass

    @abstractmethod
    async def restore_swaps(self, public_key: str) -> list[RestoredSwap]:
        pass

    # ======================
    # Status feed
    # ======================

    async def status_updates(
        self,
        swap_id: str,
        poll_interval: Optional[float] = None,
        is_terminal: Callable[[SwapStatus], bool] = is_terminal_status,
    ) -> AsyncIterator[StatusUpdate]:
        """Ordered stream of status changes, ending after a terminal status.

        Statuses the client does not know are skipped with a warning.
        """
        interval = poll_interval if poll_interval is not None else self.poll_interval
        last: Optional[str] = None
        while True:
            response = await self.get_swap_status(swap_id)
            if response.status != last:
                last = response.status
                try:
                    status = SwapStatus(response.status)
                except ValueError:
                    logger.warning(f"Unknown status {response.status!r} for swap {swap_id}")
                else:
                    yield status, response
                    if is_terminal(status):
                        return
            await asyncio.sleep(interval)

    async def monitor_swap(
        self,
        swap_id: str,
        on_update: Callable[[SwapStatus, SwapStatusResponse], Awaitable[None]],
        poll_interval: Optional[float] = None,
    ) -> None:
        """Deliver status updates to ``on_update`` until a terminal status."""
        async for status, data in self.status_updates(swap_id, poll_interval):
            await on_update(status, data)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name})"

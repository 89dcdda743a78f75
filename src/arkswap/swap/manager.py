"""Background supervisor of pending swaps.

The manager polls the counterparty for each monitored swap, applies status
changes through the transition tables, persists them and runs the follow-up
action (claim, refund, co-sign, renegotiate) when the new status calls for
one.

Actions are supplied by the owner as plain async callables, so the manager
never reaches into the orchestrator.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from arkswap.config import Settings
from arkswap.errors import SwapError
from arkswap.providers.base import SwapProvider
from arkswap.providers.schemas import SwapStatusResponse
from arkswap.swap.models import PendingChainSwap, PendingReverseSwap, PendingSubmarineSwap, PendingSwapBase
from arkswap.swap.status import (
    CHAIN_CLAIMABLE,
    CHAIN_REFUNDABLE,
    CHAIN_SIGNABLE,
    REVERSE_CLAIMABLE,
    SUBMARINE_REFUNDABLE,
    SwapStatus,
    SwapType,
    can_transition,
    is_final_status,
    is_success_status,
)
from arkswap.utils.locks import SwapLock

logger = logging.getLogger(__name__)

SwapCallable = Callable[[PendingSwapBase], Awaitable[Any]]
SwapUpdateListener = Callable[[PendingSwapBase, SwapStatus], Any]
SwapCompletedListener = Callable[[PendingSwapBase], Any]
SwapFailedListener = Callable[[PendingSwapBase, Exception], Any]
ActionExecutedListener = Callable[[PendingSwapBase, str], Any]

ACTION_CLAIM = "claim"
ACTION_REFUND = "refund"
ACTION_SIGN_SERVER_CLAIM = "sign_server_claim"
ACTION_RENEGOTIATE = "renegotiate"


@dataclass
class SwapActions:
    """Capabilities the manager may invoke.

    Attributes:
        claim: Claim the swap's funds (reverse swaps, chain swaps)
        refund: Refund the swap's funds (submarine swaps, ARK-funded chain swaps)
        persist: Save a swap record
        sign_server_claim: Co-sign the counterparty's claim of a BTC -> ARK swap
        renegotiate: Accept a new quote after a failed lockup
    """

    claim: SwapCallable
    refund: SwapCallable
    persist: SwapCallable
    sign_server_claim: Optional[SwapCallable] = None
    renegotiate: Optional[SwapCallable] = None


@dataclass
class SwapManagerConfig:
    """Manager behaviour.

    Attributes:
        enable_auto_actions: Run claims and refunds automatically
        poll_interval: Seconds between status polls of one swap
        poll_retry_delay: First delay after a failed poll, doubled on each failure
        max_poll_retry_delay: Upper bound of the retry delay
        auto_start: Start when the owning orchestrator is entered
    """

    enable_auto_actions: bool = True
    poll_interval: float = 30.0
    poll_retry_delay: float = 5.0
    max_poll_retry_delay: float = 300.0
    auto_start: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> "SwapManagerConfig":
        return cls(
            enable_auto_actions=settings.swap_manager_auto_actions,
            poll_interval=settings.poll_interval,
            poll_retry_delay=settings.poll_retry_delay,
            max_poll_retry_delay=settings.max_poll_retry_delay,
        )


def _is_final(swap: PendingSwapBase) -> bool:
    return is_final_status(swap.type, swap.status)


class SwapManager:
    """Supervises pending swaps until they reach a final status.

    Example:
        manager = SwapManager(provider, SwapActions(claim, refund, repo.save_swap))
        await manager.start(await repo.get_all_swaps())
        txid = await manager.wait_for_swap_completion(swap.id)
        await manager.stop()
    """

    def __init__(
        self,
        swap_provider: SwapProvider,
        actions: SwapActions,
        config: Optional[SwapManagerConfig] = None,
    ):
        self.swap_provider = swap_provider
        self.actions = actions
        self.config = config or SwapManagerConfig()

        self._running = False
        self._monitored: dict[str, PendingSwapBase] = {}
        self._finished: dict[str, PendingSwapBase] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._current_poll_retry_delay = self.config.poll_retry_delay

        # At-most-once gate for claim/refund style actions
        self._in_flight: set[str] = set()
        self._completed_actions: set[tuple[str, str]] = set()

        self._update_listeners: list[SwapUpdateListener] = []
        self._completed_listeners: list[SwapCompletedListener] = []
        self._failed_listeners: list[SwapFailedListener] = []
        self._action_listeners: list[ActionExecutedListener] = []
        self._subscriptions: dict[str, list[SwapUpdateListener]] = {}

    @property
    def is_running(self) -> bool:
        return self._running

    # ======================
    # Listeners
    # ======================

    @staticmethod
    def _subscribe(listeners: list, listener) -> Callable[[], None]:
        listeners.append(listener)

        def unsubscribe() -> None:
            if listener in listeners:
                listeners.remove(listener)

        return unsubscribe

    def on_swap_update(self, listener: SwapUpdateListener) -> Callable[[], None]:
        """Call ``listener(swap, old_status)`` on every accepted status change."""
        return self._subscribe(self._update_listeners, listener)

    def on_swap_completed(self, listener: SwapCompletedListener) -> Callable[[], None]:
        return self._subscribe(self._completed_listeners, listener)

    def on_swap_failed(self, listener: SwapFailedListener) -> Callable[[], None]:
        return self._subscribe(self._failed_listeners, listener)

    def on_action_executed(self, listener: ActionExecutedListener) -> Callable[[], None]:
        return self._subscribe(self._action_listeners, listener)

    def subscribe_to_swap_updates(
        self, swap_id: str, listener: SwapUpdateListener
    ) -> Callable[[], None]:
        """Listen to the status changes of one swap."""
        listeners = self._subscriptions.setdefault(swap_id, [])
        listeners.append(listener)

        def unsubscribe() -> None:
            if listener in listeners:
                listeners.remove(listener)
            if not listeners:
                self._subscriptions.pop(swap_id, None)

        return unsubscribe

    async def _notify(self, listeners: list, *args) -> None:
        for listener in list(listeners):
            try:
                result = listener(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Swap listener {listener!r} failed: {e}")

    # ======================
    # Lifecycle
    # ======================

    async def start(self, swaps: list[PendingSwapBase]) -> None:
        """Monitor every non-final swap and resume the actionable ones."""
        if self._running:
            logger.warning("Swap manager is already running")
            return
        self._running = True

        for swap in swaps:
            if _is_final(swap):
                self._finished[swap.id] = swap
            else:
                self._monitored[swap.id] = swap

        logger.info(f"Swap manager started with {len(self._monitored)} pending swaps")
        await self.resume()
        for swap_id in list(self._monitored):
            self._spawn(swap_id)

    async def stop(self) -> None:
        """Cancel every status feed. In-flight actions are abandoned."""
        if not self._running:
            return
        self._running = False
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Swap manager stopped")

    async def resume(self) -> None:
        """Run the pending action of swaps left in an actionable status."""
        if not self.config.enable_auto_actions:
            return
        for swap in list(self._monitored.values()):
            if self._action_for(swap) is None:
                continue
            logger.info(f"Resuming swap {swap.id} in status {swap.status.value}")
            async with SwapLock(swap.id, operation="resume"):
                await self._execute_action(swap)

    def add_swap(self, swap: PendingSwapBase) -> None:
        if _is_final(swap):
            self._finished[swap.id] = swap
            return
        self._finished.pop(swap.id, None)
        self._monitored[swap.id] = swap
        if self._running:
            self._spawn(swap.id)

    def remove_swap(self, swap_id: str) -> None:
        self._monitored.pop(swap_id, None)
        self._forget_actions(swap_id)
        self._subscriptions.pop(swap_id, None)
        task = self._tasks.pop(swap_id, None)
        if task is not None:
            task.cancel()
        logger.info(f"Removed swap {swap_id} from monitoring")

    def has_swap(self, swap_id: str) -> bool:
        return swap_id in self._monitored

    def get_pending_swaps(self) -> list[PendingSwapBase]:
        return list(self._monitored.values())

    def is_processing(self, swap_id: str) -> bool:
        return swap_id in self._in_flight

    def _forget_actions(self, swap_id: str) -> None:
        self._completed_actions = {key for key in self._completed_actions if key[0] != swap_id}

    def _finish(self, swap: PendingSwapBase) -> None:
        """Move a final swap out of monitoring, keeping it for completion lookups."""
        self._monitored.pop(swap.id, None)
        self._finished[swap.id] = swap
        self._forget_actions(swap.id)

    def _spawn(self, swap_id: str) -> None:
        task = self._tasks.get(swap_id)
        if task is not None and not task.done():
            return
        self._tasks[swap_id] = asyncio.create_task(self._watch(swap_id))

    # ======================
    # Status feed
    # ======================

    async def _watch(self, swap_id: str) -> None:
        """Poll one swap until it is final, backing off on failures."""
        delay = self.config.poll_retry_delay
        while self._running:
            swap = self._monitored.get(swap_id)
            if swap is None:
                break
            if _is_final(swap):
                self._finish(swap)
                break
            try:
                response = await self.swap_provider.get_swap_status(swap_id)
            except Exception as e:
                logger.error(f"Failed to poll swap {swap_id}: {e}")
                self._current_poll_retry_delay = delay
                await asyncio.sleep(delay)
                delay = min(delay * 2, self.config.max_poll_retry_delay)
                continue

            delay = self.config.poll_retry_delay
            self._current_poll_retry_delay = delay
            if response.status != swap.status.value:
                try:
                    await self.handle_status_update(swap, response.status, response)
                except Exception as e:
                    logger.error(f"Failed to handle status of swap {swap_id}: {e}")
            if swap_id not in self._monitored:
                break
            await asyncio.sleep(self.config.poll_interval)
        self._tasks.pop(swap_id, None)

    async def handle_status_update(
        self,
        swap: PendingSwapBase,
        status: str,
        data: Optional[SwapStatusResponse] = None,
    ) -> bool:
        """Apply a status event to a swap.

        Returns:
            True when the status changed. Unknown, repeated and backward
            events are logged and ignored.
        """
        async with SwapLock(swap.id, operation="status_update"):
            try:
                new_status = SwapStatus(status)
            except ValueError:
                logger.warning(f"Ignoring unknown status {status!r} for swap {swap.id}")
                return False
            old_status = swap.status
            if new_status == old_status:
                return False
            if not can_transition(swap.type, old_status, new_status):
                logger.warning(
                    f"Rejected transition of {swap.type} swap {swap.id}: "
                    f"{old_status.value} -> {new_status.value}"
                )
                return False

            swap.status = new_status
            if (
                isinstance(swap, PendingChainSwap)
                and swap.to == "BTC"
                and new_status in CHAIN_CLAIMABLE
                and data is not None
                and data.transaction is not None
                and data.transaction.hex
            ):
                swap.btc_tx_hex = data.transaction.hex
            logger.info(f"Swap {swap.id}: {old_status.value} -> {new_status.value}")

            await self._notify(self._update_listeners, swap, old_status)
            await self._notify(self._subscriptions.get(swap.id, []), swap, old_status)
            await self.actions.persist(swap)

            if self.config.enable_auto_actions:
                before = swap.status
                await self._execute_action(swap)
                # Actions re-read the status after settling
                if swap.status != before:
                    await self._notify(self._update_listeners, swap, before)
                    await self._notify(self._subscriptions.get(swap.id, []), swap, before)

            if _is_final(swap):
                self._finish(swap)
                if is_success_status(swap.type, swap.status):
                    await self._notify(self._completed_listeners, swap)
                else:
                    error = SwapError(
                        f"Swap failed with status: {swap.status.value}", pending_swap=swap
                    )
                    await self._notify(self._failed_listeners, swap, error)
            return True

    # ======================
    # Actions
    # ======================

    def _action_for(self, swap: PendingSwapBase) -> Optional[str]:
        status = swap.status
        if isinstance(swap, PendingReverseSwap):
            if status in REVERSE_CLAIMABLE:
                if not swap.preimage:
                    logger.info(f"Skipping claim of swap {swap.id}: no preimage (restored swap)")
                    return None
                return ACTION_CLAIM
        elif isinstance(swap, PendingSubmarineSwap):
            if status in SUBMARINE_REFUNDABLE and not swap.refunded:
                if not swap.request.invoice:
                    logger.info(f"Skipping refund of swap {swap.id}: no invoice (restored swap)")
                    return None
                return ACTION_REFUND
        elif isinstance(swap, PendingChainSwap):
            if status in CHAIN_CLAIMABLE:
                if swap.to == "BTC" and not swap.btc_tx_hex:
                    logger.info(f"Skipping claim of swap {swap.id}: lockup transaction unknown")
                    return None
                return ACTION_CLAIM
            if status in CHAIN_REFUNDABLE and swap.from_ == "ARK" and not swap.refunded:
                return ACTION_REFUND
            if status in CHAIN_SIGNABLE and swap.to == "ARK" and self.actions.sign_server_claim:
                return ACTION_SIGN_SERVER_CLAIM
            if status == SwapStatus.TRANSACTION_LOCKUP_FAILED and self.actions.renegotiate:
                return ACTION_RENEGOTIATE
        return None

    def _callable_for(self, action: str) -> Optional[SwapCallable]:
        return {
            ACTION_CLAIM: self.actions.claim,
            ACTION_REFUND: self.actions.refund,
            ACTION_SIGN_SERVER_CLAIM: self.actions.sign_server_claim,
            ACTION_RENEGOTIATE: self.actions.renegotiate,
        }[action]

    async def execute_action(self, swap: PendingSwapBase, action: str) -> bool:
        """Run one action for a swap at most once.

        Callers outside the status feed (a payment flow refunding its own
        failed lockup) go through here so the manager never repeats it.

        Returns:
            False when the action already ran or another one is in flight

        Raises:
            Whatever the action raises; the gate stays open for a retry.
        """
        if (swap.id, action) in self._completed_actions:
            logger.info(f"Skipping {action} of swap {swap.id}: already done")
            return False
        if swap.id in self._in_flight:
            logger.info(f"Skipping {action} of swap {swap.id}: another action is in flight")
            return False

        self._in_flight.add(swap.id)
        try:
            logger.info(f"Running {action} for {SwapType(swap.type).value} swap {swap.id}")
            await self._callable_for(action)(swap)
            self._completed_actions.add((swap.id, action))
        finally:
            self._in_flight.discard(swap.id)
        await self._notify(self._action_listeners, swap, action)
        return True

    async def _execute_action(self, swap: PendingSwapBase) -> None:
        action = self._action_for(swap)
        if action is None:
            return
        try:
            await self.execute_action(swap, action)
        except Exception as e:
            logger.error(f"Failed to {action} swap {swap.id}: {e}")
            await self._notify(self._failed_listeners, swap, e)

    # ======================
    # Waiting
    # ======================

    async def wait_for_swap_completion(self, swap_id: str) -> str:
        """Wait until a swap is final.

        Returns:
            The settlement txid for reverse swaps, the swap id otherwise

        Raises:
            SwapError: If the swap is unknown or ends in a failure status
        """
        swap = self._monitored.get(swap_id) or self._finished.get(swap_id)
        if swap is None:
            raise SwapError(f"Swap {swap_id} not found in manager")

        if not _is_final(swap):
            loop = asyncio.get_running_loop()
            done: asyncio.Future = loop.create_future()

            def on_update(updated: PendingSwapBase, _old: SwapStatus) -> None:
                if _is_final(updated) and not done.done():
                    done.set_result(updated)

            unsubscribe = self.subscribe_to_swap_updates(swap_id, on_update)
            try:
                swap = await done
            finally:
                unsubscribe()
        elif not isinstance(swap, PendingReverseSwap):
            raise SwapError(
                f"{SwapType(swap.type).value.capitalize()} swap already completed", pending_swap=swap
            )

        if not is_success_status(swap.type, swap.status):
            raise SwapError(f"Swap failed with status: {swap.status.value}", pending_swap=swap)
        if isinstance(swap, PendingReverseSwap):
            response = await self.swap_provider.get_reverse_swap_tx_id(swap.id)
            return response.id
        return swap.id

    def get_stats(self) -> dict:
        return {
            "is_running": self._running,
            "monitored_swaps": len(self._monitored),
            "in_flight": len(self._in_flight),
            "completed_actions": len(self._completed_actions),
            "poll_interval": self.config.poll_interval,
            "current_poll_retry_delay": self._current_poll_retry_delay,
        }

"""Per-swap locking.

Status handling, claims and refunds for one swap are serialized; different
swaps never wait on each other.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from arkswap.errors import ArkSwapError

logger = logging.getLogger(__name__)

# Global lock registry: swap_id -> asyncio.Lock
_swap_locks: dict[str, asyncio.Lock] = {}
_registry_lock = asyncio.Lock()


class LockTimeoutError(ArkSwapError):
    """Raised when a swap lock cannot be acquired within the timeout period."""

    pass


async def get_swap_lock(swap_id: str) -> asyncio.Lock:
    """Get or create the lock of a swap."""
    async with _registry_lock:
        if swap_id not in _swap_locks:
            _swap_locks[swap_id] = asyncio.Lock()
        return _swap_locks[swap_id]


class SwapLock:
    """Context manager giving exclusive access to one swap.

    Example:
        async with SwapLock(swap.id, operation="claim"):
            await orchestrator.claim_vhtlc(swap)
    """

    def __init__(
        self,
        swap_id: str,
        timeout: Optional[float] = None,
        operation: str = "swap_operation",
    ):
        """Initialize the lock.

        Args:
            swap_id: Swap identifier
            timeout: Maximum time to wait for the lock (None = wait forever)
            operation: Description of the operation for logging
        """
        self.swap_id = swap_id
        self.timeout = timeout
        self.operation = operation
        self._lock: Optional[asyncio.Lock] = None
        self._acquired = False

    async def __aenter__(self) -> "SwapLock":
        self._lock = await get_swap_lock(self.swap_id)
        try:
            if self.timeout:
                await asyncio.wait_for(self._lock.acquire(), timeout=self.timeout)
            else:
                await self._lock.acquire()
        except asyncio.TimeoutError:
            logger.warning(
                f"Lock timeout for swap {self.swap_id} after {self.timeout}s: {self.operation}"
            )
            raise LockTimeoutError(
                f"Could not acquire lock for swap {self.swap_id} within {self.timeout}s"
            )
        self._acquired = True
        logger.debug(f"Lock acquired for swap {self.swap_id}: {self.operation}")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._acquired and self._lock:
            self._lock.release()
            self._acquired = False
            logger.debug(f"Lock released for swap {self.swap_id}: {self.operation}")
        return False


@asynccontextmanager
async def swap_lock(
    swap_id: str,
    timeout: Optional[float] = None,
    operation: str = "swap_operation",
):
    """Functional form of SwapLock.

    Example:
        async with swap_lock(swap_id, operation="status_update"):
            ...
    """
    async with SwapLock(swap_id, timeout=timeout, operation=operation):
        yield


def is_swap_locked(swap_id: str) -> bool:
    lock = _swap_locks.get(swap_id)
    return lock is not None and lock.locked()


def clear_swap_locks() -> None:
    """Clear all swap locks (useful for testing)."""
    _swap_locks.clear()

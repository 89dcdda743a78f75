"""Utility helpers."""

from arkswap.utils.locks import (
    LockTimeoutError,
    SwapLock,
    clear_swap_locks,
    get_swap_lock,
    swap_lock,
)

__all__ = [
    "LockTimeoutError",
    "SwapLock",
    "clear_swap_locks",
    "get_swap_lock",
    "swap_lock",
]

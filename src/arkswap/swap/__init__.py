"""Swap records and status graphs.

The orchestrator and manager live in ``arkswap.swap.orchestrator`` and
``arkswap.swap.manager``.
"""

from arkswap.swap.models import (
    PendingChainSwap,
    PendingReverseSwap,
    PendingSubmarineSwap,
    PendingSwap,
    PendingSwapBase,
    dump_swap,
    parse_swap,
)
from arkswap.swap.status import (
    SwapStatus,
    SwapType,
    can_transition,
    is_final_status,
    is_success_status,
    next_status,
)

__all__ = [
    "PendingChainSwap",
    "PendingReverseSwap",
    "PendingSubmarineSwap",
    "PendingSwap",
    "PendingSwapBase",
    "SwapStatus",
    "SwapType",
    "can_transition",
    "dump_swap",
    "is_final_status",
    "is_success_status",
    "next_status",
    "parse_swap",
]

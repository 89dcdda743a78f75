"""Swap statuses and their transition graphs.

Each swap kind admits a subset of the counterparty's status strings. Moves
follow an explicit table keyed by (kind, current status, event); anything not
in the table is a backward or unknown move and is rejected.
"""

from enum import Enum

from arkswap.errors import InvalidTransitionError


class SwapType(str, Enum):
    REVERSE = "reverse"
    SUBMARINE = "submarine"
    CHAIN = "chain"


class SwapStatus(str, Enum):
    """Status strings reported by the counterparty."""

    SWAP_CREATED = "swap.created"
    SWAP_EXPIRED = "swap.expired"
    INVOICE_SET = "invoice.set"
    INVOICE_PENDING = "invoice.pending"
    INVOICE_PAID = "invoice.paid"
    INVOICE_SETTLED = "invoice.settled"
    INVOICE_EXPIRED = "invoice.expired"
    INVOICE_FAILED_TO_PAY = "invoice.failedToPay"
    TRANSACTION_MEMPOOL = "transaction.mempool"
    TRANSACTION_CONFIRMED = "transaction.confirmed"
    TRANSACTION_SERVER_MEMPOOL = "transaction.server.mempool"
    TRANSACTION_SERVER_CONFIRMED = "transaction.server.confirmed"
    TRANSACTION_CLAIM_PENDING = "transaction.claim.pending"
    TRANSACTION_CLAIMED = "transaction.claimed"
    TRANSACTION_REFUNDED = "transaction.refunded"
    TRANSACTION_FAILED = "transaction.failed"
    TRANSACTION_LOCKUP_FAILED = "transaction.lockupFailed"


S = SwapStatus

# Forward edges per kind; every listed move is allowed, nothing else is
_REVERSE_EDGES = {
    S.SWAP_CREATED: {
        S.TRANSACTION_MEMPOOL, S.TRANSACTION_CONFIRMED, S.INVOICE_SETTLED,
        S.INVOICE_EXPIRED, S.SWAP_EXPIRED, S.TRANSACTION_FAILED, S.TRANSACTION_REFUNDED,
    },
    S.TRANSACTION_MEMPOOL: {
        S.TRANSACTION_CONFIRMED, S.INVOICE_SETTLED, S.INVOICE_EXPIRED,
        S.SWAP_EXPIRED, S.TRANSACTION_FAILED, S.TRANSACTION_REFUNDED,
    },
    S.TRANSACTION_CONFIRMED: {
        S.INVOICE_SETTLED, S.INVOICE_EXPIRED, S.SWAP_EXPIRED,
        S.TRANSACTION_FAILED, S.TRANSACTION_REFUNDED,
    },
}

_SUBMARINE_PENDING = [
    S.INVOICE_SET, S.TRANSACTION_MEMPOOL, S.TRANSACTION_CONFIRMED,
    S.INVOICE_PENDING, S.INVOICE_PAID, S.TRANSACTION_CLAIM_PENDING,
]
_SUBMARINE_FAILURES = {S.INVOICE_FAILED_TO_PAY, S.TRANSACTION_LOCKUP_FAILED, S.SWAP_EXPIRED}


def _linear(pending: list[SwapStatus], terminal: set[SwapStatus], failures: set[SwapStatus]) -> dict:
    """Edges of a pending sequence where each step may also jump ahead or fail."""
    edges = {}
    for i, status in enumerate(pending):
        edges[status] = set(pending[i + 1:]) | terminal | failures
    return edges


_SUBMARINE_EDGES = _linear(
    [S.SWAP_CREATED] + _SUBMARINE_PENDING, {S.TRANSACTION_CLAIMED}, _SUBMARINE_FAILURES
)
# Refunds follow a failed lockup or payment
for _status in _SUBMARINE_FAILURES:
    _SUBMARINE_EDGES[_status] = {S.TRANSACTION_REFUNDED} | (
        {S.SWAP_EXPIRED} if _status != S.SWAP_EXPIRED else set()
    )

_CHAIN_PENDING = [
    S.SWAP_CREATED, S.TRANSACTION_MEMPOOL, S.TRANSACTION_CONFIRMED,
    S.TRANSACTION_SERVER_MEMPOOL, S.TRANSACTION_SERVER_CONFIRMED, S.TRANSACTION_CLAIM_PENDING,
]
_CHAIN_FAILURES = {S.SWAP_EXPIRED, S.TRANSACTION_FAILED, S.TRANSACTION_REFUNDED}
_CHAIN_EDGES = _linear(
    _CHAIN_PENDING, {S.TRANSACTION_CLAIMED}, _CHAIN_FAILURES | {S.TRANSACTION_LOCKUP_FAILED}
)
# A rejected lockup is renegotiated and the swap carries on
_CHAIN_EDGES[S.TRANSACTION_LOCKUP_FAILED] = (
    {S.TRANSACTION_SERVER_MEMPOOL, S.TRANSACTION_SERVER_CONFIRMED, S.TRANSACTION_CLAIM_PENDING}
    | {S.TRANSACTION_CLAIMED}
    | _CHAIN_FAILURES
)
_CHAIN_EDGES[S.SWAP_EXPIRED] = {S.TRANSACTION_REFUNDED}
_CHAIN_EDGES[S.TRANSACTION_FAILED] = {S.TRANSACTION_REFUNDED}


def _table(kind: SwapType, edges: dict) -> dict[tuple[SwapType, SwapStatus, SwapStatus], SwapStatus]:
    return {
        (kind, current, event): event
        for current, targets in edges.items()
        for event in targets
    }


TRANSITIONS: dict[tuple[SwapType, SwapStatus, SwapStatus], SwapStatus] = {
    **_table(SwapType.REVERSE, _REVERSE_EDGES),
    **_table(SwapType.SUBMARINE, _SUBMARINE_EDGES),
    **_table(SwapType.CHAIN, _CHAIN_EDGES),
}


def next_status(kind: SwapType, current: SwapStatus, event: SwapStatus) -> SwapStatus:
    """Apply a status event.

    Raises:
        InvalidTransitionError: If the event is not a forward move for this kind
    """
    try:
        return TRANSITIONS[(SwapType(kind), SwapStatus(current), SwapStatus(event))]
    except (KeyError, ValueError):
        raise InvalidTransitionError(f"{kind} swap cannot move from {current} to {event}")


def can_transition(kind: SwapType, current: SwapStatus, event: SwapStatus) -> bool:
    return (SwapType(kind), SwapStatus(current), SwapStatus(event)) in TRANSITIONS


# ======================
# Status classes
# ======================

SUBMARINE_FINAL = {S.TRANSACTION_CLAIMED, S.TRANSACTION_REFUNDED} | _SUBMARINE_FAILURES
SUBMARINE_REFUNDABLE = set(_SUBMARINE_FAILURES)
SUBMARINE_PENDING = set(_SUBMARINE_PENDING)
SUBMARINE_SUCCESS = {S.TRANSACTION_CLAIMED}

REVERSE_FINAL = {
    S.INVOICE_SETTLED, S.INVOICE_EXPIRED, S.SWAP_EXPIRED,
    S.TRANSACTION_FAILED, S.TRANSACTION_REFUNDED,
}
REVERSE_FAILED = {S.INVOICE_EXPIRED, S.SWAP_EXPIRED, S.TRANSACTION_FAILED, S.TRANSACTION_REFUNDED}
REVERSE_CLAIMABLE = {S.TRANSACTION_MEMPOOL, S.TRANSACTION_CONFIRMED}
REVERSE_PENDING = {S.SWAP_CREATED} | REVERSE_CLAIMABLE
REVERSE_SUCCESS = {S.INVOICE_SETTLED}

CHAIN_FINAL = {S.TRANSACTION_CLAIMED} | _CHAIN_FAILURES
CHAIN_CLAIMABLE = {S.TRANSACTION_SERVER_MEMPOOL, S.TRANSACTION_SERVER_CONFIRMED}
CHAIN_REFUNDABLE = {S.SWAP_EXPIRED, S.TRANSACTION_FAILED}
CHAIN_SIGNABLE = {S.TRANSACTION_CLAIM_PENDING}
CHAIN_PENDING = set(_CHAIN_PENDING) | {S.TRANSACTION_LOCKUP_FAILED}
CHAIN_SUCCESS = {S.TRANSACTION_CLAIMED}

_FINAL = {
    SwapType.REVERSE: REVERSE_FINAL,
    SwapType.SUBMARINE: SUBMARINE_FINAL,
    SwapType.CHAIN: CHAIN_FINAL,
}
_SUCCESS = {
    SwapType.REVERSE: REVERSE_SUCCESS,
    SwapType.SUBMARINE: SUBMARINE_SUCCESS,
    SwapType.CHAIN: CHAIN_SUCCESS,
}

# Statuses after which the counterparty sends nothing further of interest
# to a one-shot wait; the manager uses the per-kind final sets instead
TERMINAL_STATUSES = {
    S.INVOICE_SETTLED, S.TRANSACTION_CLAIMED, S.TRANSACTION_REFUNDED,
    S.INVOICE_EXPIRED, S.INVOICE_FAILED_TO_PAY, S.TRANSACTION_FAILED,
    S.TRANSACTION_LOCKUP_FAILED, S.SWAP_EXPIRED,
}


def is_final_status(kind: SwapType, status: SwapStatus) -> bool:
    return SwapStatus(status) in _FINAL[SwapType(kind)]


def is_success_status(kind: SwapType, status: SwapStatus) -> bool:
    return SwapStatus(status) in _SUCCESS[SwapType(kind)]


def is_terminal_status(status: SwapStatus) -> bool:
    return SwapStatus(status) in TERMINAL_STATUSES

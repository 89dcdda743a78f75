"""Exception hierarchy for swap operations.

Lifecycle errors carry whether the locked funds can still be claimed or
refunded, plus the swap record they refer to, so callers can act on them.
"""

from typing import Any, Optional


class ArkSwapError(Exception):
    """Base class for all arkswap errors."""

    pass


class SwapError(ArkSwapError):
    """A swap operation failed.

    Attributes:
        message: Human readable reason
        is_claimable: Funds can still be claimed by us
        is_refundable: Funds can still be refunded to us
        pending_swap: The swap record the error refers to, if any
    """

    default_message = "Error during swap."

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        is_claimable: bool = False,
        is_refundable: bool = False,
        pending_swap: Any = None,
    ):
        self.message = message or self.default_message
        self.is_claimable = is_claimable
        self.is_refundable = is_refundable
        self.pending_swap = pending_swap
        super().__init__(self.message)


class InvoiceExpiredError(SwapError):
    default_message = "The invoice has expired."


class InvoiceFailedToPayError(SwapError):
    default_message = "The provider failed to pay the invoice."


class SwapExpiredError(SwapError):
    default_message = "The swap has expired."


class TransactionFailedError(SwapError):
    default_message = "The transaction has failed."


class TransactionLockupFailedError(SwapError):
    default_message = "The lockup transaction failed."


class TransactionRefundedError(SwapError):
    default_message = "The transaction has been refunded."


class NetworkError(ArkSwapError):
    """Transport level failure talking to a collaborator."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        error_data: Any = None,
    ):
        self.message = message
        self.status_code = status_code
        self.error_data = error_data
        super().__init__(message)


class SchemaError(ArkSwapError):
    """A counterparty payload does not have the expected shape."""

    pass


class InvalidKeyError(ArkSwapError, ValueError):
    """A public key has the wrong encoding for its role."""

    def __init__(self, role: str, length: int):
        self.role = role
        self.length = length
        super().__init__(
            f"Invalid {role} public key length {length}: expected 32 (x-only) or 33 (compressed) bytes"
        )


class InvalidTransitionError(ArkSwapError):
    """A status event does not follow the swap's status graph."""

    pass


class MusigError(ArkSwapError):
    """MuSig2 session misuse or invalid contribution."""

    pass

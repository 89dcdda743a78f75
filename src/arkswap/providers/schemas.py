"""Wire models of the swap counterparty API.

Field names are snake_case in Python and camelCase on the wire; dump with
``by_alias=True`` when sending and when persisting.
"""

import re
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

_HEX_RE = re.compile(r"^[0-9a-fA-F]*$")


def _check_compressed_key(v: str) -> str:
    if len(v) != 66 or not _HEX_RE.match(v):
        raise ValueError("Public key must be a 66 character hex compressed key")
    return v.lower()


def _check_hash(v: str) -> str:
    if len(v) != 64 or not _HEX_RE.match(v):
        raise ValueError("Hash must be 64 hex characters")
    return v.lower()


class WireModel(BaseModel):
    """Base for counterparty payloads."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


# ======================
# Shared
# ======================


class TimeoutBlockHeights(WireModel):
    """Absolute refund locktime plus the three relative VHTLC delays."""

    refund: int = Field(..., description="Absolute locktime of the refund path")
    unilateral_claim: int = Field(..., description="CSV delay of the unilateral claim")
    unilateral_refund: int = Field(..., description="CSV delay of the unilateral refund")
    unilateral_refund_without_receiver: int = Field(
        ..., description="CSV delay of the sender-only exit"
    )


class SwapTreeLeaf(WireModel):
    version: int
    output: str = Field(..., description="Hex leaf script")


class SwapTree(WireModel):
    claim_leaf: SwapTreeLeaf
    refund_leaf: SwapTreeLeaf


# ======================
# Reverse swaps
# ======================


class ReverseSwapRequest(WireModel):
    from_: str = Field(default="BTC", alias="from")
    to: str = Field(default="ARK")
    invoice_amount: int = Field(..., ge=0, description="Invoice amount in sats, 0 when restored without fees")
    claim_public_key: str
    preimage_hash: str
    description: Optional[str] = None

    @field_validator("claim_public_key")
    @classmethod
    def validate_claim_public_key(cls, v: str) -> str:
        return _check_compressed_key(v)

    @field_validator("preimage_hash")
    @classmethod
    def validate_preimage_hash(cls, v: str) -> str:
        return _check_hash(v)


class ReverseSwapResponse(WireModel):
    id: str
    invoice: str
    onchain_amount: int
    lockup_address: str
    refund_public_key: str
    timeout_block_heights: TimeoutBlockHeights


# ======================
# Submarine swaps
# ======================


class SubmarineSwapRequest(WireModel):
    from_: str = Field(default="ARK", alias="from")
    to: str = Field(default="BTC")
    invoice: str
    refund_public_key: str

    @field_validator("refund_public_key")
    @classmethod
    def validate_refund_public_key(cls, v: str) -> str:
        return _check_compressed_key(v)


class SubmarineSwapResponse(WireModel):
    id: str
    address: str
    expected_amount: int
    claim_public_key: str
    accept_zero_conf: Optional[bool] = None
    timeout_block_heights: TimeoutBlockHeights


# ======================
# Chain swaps
# ======================


class ChainSwapRequest(WireModel):
    from_: str = Field(..., alias="from")
    to: str
    preimage_hash: str
    claim_public_key: str
    refund_public_key: str
    server_lock_amount: Optional[int] = None
    user_lock_amount: Optional[int] = None

    @field_validator("preimage_hash")
    @classmethod
    def validate_preimage_hash(cls, v: str) -> str:
        return _check_hash(v)


class ChainSwapDetails(WireModel):
    server_public_key: str
    amount: int
    lockup_address: str
    timeout_block_height: int
    timeouts: Optional[TimeoutBlockHeights] = None
    swap_tree: Optional[SwapTree] = None
    bip21: Optional[str] = None


class ChainSwapResponse(WireModel):
    id: str
    claim_details: ChainSwapDetails
    lockup_details: ChainSwapDetails


class ChainClaimDetails(WireModel):
    """What the counterparty wants us to co-sign for its claim."""

    public_key: str
    transaction_hash: str
    pub_nonce: str


class PartialSignature(WireModel):
    pub_nonce: str
    partial_signature: str


class QuoteResponse(WireModel):
    amount: int


# ======================
# Status
# ======================


class StatusTransaction(WireModel):
    id: Optional[str] = None
    hex: Optional[str] = None


class SwapStatusResponse(WireModel):
    status: str
    zero_conf_rejected: Optional[bool] = None
    transaction: Optional[StatusTransaction] = None
    failure_reason: Optional[str] = None


class PreimageResponse(WireModel):
    preimage: str


class ReverseTransactionResponse(WireModel):
    id: str
    hex: Optional[str] = None
    timeout_block_height: Optional[int] = None


class RefundResponse(WireModel):
    transaction: str
    checkpoint: str


# ======================
# Fees and limits
# ======================


class ReverseMinerFees(WireModel):
    lockup: int
    claim: int


class SubmarineFees(WireModel):
    percentage: float
    miner_fees: int


class ReverseFees(WireModel):
    percentage: float
    miner_fees: ReverseMinerFees


class FeesResponse(WireModel):
    submarine: SubmarineFees
    reverse: ReverseFees


class LimitsResponse(WireModel):
    min: int
    max: int


class ChainUserMinerFees(WireModel):
    claim: int
    lockup: int


class ChainMinerFees(WireModel):
    server: int
    user: ChainUserMinerFees


class ChainFeesResponse(WireModel):
    percentage: float
    miner_fees: ChainMinerFees


# ======================
# Restore
# ======================


class RestoredLeaf(WireModel):
    version: int
    output: str


class RestoredTree(WireModel):
    claim_leaf: Optional[RestoredLeaf] = None
    refund_leaf: Optional[RestoredLeaf] = None
    refund_without_boltz_leaf: Optional[RestoredLeaf] = None
    unilateral_claim_leaf: Optional[RestoredLeaf] = None
    unilateral_refund_leaf: Optional[RestoredLeaf] = None
    unilateral_refund_without_boltz_leaf: Optional[RestoredLeaf] = None


class RestoredDetails(WireModel):
    tree: Optional[RestoredTree] = None
    amount: Optional[int] = None
    key_index: Optional[int] = None
    lockup_address: str = ""
    server_public_key: str = ""
    timeout_block_height: int = 0
    preimage_hash: Optional[str] = None
    transaction: Optional[StatusTransaction] = None


class RestoredSwap(WireModel):
    id: str
    type: str
    status: str
    created_at: int
    from_: str = Field(default="", alias="from")
    to: str = ""
    preimage_hash: Optional[str] = None
    claim_details: Optional[RestoredDetails] = None
    refund_details: Optional[RestoredDetails] = None

"""Persistent swap records.

A swap is a tagged union on ``type``. Records hold the original request and
the counterparty's response so every derived script can be rebuilt and
checked again later.
"""

from typing import Annotated, Literal, Optional, Union

from pydantic import Field, TypeAdapter, model_validator

from arkswap.providers.schemas import (
    ChainSwapRequest,
    ChainSwapResponse,
    ReverseSwapRequest,
    ReverseSwapResponse,
    SubmarineSwapRequest,
    SubmarineSwapResponse,
    WireModel,
)
from arkswap.swap.status import SwapStatus, SwapType


class PendingSwapBase(WireModel):
    """Fields shared by every swap kind."""

    id: str
    type: SwapType
    created_at: int = Field(..., description="Unix seconds")
    status: SwapStatus
    preimage: str = Field(default="", description="Hex preimage, empty when unknown")
    refundable: bool = False
    refunded: bool = False

    @model_validator(mode="after")
    def check_response_id(self):
        response = getattr(self, "response", None)
        if response is not None and response.id != self.id:
            raise ValueError(f"Response id {response.id} does not match swap id {self.id}")
        return self


class PendingReverseSwap(PendingSwapBase):
    type: Literal["reverse"] = "reverse"
    request: ReverseSwapRequest
    response: ReverseSwapResponse


class PendingSubmarineSwap(PendingSwapBase):
    type: Literal["submarine"] = "submarine"
    request: SubmarineSwapRequest
    response: SubmarineSwapResponse
    preimage_hash: Optional[str] = None


class PendingChainSwap(PendingSwapBase):
    type: Literal["chain"] = "chain"
    request: ChainSwapRequest
    response: ChainSwapResponse
    amount: int
    ephemeral_key: str = Field(..., description="Hex secret key for the Bitcoin leg")
    fee_sats_per_byte: float = 1.0
    to_address: str
    btc_tx_hex: Optional[str] = None

    @property
    def from_(self) -> str:
        return self.request.from_

    @property
    def to(self) -> str:
        return self.request.to


PendingSwap = Annotated[
    Union[PendingReverseSwap, PendingSubmarineSwap, PendingChainSwap],
    Field(discriminator="type"),
]

_swap_adapter: TypeAdapter = TypeAdapter(PendingSwap)


def parse_swap(data: dict) -> Union[PendingReverseSwap, PendingSubmarineSwap, PendingChainSwap]:
    """Validate a stored or serialized swap into its concrete record type."""
    return _swap_adapter.validate_python(data)


def dump_swap(swap: PendingSwapBase) -> dict:
    return swap.model_dump(by_alias=True, mode="json")

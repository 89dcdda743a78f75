"""Boltz swap counterparty client.

REST API v2 over httpx. Every call opens a short-lived client, as the rest of
the code base does for outbound HTTP.
API docs: https://api.boltz.exchange/swagger
"""

import logging
from typing import Any, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel, TypeAdapter, ValidationError

from arkswap.config import DEFAULT_SWAP_API_URLS
from arkswap.errors import NetworkError, SchemaError
from arkswap.providers.base import SwapProvider
from arkswap.providers.schemas import (
    ChainClaimDetails,
    ChainFeesResponse,
    ChainSwapRequest,
    ChainSwapResponse,
    FeesResponse,
    LimitsResponse,
    PartialSignature,
    PreimageResponse,
    QuoteResponse,
    RefundResponse,
    RestoredSwap,
    ReverseFees,
    ReverseSwapRequest,
    ReverseSwapResponse,
    ReverseTransactionResponse,
    SubmarineFees,
    SubmarineSwapRequest,
    SubmarineSwapResponse,
    SwapStatusResponse,
)

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

ARK = "ARK"
BTC = "BTC"


class BoltzSwapProvider(SwapProvider):
    """Boltz REST client for Ark swaps.

    Example:
        provider = BoltzSwapProvider(network="mutinynet")
        fees = await provider.get_fees()
    """

    name = "boltz"

    def __init__(
        self,
        api_url: Optional[str] = None,
        network: str = "bitcoin",
        timeout: float = 30.0,
        poll_interval: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the client.

        Args:
            api_url: Base URL, defaults to the network's public instance
            network: Ledger network name
            timeout: Request timeout in seconds
            poll_interval: Seconds between status polls
            transport: Custom httpx transport (tests use httpx.MockTransport)
        """
        if api_url is None:
            api_url = DEFAULT_SWAP_API_URLS.get(network)
            if api_url is None:
                raise ValueError(f"No default Boltz API URL for network {network!r}")
        self.api_url = api_url.rstrip("/")
        self.network = network
        self.timeout = timeout
        if poll_interval is not None:
            self.poll_interval = poll_interval
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.api_url, timeout=self.timeout, transport=self._transport
        )

    async def _request(self, method: str, path: str, body: Optional[dict] = None) -> Any:
        try:
            async with self._client() as client:
                response = await client.request(method, path, json=body)
        except httpx.HTTPError as e:
            raise NetworkError(f"Request to {path} failed: {e}") from e

        if response.status_code >= 400:
            try:
                error_data = response.json()
            except ValueError:
                error_data = response.text
            logger.warning(f"Boltz API error {response.status_code} on {method} {path}")
            message = (
                error_data.get("error") if isinstance(error_data, dict) else None
            ) or f"HTTP {response.status_code}"
            raise NetworkError(
                f"Boltz API error: {message}",
                status_code=response.status_code,
                error_data=error_data,
            )

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise SchemaError(f"Invalid JSON from {path}") from e

    @staticmethod
    def _parse(model: Type[T], data: Any, what: str) -> T:
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise SchemaError(f"Invalid {what} response: {e}") from e

    @staticmethod
    def _pair(data: Any, from_: str, to: str, what: str) -> dict:
        try:
            return data[from_][to]
        except (KeyError, TypeError) as e:
            raise SchemaError(f"No {from_}/{to} pair in {what} response") from e

    # ======================
    # Swap creation
    # ======================

    async def create_reverse_swap(self, request: ReverseSwapRequest) -> ReverseSwapResponse:
        data = await self._request("POST", "/v2/swap/reverse", request.to_wire())
        return self._parse(ReverseSwapResponse, data, "reverse swap")

    async def create_submarine_swap(self, request: SubmarineSwapRequest) -> SubmarineSwapResponse:
        data = await self._request("POST", "/v2/swap/submarine", request.to_wire())
        return self._parse(SubmarineSwapResponse, data, "submarine swap")

    async def create_chain_swap(self, request: ChainSwapRequest) -> ChainSwapResponse:
        data = await self._request("POST", "/v2/swap/chain", request.to_wire())
        return self._parse(ChainSwapResponse, data, "chain swap")

    # ======================
    # Status
    # ======================

    async def get_swap_status(self, swap_id: str) -> SwapStatusResponse:
        data = await self._request("GET", f"/v2/swap/{swap_id}")
        return self._parse(SwapStatusResponse, data, "swap status")

    async def get_swap_preimage(self, swap_id: str) -> PreimageResponse:
        data = await self._request("GET", f"/v2/swap/submarine/{swap_id}/preimage")
        return self._parse(PreimageResponse, data, "preimage")

    async def get_reverse_swap_tx_id(self, swap_id: str) -> ReverseTransactionResponse:
        data = await self._request("GET", f"/v2/swap/reverse/{swap_id}/transaction")
        return self._parse(ReverseTransactionResponse, data, "reverse transaction")

    # ======================
    # Cooperative spends
    # ======================

    async def refund_submarine_swap(
        self, swap_id: str, transaction: str, checkpoint: str
    ) -> RefundResponse:
        data = await self._request(
            "POST",
            f"/v2/swap/submarine/{swap_id}/refund/ark",
            {"transaction": transaction, "checkpoint": checkpoint},
        )
        return self._parse(RefundResponse, data, "submarine refund")

    async def refund_chain_swap(
        self, swap_id: str, transaction: str, checkpoint: str
    ) -> RefundResponse:
        data = await self._request(
            "POST",
            f"/v2/swap/chain/{swap_id}/refund/ark",
            {"transaction": transaction, "checkpoint": checkpoint},
        )
        return self._parse(RefundResponse, data, "chain refund")

    async def get_chain_claim_details(self, swap_id: str) -> ChainClaimDetails:
        data = await self._request("GET", f"/v2/swap/chain/{swap_id}/claim")
        return self._parse(ChainClaimDetails, data, "chain claim details")

    async def post_chain_claim_details(
        self,
        swap_id: str,
        preimage: Optional[str] = None,
        to_sign: Optional[dict] = None,
        signature: Optional[PartialSignature] = None,
    ) -> Optional[PartialSignature]:
        body: dict = {}
        if preimage is not None:
            body["preimage"] = preimage
        if to_sign is not None:
            body["toSign"] = to_sign
        if signature is not None:
            body["signature"] = signature.to_wire()
        data = await self._request("POST", f"/v2/swap/chain/{swap_id}/claim", body)
        if not data or "partialSignature" not in data:
            return None
        return self._parse(PartialSignature, data, "chain claim signature")

    async def get_chain_quote(self, swap_id: str) -> int:
        data = await self._request("GET", f"/v2/swap/chain/{swap_id}/quote")
        return self._parse(QuoteResponse, data, "chain quote").amount

    async def post_chain_quote(self, swap_id: str, amount: int) -> None:
        await self._request("POST", f"/v2/swap/chain/{swap_id}/quote", {"amount": amount})

    async def post_btc_transaction(self, tx_hex: str) -> str:
        data = await self._request("POST", "/v2/chain/BTC/transaction", {"hex": tx_hex})
        if not isinstance(data, dict) or "id" not in data:
            raise SchemaError("Invalid transaction broadcast response")
        return data["id"]

    # ======================
    # Fees, limits, restore
    # ======================

    async def get_fees(self) -> FeesResponse:
        submarine = self._pair(
            await self._request("GET", "/v2/swap/submarine"), ARK, BTC, "submarine pairs"
        )
        reverse = self._pair(
            await self._request("GET", "/v2/swap/reverse"), BTC, ARK, "reverse pairs"
        )
        return FeesResponse(
            submarine=self._parse(SubmarineFees, submarine.get("fees"), "submarine fees"),
            reverse=self._parse(ReverseFees, reverse.get("fees"), "reverse fees"),
        )

    async def get_limits(self) -> LimitsResponse:
        pair = self._pair(
            await self._request("GET", "/v2/swap/submarine"), ARK, BTC, "submarine pairs"
        )
        limits = pair.get("limits") or {}
        return self._parse(
            LimitsResponse,
            {"min": limits.get("minimal"), "max": limits.get("maximal")},
            "limits",
        )

    async def get_chain_fees(self, from_: str, to: str) -> ChainFeesResponse:
        pair = self._pair(await self._request("GET", "/v2/swap/chain"), from_, to, "chain pairs")
        return self._parse(ChainFeesResponse, pair.get("fees"), "chain fees")

    async def get_chain_limits(self, from_: str, to: str) -> LimitsResponse:
        pair = self._pair(await self._request("GET", "/v2/swap/chain"), from_, to, "chain pairs")
        limits = pair.get("limits") or {}
        return self._parse(
            LimitsResponse,
            {"min": limits.get("minimal"), "max": limits.get("maximal")},
            "chain limits",
        )

    async def restore_swaps(self, public_key: str) -> list[RestoredSwap]:
        data = await self._request("POST", "/v2/swap/restore", {"publicKey": public_key})
        try:
            return TypeAdapter(list[RestoredSwap]).validate_python(data or [])
        except ValidationError as e:
            raise SchemaError(f"Invalid restore response: {e}") from e

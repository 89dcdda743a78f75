"""Interfaces of the Ark ledger collaborators.

The swap code only needs a narrow slice of the ledger: server info, virtual
coin lookup, offchain submission and batch settlement. Concrete clients live
outside this package; tests use in-process fakes.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, AsyncIterator, Optional, Union

if TYPE_CHECKING:
    from arkswap.signing.base import Identity


@dataclass
class ArkInfo:
    """Ledger server parameters.

    Attributes:
        network: Network name (bitcoin, mutinynet, signet, regtest)
        signer_pubkey: Server signing key, hex (x-only or compressed)
        checkpoint_tapscript: Hex server unroll script used in checkpoint outputs
        forfeit_pubkey: Server key receiving forfeits, hex
        forfeit_address: Onchain address receiving forfeits
        dust: Minimum output value
    """

    network: str
    signer_pubkey: str
    checkpoint_tapscript: str
    forfeit_pubkey: str = ""
    forfeit_address: str = ""
    dust: int = 330


@dataclass
class Vtxo:
    """A virtual coin as reported by the indexer."""

    txid: str
    vout: int
    value: int
    script: str = ""
    is_spent: bool = False
    is_swept: bool = False
    is_preconfirmed: bool = False

    @property
    def is_recoverable(self) -> bool:
        """Swept by the server but not spent: only a batch can settle it."""
        return self.is_swept and not self.is_spent


@dataclass
class SubmitTxResult:
    """Server reply to an offchain submission."""

    ark_txid: str
    final_ark_tx: str
    signed_checkpoint_txs: list[str] = field(default_factory=list)


@dataclass
class BatchStartedEvent:
    id: str
    intent_id_hashes: list[str]
    batch_expiry: int = 0


@dataclass
class ConnectorOutput:
    txid: str
    vout: int
    value: int
    script: str


@dataclass
class BatchFinalizationEvent:
    id: str
    commitment_tx: str
    connectors: list[ConnectorOutput] = field(default_factory=list)


@dataclass
class BatchFinalizedEvent:
    id: str
    commitment_txid: str


@dataclass
class BatchFailedEvent:
    id: str
    reason: str


BatchEvent = Union[BatchStartedEvent, BatchFinalizationEvent, BatchFinalizedEvent, BatchFailedEvent]


class ArkProvider(ABC):
    """Ledger server client."""

    @abstractmethod
    async def get_info(self) -> ArkInfo:
        pass

    @abstractmethod
    async def submit_tx(self, ark_tx: str, checkpoint_txs: list[str]) -> SubmitTxResult:
        """Submit a signed Ark transaction (base64 PSBT) with its checkpoints."""
        pass

    @abstractmethod
    async def finalize_tx(self, ark_txid: str, signed_checkpoint_txs: list[str]) -> None:
        pass

    @abstractmethod
    async def register_intent(self, message: str, proof: str) -> str:
        """Register a batch intent, returning its id."""
        pass

    @abstractmethod
    async def delete_intent(self, message: str, proof: str) -> None:
        pass

    @abstractmethod
    async def confirm_registration(self, intent_id: str) -> None:
        pass

    @abstractmethod
    async def submit_signed_forfeit_txs(
        self, signed_forfeit_txs: list[str], signed_commitment_tx: Optional[str] = None
    ) -> None:
        pass

    @abstractmethod
    def get_event_stream(self, topics: list[str]) -> AsyncIterator[BatchEvent]:
        """Ordered stream of batch events for the given topics."""
        pass


class IndexerProvider(ABC):
    """Virtual coin lookup."""

    @abstractmethod
    async def get_vtxos(self, scripts: list[str], spendable_only: bool = False) -> list[Vtxo]:
        """Coins locked by any of the given hex output scripts."""
        pass


class Wallet(ABC):
    """User wallet on the ledger."""

    identity: "Identity"

    @abstractmethod
    async def get_address(self) -> str:
        """Ark address receiving claimed and refunded funds."""
        pass

    @abstractmethod
    async def send_bitcoin(self, address: str, amount: int) -> str:
        """Send amount sats to an Ark address, returning the Ark txid."""
        pass

"""Ark ledger collaborator interfaces."""

from arkswap.ark.base import (
    ArkInfo,
    ArkProvider,
    BatchEvent,
    BatchFailedEvent,
    BatchFinalizationEvent,
    BatchFinalizedEvent,
    BatchStartedEvent,
    ConnectorOutput,
    IndexerProvider,
    SubmitTxResult,
    Vtxo,
    Wallet,
)

__all__ = [
    "ArkInfo",
    "ArkProvider",
    "BatchEvent",
    "BatchFailedEvent",
    "BatchFinalizationEvent",
    "BatchFinalizedEvent",
    "BatchStartedEvent",
    "ConnectorOutput",
    "IndexerProvider",
    "SubmitTxResult",
    "Vtxo",
    "Wallet",
]

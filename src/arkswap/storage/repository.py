"""Swap repositories.

Writes are last-writer-wins upserts keyed by swap id. Swaps are never deleted
by the swap flows.
"""

import json
import logging
from abc import ABC, abstractmethod
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from arkswap.storage.database import get_db
from arkswap.storage.models import SwapRecord
from arkswap.swap.models import PendingSwapBase, dump_swap, parse_swap
from arkswap.swap.status import SwapType

logger = logging.getLogger(__name__)


class SwapRepository(ABC):
    """Storage of swap records."""

    @abstractmethod
    async def save_swap(self, swap: PendingSwapBase) -> None:
        """Insert or replace the record with this swap's id."""
        pass

    @abstractmethod
    async def get_swap(self, swap_id: str) -> Optional[PendingSwapBase]:
        pass

    @abstractmethod
    async def get_all_swaps(self, swap_type: Optional[SwapType] = None) -> list[PendingSwapBase]:
        pass


class InMemorySwapRepository(SwapRepository):
    """Process-local repository. Records are copied in and out."""

    def __init__(self):
        self._swaps: dict[str, dict] = {}

    async def save_swap(self, swap: PendingSwapBase) -> None:
        self._swaps[swap.id] = dump_swap(swap)

    async def get_swap(self, swap_id: str) -> Optional[PendingSwapBase]:
        data = self._swaps.get(swap_id)
        return parse_swap(data) if data is not None else None

    async def get_all_swaps(self, swap_type: Optional[SwapType] = None) -> list[PendingSwapBase]:
        return [
            parse_swap(data)
            for data in self._swaps.values()
            if swap_type is None or data["type"] == SwapType(swap_type).value
        ]


class SwapRecordStore:
    """Row level operations on the swaps table within one session."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, swap_id: str) -> Optional[SwapRecord]:
        stmt = select(SwapRecord).where(SwapRecord.id == swap_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def upsert(self, swap: PendingSwapBase) -> SwapRecord:
        record = await self.get(swap.id)
        data = json.dumps(dump_swap(swap))
        if record is None:
            record = SwapRecord(
                id=swap.id,
                type=SwapType(swap.type).value,
                status=str(getattr(swap.status, "value", swap.status)),
                created_at=swap.created_at,
                data=data,
            )
            self.session.add(record)
        else:
            record.status = str(getattr(swap.status, "value", swap.status))
            record.data = data
        await self.session.flush()
        return record

    async def list(self, swap_type: Optional[SwapType] = None) -> list[SwapRecord]:
        stmt = select(SwapRecord).order_by(SwapRecord.created_at.desc())
        if swap_type is not None:
            stmt = stmt.where(SwapRecord.type == SwapType(swap_type).value)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())


class SqlSwapRepository(SwapRepository):
    """Repository backed by SQLAlchemy, one session per call.

    Example:
        await init_db()
        repo = SqlSwapRepository()
        await repo.save_swap(swap)
    """

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_factory = session_factory

    async def save_swap(self, swap: PendingSwapBase) -> None:
        async with get_db(self._session_factory) as session:
            await SwapRecordStore(session).upsert(swap)
        logger.debug(f"Saved swap {swap.id} with status {swap.status}")

    async def get_swap(self, swap_id: str) -> Optional[PendingSwapBase]:
        async with get_db(self._session_factory) as session:
            record = await SwapRecordStore(session).get(swap_id)
            return parse_swap(json.loads(record.data)) if record is not None else None

    async def get_all_swaps(self, swap_type: Optional[SwapType] = None) -> list[PendingSwapBase]:
        async with get_db(self._session_factory) as session:
            records = await SwapRecordStore(session).list(swap_type)
            return [parse_swap(json.loads(record.data)) for record in records]

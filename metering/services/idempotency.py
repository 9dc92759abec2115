"""
Idempotency Guard - Free rechecks of recently searched addresses.

NO DICTIONARIES - Lookups return ORM rows or typed history entries.
"""

from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from metering.db.models import SearchRecord
from metering.models.domain import SearchHistoryEntry
from metering.observability.metrics import metrics

logger = get_logger(__name__)

HISTORY_LIMIT = 20


class IdempotencyGuard:
    """
    Detects repeat searches of the same address inside the recheck window.

    Matching is exact on (user_id, address); request validation only trims
    surrounding whitespace.
    """

    def __init__(self, session: AsyncSession, recheck_window: timedelta) -> None:
        self.session = session
        self.recheck_window = recheck_window

    async def find_recent(self, user_id: UUID, address: str, now: datetime) -> SearchRecord | None:
        """Return the latest record for this address searched at or after now - window."""
        cutoff = now - self.recheck_window
        stmt = (
            select(SearchRecord)
            .where(
                SearchRecord.user_id == user_id,
                SearchRecord.address == address,
                SearchRecord.searched_at >= cutoff,
            )
            .order_by(SearchRecord.searched_at.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def refresh(self, record: SearchRecord, now: datetime) -> bool:
        """
        Move a recheck's timestamp forward.

        Best-effort: failure is logged and reported, never raised.
        """
        # Rollback expires the row; read what we log first
        user_id = record.user_id
        previous = record.searched_at
        try:
            record.searched_at = now
            await self.session.flush()
            await self.session.commit()
        except Exception as exc:
            await self.session.rollback()
            logger.error(
                "search_history_refresh_failed",
                user_id=str(user_id),
                last_searched=previous.isoformat(),
                error=str(exc),
            )
            metrics.record_side_effect_failure("history_refresh")
            return False
        return True

    async def record_search(self, user_id: UUID, address: str, now: datetime) -> bool:
        """
        Insert a SearchRecord after the ledger write has committed.

        Best-effort: the ledger write is never rolled back on failure.
        """
        try:
            self.session.add(SearchRecord(user_id=user_id, address=address, searched_at=now))
            await self.session.flush()
            await self.session.commit()
        except Exception as exc:
            await self.session.rollback()
            logger.error("search_history_insert_failed", user_id=str(user_id), error=str(exc))
            metrics.record_side_effect_failure("history_insert")
            return False
        return True

    async def list_history(
        self, user_id: UUID, limit: int = HISTORY_LIMIT
    ) -> list[SearchHistoryEntry]:
        """Most recent searches first."""
        stmt = (
            select(SearchRecord)
            .where(SearchRecord.user_id == user_id)
            .order_by(SearchRecord.searched_at.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return [
            SearchHistoryEntry(address=record.address, searched_at=record.searched_at)
            for record in result.scalars().all()
        ]

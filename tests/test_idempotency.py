"""
Tests for IdempotencyGuard.

Recheck window lookups and best-effort history writes.
"""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError

from conftest import NOW, expire_on_rollback, make_result
from metering.db.models import SearchRecord
from metering.services.idempotency import IdempotencyGuard


def make_record(address: str = "12 Smith St, Sydney", searched_at=NOW) -> SearchRecord:
    return SearchRecord(id=uuid4(), user_id=uuid4(), address=address, searched_at=searched_at)


class TestFindRecent:
    """Lookup inside the recheck window."""

    @pytest.mark.asyncio
    async def test_returns_match(self, db_session: AsyncMock, recheck_window: timedelta):
        record = make_record(searched_at=NOW - timedelta(days=2))
        db_session.execute = AsyncMock(return_value=make_result(scalar=record))

        guard = IdempotencyGuard(db_session, recheck_window)
        found = await guard.find_recent(record.user_id, record.address, NOW)

        assert found is record

    @pytest.mark.asyncio
    async def test_no_match(self, db_session: AsyncMock, recheck_window: timedelta):
        guard = IdempotencyGuard(db_session, recheck_window)
        assert await guard.find_recent(uuid4(), "1 Main Rd", NOW) is None

    @pytest.mark.asyncio
    async def test_query_filters_on_window_cutoff(
        self, db_session: AsyncMock, recheck_window: timedelta
    ):
        guard = IdempotencyGuard(db_session, recheck_window)
        await guard.find_recent(uuid4(), "1 Main Rd", NOW)

        stmt = db_session.execute.call_args[0][0]
        params = stmt.compile().params
        assert NOW - recheck_window in params.values()
        assert "1 Main Rd" in params.values()


class TestRefresh:
    """Timestamp refresh on recheck."""

    @pytest.mark.asyncio
    async def test_moves_timestamp(self, db_session: AsyncMock, recheck_window: timedelta):
        record = make_record(searched_at=NOW - timedelta(days=6))
        guard = IdempotencyGuard(db_session, recheck_window)

        assert await guard.refresh(record, NOW) is True
        assert record.searched_at == NOW
        db_session.commit.assert_called_once()

    @pytest.mark.asyncio
    async def test_failure_is_reported_not_raised(
        self, db_session: AsyncMock, recheck_window: timedelta
    ):
        db_session.commit = AsyncMock(side_effect=OperationalError("update", {}, Exception("down")))
        guard = IdempotencyGuard(db_session, recheck_window)

        assert await guard.refresh(make_record(), NOW) is False
        db_session.rollback.assert_called_once()

    @pytest.mark.asyncio
    async def test_failure_after_rollback_expires_record(
        self, db_session: AsyncMock, recheck_window: timedelta
    ):
        record = MagicMock(spec=SearchRecord)
        record.user_id = uuid4()
        record.searched_at = NOW - timedelta(days=3)
        expire_on_rollback(db_session, record, "user_id", "searched_at")
        db_session.commit = AsyncMock(side_effect=OperationalError("update", {}, Exception("down")))
        guard = IdempotencyGuard(db_session, recheck_window)

        assert await guard.refresh(record, NOW) is False
        db_session.rollback.assert_called_once()


class TestRecordSearch:
    """History insert after a committed charge."""

    @pytest.mark.asyncio
    async def test_inserts_record(self, db_session: AsyncMock, recheck_window: timedelta):
        user_id = uuid4()
        guard = IdempotencyGuard(db_session, recheck_window)

        assert await guard.record_search(user_id, "7 Beach Pde", NOW) is True

        added = db_session.add.call_args[0][0]
        assert isinstance(added, SearchRecord)
        assert added.user_id == user_id
        assert added.address == "7 Beach Pde"
        assert added.searched_at == NOW

    @pytest.mark.asyncio
    async def test_failure_is_reported_not_raised(
        self, db_session: AsyncMock, recheck_window: timedelta
    ):
        db_session.flush = AsyncMock(side_effect=OperationalError("insert", {}, Exception("down")))
        guard = IdempotencyGuard(db_session, recheck_window)

        assert await guard.record_search(uuid4(), "7 Beach Pde", NOW) is False
        db_session.rollback.assert_called_once()


class TestListHistory:
    """Most recent searches first."""

    @pytest.mark.asyncio
    async def test_maps_rows(self, db_session: AsyncMock, recheck_window: timedelta):
        rows = [make_record("A St", NOW), make_record("B St", NOW - timedelta(hours=1))]
        db_session.execute = AsyncMock(return_value=make_result(scalars=rows))

        history = await IdempotencyGuard(db_session, recheck_window).list_history(uuid4())

        assert [entry.address for entry in history] == ["A St", "B St"]
        assert history[0].searched_at == NOW

    @pytest.mark.asyncio
    async def test_limit_is_twenty(self, db_session: AsyncMock, recheck_window: timedelta):
        await IdempotencyGuard(db_session, recheck_window).list_history(uuid4())

        stmt = db_session.execute.call_args[0][0]
        assert 20 in stmt.compile().params.values()

"""
Search Service - Search intake orchestration.

NO DICTIONARIES - Returns SearchOutcome / SearchHistoryEntry dataclasses.

Flow: Idempotency Guard -> (chargeable) Entitlement Calculator -> Ledger Writer
-> history record. The ledger commit and the history write are separate; a
failed history write never undoes a charge.
"""

import time
from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from metering.config import Settings
from metering.exceptions import NoEntitlementError
from metering.models.domain import (
    BalanceSnapshot,
    EntitlementPolicy,
    NoEntitlement,
    SearchHistoryEntry,
    SearchOutcome,
)
from metering.observability.metrics import metrics
from metering.observability.tracing import trace_operation
from metering.services.entitlement import (
    decide_consumption,
    decision_kind,
    policy_from_settings,
    remaining_entitlement,
)
from metering.services.idempotency import IdempotencyGuard
from metering.services.ledger import LedgerWriter

logger = get_logger(__name__)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class SearchService:
    """Meters one search request against the caller's entitlement."""

    def __init__(
        self,
        session: AsyncSession,
        policy: EntitlementPolicy,
        recheck_window: timedelta,
    ) -> None:
        self.session = session
        self.policy = policy
        self.ledger = LedgerWriter(session)
        self.guard = IdempotencyGuard(session, recheck_window)

    @classmethod
    def from_settings(cls, session: AsyncSession, settings: Settings) -> "SearchService":
        return cls(
            session,
            policy=policy_from_settings(settings),
            recheck_window=timedelta(days=settings.recheck_window_days),
        )

    async def perform_search(
        self,
        user_id: UUID,
        address: str,
        skip_consumption: bool = False,
        now: datetime | None = None,
    ) -> SearchOutcome:
        """
        Record a search and charge for it when it is chargeable.

        - Recheck inside the window: no charge, timestamp refreshed.
        - skip_consumption: no charge, history still recorded.
        - Otherwise: calculator decision applied by the ledger writer.

        Raises:
            NoEntitlementError: Nothing left to draw from (nothing is written)
        """
        now = now or _utc_now()
        start_time = time.perf_counter()

        with trace_operation("search_intake", user_id=str(user_id)) as span:
            recent = await self.guard.find_recent(user_id, address, now)

            if recent is not None:
                last_searched = recent.searched_at
                balance = await self.ledger.get_balance(user_id)
                history_recorded = await self.guard.refresh(recent, now)
                outcome = "recheck"
                logger.info(
                    "search_recheck_free",
                    user_id=str(user_id),
                    last_searched=last_searched.isoformat(),
                )
            elif skip_consumption:
                balance = await self.ledger.get_balance(user_id)
                history_recorded = await self.guard.record_search(user_id, address, now)
                outcome = "skipped"
                logger.info("search_consumption_skipped", user_id=str(user_id))
            else:
                balance = await self._charge(user_id, now, start_time)
                history_recorded = await self.guard.record_search(user_id, address, now)
                outcome = "charged"

            span.set_attribute("outcome", outcome)

        metrics.record_search(outcome, time.perf_counter() - start_time)

        return SearchOutcome(
            balance=balance,
            is_recheck=recent is not None,
            credit_consumed=outcome == "charged",
            history_recorded=history_recorded,
            remaining_searches=self.remaining(balance, now),
        )

    async def get_balance(self, user_id: UUID) -> BalanceSnapshot:
        return await self.ledger.get_balance(user_id)

    async def list_history(self, user_id: UUID) -> list[SearchHistoryEntry]:
        return await self.guard.list_history(user_id)

    def remaining(self, balance: BalanceSnapshot, now: datetime | None = None) -> int | None:
        return remaining_entitlement(balance.to_entitlement(), self.policy, now or _utc_now())

    async def _charge(self, user_id: UUID, now: datetime, start_time: float) -> BalanceSnapshot:
        account = await self.ledger.lock_account(user_id)
        snapshot = self.ledger.to_balance(account).to_entitlement()
        decision = decide_consumption(snapshot, self.policy, now)
        kind = decision_kind(decision)
        metrics.record_decision(kind)

        if isinstance(decision, NoEntitlement):
            # Release the row lock; nothing was written
            await self.session.rollback()
            metrics.record_search("rejected", time.perf_counter() - start_time)
            logger.warning(
                "search_rejected_no_entitlement",
                user_id=str(user_id),
                plan=snapshot.plan.value,
                credit_topups=snapshot.credit_topups,
            )
            raise NoEntitlementError(user_id, decision.reason)

        balance = await self.ledger.apply_decision(account, decision)
        logger.info(
            "search_charged",
            user_id=str(user_id),
            decision=kind,
            search_count=balance.search_count,
            monthly_used=balance.monthly_used,
            credit_topups=balance.credit_topups,
        )
        return balance

"""
Billing Event Service - Grants from completed purchases.

NO DICTIONARIES - Events arrive as PlanPurchase / CreditGrant dataclasses.

Grants bypass the entitlement calculator; they add entitlement rather than
consume it. Payment provider signature checks and event deduplication happen
upstream of this service.
"""

from datetime import UTC, datetime

from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from metering.config import Settings
from metering.exceptions import DataIntegrityError
from metering.models.api import PlanType
from metering.models.domain import BalanceSnapshot, CreditGrant, PlanPurchase
from metering.services.entitlement import SUBSCRIPTION_PLANS, UNLIMITED_PLANS, current_billing_month
from metering.services.ledger import LedgerWriter

logger = get_logger(__name__)

# Pack purchases never downgrade a subscriber's plan
PACK_PLAN_OVERRIDES: frozenset[PlanType] = SUBSCRIPTION_PLANS | UNLIMITED_PLANS


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class BillingEventService:
    """Applies plan purchases and direct credit grants through the ledger writer."""

    def __init__(self, session: AsyncSession, starter_pack_credits: int, bulk_pack_credits: int) -> None:
        self.session = session
        self.ledger = LedgerWriter(session)
        self.pack_credits: tuple[tuple[PlanType, int], ...] = (
            (PlanType.STARTER_PACK, starter_pack_credits),
            (PlanType.BULK_PACK, bulk_pack_credits),
        )

    @classmethod
    def from_settings(cls, session: AsyncSession, settings: Settings) -> "BillingEventService":
        return cls(
            session,
            starter_pack_credits=settings.starter_pack_credits,
            bulk_pack_credits=settings.bulk_pack_credits,
        )

    def credits_for_pack(self, plan: PlanType) -> int | None:
        for pack, credits in self.pack_credits:
            if pack == plan:
                return credits
        return None

    async def apply_plan_purchase(
        self, purchase: PlanPurchase, now: datetime | None = None
    ) -> BalanceSnapshot:
        """
        Apply a purchased plan or credit pack.

        - Packs add their credits; the plan moves to the pack unless the
          account is a subscriber.
        - PRO starts a subscription period in the current billing month.
        - UNLIMITED_PRO only changes the plan.

        Raises:
            AccountNotFoundError: Account doesn't exist
            DataIntegrityError: FREE_TRIAL is not purchasable
        """
        now = now or _utc_now()
        plan = purchase.plan

        pack_credits = self.credits_for_pack(plan)
        if pack_credits is not None:
            account = await self.ledger.lock_account(purchase.user_id, create=False)
            current_plan = PlanType(account.plan)
            new_plan = None if current_plan in PACK_PLAN_OVERRIDES else plan
            balance = await self.ledger.grant_credits(purchase.user_id, pack_credits, plan=new_plan)
        elif plan in SUBSCRIPTION_PLANS:
            balance = await self.ledger.set_plan(
                purchase.user_id, plan, billing_month=current_billing_month(now)
            )
        elif plan in UNLIMITED_PLANS:
            balance = await self.ledger.set_plan(purchase.user_id, plan)
        else:
            raise DataIntegrityError(f"Plan {plan.value} cannot be purchased")

        logger.info(
            "plan_purchase_applied",
            user_id=str(purchase.user_id),
            plan=plan.value,
            resulting_plan=balance.plan.value,
            credit_topups=balance.credit_topups,
            external_reference=purchase.external_reference,
        )
        return balance

    async def apply_credit_grant(self, grant: CreditGrant) -> BalanceSnapshot:
        """
        Add credits directly (adjustments, goodwill).

        Raises:
            AccountNotFoundError: Account doesn't exist
        """
        balance = await self.ledger.grant_credits(grant.user_id, grant.credits)
        logger.info(
            "credit_grant_applied",
            user_id=str(grant.user_id),
            credits=grant.credits,
            credit_topups=balance.credit_topups,
            external_reference=grant.external_reference,
        )
        return balance

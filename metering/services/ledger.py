"""
Ledger Writer - The only code that mutates account balances.

NO DICTIONARIES - Writes take closed decision/grant variants, never field maps.
Client-supplied balances are never accepted.
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from metering.db.models import UserAccount
from metering.exceptions import (
    AccountNotFoundError,
    DataIntegrityError,
    WriteVerificationError,
)
from metering.models.api import PlanType
from metering.models.domain import (
    BalanceSnapshot,
    ChargeDecision,
    ConsumePurchasedCredit,
    GrantLifetimeFreeUse,
    GrantMonthlyUse,
    RecordUnlimitedUse,
)
from metering.observability.metrics import metrics

logger = get_logger(__name__)


class LedgerWriter:
    """
    Ledger writer with write verification.

    All write operations follow the pattern:
    1. Lock the account row (SELECT FOR UPDATE)
    2. Write the named field(s)
    3. Flush, then read back and verify
    4. Commit
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize ledger writer with database session."""
        self.session = session

    async def get_or_create_account(self, user_id: UUID) -> UserAccount:
        """
        Get existing account or create a new FREE_TRIAL one.

        Accounts are created on first contact (signup, first search).
        """
        account = await self._find_account(user_id)
        if account is not None:
            return account

        new_account = UserAccount(
            id=user_id,
            plan=PlanType.FREE_TRIAL,
            search_count=0,
            credit_topups=0,
            monthly_used=0,
            referral_count=0,
            referral_credits_earned=0,
            phone_verified=False,
        )
        self.session.add(new_account)

        try:
            await self.session.flush()
        except IntegrityError as e:
            # Race condition - account created by another request
            logger.warning("account_creation_race", user_id=str(user_id), error=str(e))
            await self.session.rollback()
            account = await self._find_account(user_id)
            if account is None:
                raise WriteVerificationError(f"Account creation failed: {str(e)}") from e
            return account

        verified_account = await self.session.get(UserAccount, user_id)
        if verified_account is None:
            raise WriteVerificationError(f"Account {user_id} not found after insert")

        await self.session.commit()
        logger.info("account_created", user_id=str(user_id))
        return verified_account

    async def lock_account(self, user_id: UUID, create: bool = True) -> UserAccount:
        """
        Lock the account row for a read-decide-write cycle.

        The returned row is the fresh snapshot taken immediately before writing.

        Raises:
            AccountNotFoundError: Account doesn't exist and create is False
        """
        account = await self._lock_account_for_update(user_id)
        if account is not None:
            return account
        if not create:
            raise AccountNotFoundError(user_id)

        await self.get_or_create_account(user_id)
        account = await self._lock_account_for_update(user_id)
        if account is None:
            raise WriteVerificationError(f"Account {user_id} disappeared after creation")
        return account

    async def get_balance(self, user_id: UUID) -> BalanceSnapshot:
        """Current balances, creating the account on first contact."""
        account = await self.get_or_create_account(user_id)
        return self.to_balance(account)

    async def apply_decision(self, account: UserAccount, decision: ChargeDecision) -> BalanceSnapshot:
        """
        Apply exactly one calculator decision to a locked account.

        Raises:
            DataIntegrityError: Re-read value differs from the written one
            WriteVerificationError: Account row vanished
        """
        if isinstance(decision, GrantLifetimeFreeUse):
            account.search_count = decision.search_count
        elif isinstance(decision, GrantMonthlyUse):
            account.monthly_used = decision.monthly_used
            if decision.billing_month is not None:
                account.billing_month = decision.billing_month
        elif isinstance(decision, ConsumePurchasedCredit):
            account.credit_topups = decision.credit_topups
        elif isinstance(decision, RecordUnlimitedUse):
            account.search_count = decision.search_count
        else:
            raise DataIntegrityError(f"Unknown ledger decision: {type(decision).__name__}")

        await self.session.flush()
        verified = await self._reload(account.id)

        if isinstance(decision, GrantMonthlyUse):
            self._verify_field("monthly_used", decision.monthly_used, verified.monthly_used)
            if decision.billing_month is not None:
                self._verify_field("billing_month", decision.billing_month, verified.billing_month)
        elif isinstance(decision, ConsumePurchasedCredit):
            self._verify_field("credit_topups", decision.credit_topups, verified.credit_topups)
        else:
            self._verify_field("search_count", decision.search_count, verified.search_count)

        await self.session.commit()
        metrics.record_write_verification(success=True)
        return self.to_balance(verified)

    async def grant_credits(
        self, user_id: UUID, credits: int, plan: PlanType | None = None
    ) -> BalanceSnapshot:
        """
        Add purchased credits, optionally moving the account onto a pack plan.

        Raises:
            DataIntegrityError: Non-positive grant or verification mismatch
        """
        if credits <= 0:
            raise DataIntegrityError(f"Credit grant must be positive: {credits}")

        account = await self.lock_account(user_id, create=False)
        credits_after = account.credit_topups + credits
        account.credit_topups = credits_after
        if plan is not None:
            account.plan = plan
        await self.session.flush()

        verified = await self._reload(account.id)
        self._verify_field("credit_topups", credits_after, verified.credit_topups)
        if plan is not None:
            self._verify_field("plan", plan, verified.plan)

        await self.session.commit()
        metrics.record_write_verification(success=True)
        logger.info(
            "credits_granted",
            user_id=str(user_id),
            credits=credits,
            credit_topups=credits_after,
            plan=plan.value if plan else None,
        )
        return self.to_balance(verified)

    async def set_plan(
        self, user_id: UUID, plan: PlanType, billing_month: str | None = None
    ) -> BalanceSnapshot:
        """
        Change the account plan.

        Passing billing_month starts a subscription period with zero usage.
        """
        account = await self.lock_account(user_id, create=False)
        account.plan = plan
        if billing_month is not None:
            account.billing_month = billing_month
            account.monthly_used = 0
        await self.session.flush()

        verified = await self._reload(account.id)
        self._verify_field("plan", plan, verified.plan)
        if billing_month is not None:
            self._verify_field("billing_month", billing_month, verified.billing_month)
            self._verify_field("monthly_used", 0, verified.monthly_used)

        await self.session.commit()
        metrics.record_write_verification(success=True)
        logger.info(
            "plan_changed", user_id=str(user_id), plan=plan.value, billing_month=billing_month
        )
        return self.to_balance(verified)

    async def apply_referral_reward(
        self, referrer: UserAccount, referred: UserAccount, reward: int
    ) -> int:
        """
        Credit both parties of a referral on already locked rows.

        Does NOT commit: the caller commits together with the referral status
        change so both land in one transaction. Returns the referrer's new
        referral count.
        """
        if reward <= 0:
            raise DataIntegrityError(f"Referral reward must be positive: {reward}")

        referrer_credits_after = referrer.credit_topups + reward
        referred_credits_after = referred.credit_topups + reward
        earned_after = referrer.referral_credits_earned + reward
        count_after = referrer.referral_count + 1

        referrer.credit_topups = referrer_credits_after
        referrer.referral_credits_earned = earned_after
        referrer.referral_count = count_after
        referred.credit_topups = referred_credits_after
        await self.session.flush()

        verified_referrer = await self._reload(referrer.id)
        verified_referred = await self._reload(referred.id)
        self._verify_field("credit_topups", referrer_credits_after, verified_referrer.credit_topups)
        self._verify_field(
            "referral_credits_earned", earned_after, verified_referrer.referral_credits_earned
        )
        self._verify_field("referral_count", count_after, verified_referrer.referral_count)
        self._verify_field("credit_topups", referred_credits_after, verified_referred.credit_topups)

        metrics.record_write_verification(success=True)
        return count_after

    @staticmethod
    def to_balance(account: UserAccount) -> BalanceSnapshot:
        """Convert ORM account to a balance snapshot."""
        return BalanceSnapshot(
            user_id=account.id,
            plan=PlanType(account.plan),
            search_count=account.search_count,
            credit_topups=account.credit_topups,
            monthly_used=account.monthly_used,
            billing_month=account.billing_month,
            phone_verified=bool(account.phone_verified),
        )

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _find_account(self, user_id: UUID) -> UserAccount | None:
        """Find account by id without locking."""
        stmt = select(UserAccount).where(UserAccount.id == user_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _lock_account_for_update(self, user_id: UUID) -> UserAccount | None:
        """Lock account row for update (SELECT FOR UPDATE)."""
        stmt = select(UserAccount).where(UserAccount.id == user_id).with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _reload(self, user_id: UUID) -> UserAccount:
        verified = await self.session.get(UserAccount, user_id, populate_existing=True)
        if verified is None:
            metrics.record_write_verification(success=False)
            raise WriteVerificationError(f"Account {user_id} disappeared after update")
        return verified

    @staticmethod
    def _verify_field(name: str, expected: object, actual: object) -> None:
        if expected != actual:
            metrics.record_write_verification(success=False)
            raise DataIntegrityError(f"{name} mismatch: expected {expected}, got {actual}")


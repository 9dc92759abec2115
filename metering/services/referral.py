"""
Referral Service - Referral state machine.

NO DICTIONARIES - All transitions return typed domain models.

States: no referral -> pending (signup with code) -> credited (referred user's
phone verified). The credited transition happens at most once per referred
user: the pending row is locked and the status gate is re-checked under the
lock, so a repeat trigger finds nothing to do.
"""

import secrets
from datetime import UTC, datetime, timedelta
from uuid import UUID, uuid4

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from metering.config import Settings
from metering.db.models import Referral, UserAccount
from metering.exceptions import (
    AlreadyReferredError,
    DataIntegrityError,
    ReferralCapReachedError,
    ReferralCodeGenerationError,
    ReferralCodeNotFoundError,
    ReferralNotEligibleError,
    SelfReferralError,
    WriteVerificationError,
)
from metering.models.api import PlanType, ReferralStatus
from metering.models.domain import ReferralCredit, ReferralLink, ReferralPolicy, ReferralStats
from metering.observability.metrics import metrics
from metering.observability.tracing import trace_operation
from metering.services.ledger import LedgerWriter
from metering.services.notifications import RewardNotifier

logger = get_logger(__name__)

# No I, O, 0 or 1 so codes survive being read aloud
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
MAX_CODE_ATTEMPTS = 10

ELIGIBLE_PLANS: frozenset[PlanType] = frozenset({PlanType.FREE_TRIAL, PlanType.STARTER_PACK})


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def generate_referral_code(length: int = 6) -> str:
    """Random code from the unambiguous alphabet."""
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def referral_policy_from_settings(settings: Settings) -> ReferralPolicy:
    """Build the referral program policy from application settings."""
    return ReferralPolicy(
        reward_credits=settings.referral_reward_credits,
        max_referrals=settings.max_referrals_per_user,
        milestones=settings.referral_milestone_set,
        reminder_delay=timedelta(hours=settings.referral_reminder_delay_hours),
        code_length=settings.referral_code_length,
    )


class ReferralService:
    """
    Referral program: codes, signup tracking and the credited transition.

    Precondition failures raise ReferralError subclasses before anything is
    written; they never fail the signup that triggered them.
    """

    def __init__(
        self,
        session: AsyncSession,
        policy: ReferralPolicy,
        public_base_url: str,
        notifier: RewardNotifier | None = None,
    ) -> None:
        self.session = session
        self.policy = policy
        self.public_base_url = public_base_url.rstrip("/")
        self.ledger = LedgerWriter(session)
        self.notifier = notifier or RewardNotifier(session, policy, public_base_url)

    @classmethod
    def from_settings(cls, session: AsyncSession, settings: Settings) -> "ReferralService":
        return cls(
            session,
            policy=referral_policy_from_settings(settings),
            public_base_url=settings.public_base_url,
        )

    def referral_link(self, code: str) -> str:
        """Shareable signup link carrying the code."""
        return f"{self.public_base_url}/?ref={code}"

    async def get_or_create_code(self, user_id: UUID) -> str:
        """
        Return the user's referral code, generating one on first request.

        Raises:
            ReferralNotEligibleError: Plan is not FREE_TRIAL or STARTER_PACK
            ReferralCodeGenerationError: No unique code after MAX_CODE_ATTEMPTS
        """
        account = await self.ledger.get_or_create_account(user_id)
        plan = PlanType(account.plan)
        if plan not in ELIGIBLE_PLANS:
            raise ReferralNotEligibleError(user_id, plan.value)

        if account.referral_code:
            return account.referral_code

        code: str | None = None
        for _ in range(MAX_CODE_ATTEMPTS):
            candidate = generate_referral_code(self.policy.code_length)
            if await self._find_account_by_code(candidate) is None:
                code = candidate
                break

        if code is None:
            logger.error("referral_code_generation_exhausted", user_id=str(user_id))
            raise ReferralCodeGenerationError(MAX_CODE_ATTEMPTS)

        account.referral_code = code
        try:
            await self.session.flush()
        except IntegrityError as e:
            # Another request claimed the same code between check and write
            await self.session.rollback()
            logger.warning("referral_code_collision", user_id=str(user_id), error=str(e))
            raise ReferralCodeGenerationError(MAX_CODE_ATTEMPTS) from e

        verified = await self.session.get(UserAccount, user_id, populate_existing=True)
        if verified is None or verified.referral_code != code:
            raise WriteVerificationError(f"Referral code not stored for {user_id}")

        await self.session.commit()
        logger.info("referral_code_created", user_id=str(user_id), referral_code=code)
        return code

    async def track_signup(
        self, referral_code: str, new_user_id: UUID, now: datetime | None = None
    ) -> ReferralLink:
        """
        Link a new user to the referrer owning the code (pending referral).

        Raises:
            ReferralCodeNotFoundError: No account owns the code
            ReferralCapReachedError: Referrer is at the referral cap
            SelfReferralError: Code belongs to the new user
            AlreadyReferredError: New user already has a referral row
        """
        now = now or _utc_now()
        code = referral_code.strip().upper()

        with trace_operation("referral_track", new_user_id=str(new_user_id)):
            referrer = await self._find_account_by_code(code)
            if referrer is None:
                logger.info("referral_code_invalid", referral_code=code)
                raise ReferralCodeNotFoundError(code)

            # A rollback in get_or_create_account expires the referrer row
            referrer_id = referrer.id

            if referrer.referral_count >= self.policy.max_referrals:
                logger.info("referral_cap_reached", referrer_id=str(referrer_id))
                raise ReferralCapReachedError(referrer_id, self.policy.max_referrals)

            if referrer_id == new_user_id:
                logger.warning("referral_self_attempt", user_id=str(new_user_id))
                raise SelfReferralError(new_user_id)

            if await self._find_referral_by_referred(new_user_id) is not None:
                logger.info("referral_already_exists", referred_id=str(new_user_id))
                raise AlreadyReferredError(new_user_id)

            new_account = await self.ledger.get_or_create_account(new_user_id)

            referral = Referral(
                id=uuid4(),
                referrer_id=referrer_id,
                referred_id=new_user_id,
                status=ReferralStatus.PENDING,
                created_at=now,
            )
            self.session.add(referral)
            new_account.referred_by_id = referrer_id

            try:
                await self.session.flush()
            except IntegrityError as e:
                # Unique referred_id: a concurrent signup won
                await self.session.rollback()
                logger.info("referral_insert_race", referred_id=str(new_user_id), error=str(e))
                raise AlreadyReferredError(new_user_id) from e

            verified = await self.session.get(Referral, referral.id)
            if verified is None:
                raise WriteVerificationError(f"Referral {referral.id} not found after insert")

            await self.session.commit()

        metrics.record_referral_event("tracked")
        logger.info(
            "referral_tracked",
            referrer_id=str(referrer_id),
            referred_id=str(new_user_id),
        )

        await self.notifier.notify_referral_signup(referrer_id, new_user_id)

        return ReferralLink(
            referral_id=verified.id,
            referrer_id=verified.referrer_id,
            referred_id=verified.referred_id,
            status=ReferralStatus(verified.status),
            created_at=verified.created_at,
        )

    async def credit_on_verification(
        self, referred_id: UUID, now: datetime | None = None
    ) -> ReferralCredit | None:
        """
        Move the referred user's pending referral to credited.

        Both balances, the referrer's counters and the status change commit
        together. Returns None when there is no pending referral.
        """
        now = now or _utc_now()

        with trace_operation("referral_credit", referred_id=str(referred_id)) as span:
            referral = await self._lock_pending_referral(referred_id)
            if referral is None:
                await self.session.rollback()
                logger.info("referral_no_pending", referred_id=str(referred_id))
                span.set_attribute("credited", False)
                return None

            referrer, referred = await self._lock_parties(referral.referrer_id, referral.referred_id)
            reward = self.policy.reward_credits
            new_count = await self.ledger.apply_referral_reward(referrer, referred, reward)

            referral.status = ReferralStatus.CREDITED
            referral.verified_at = now
            referral.credited_at = now
            await self.session.flush()

            verified = await self.session.get(Referral, referral.id, populate_existing=True)
            if verified is None:
                raise WriteVerificationError(f"Referral {referral.id} disappeared after update")
            if verified.status != ReferralStatus.CREDITED:
                raise DataIntegrityError(
                    f"Referral status mismatch: expected credited, got {verified.status}"
                )

            await self.session.commit()
            span.set_attribute("credited", True)

        milestone = new_count if new_count in self.policy.milestones else None
        credit = ReferralCredit(
            referral_id=referral.id,
            referrer_id=referral.referrer_id,
            referred_id=referral.referred_id,
            reward_credits=reward,
            referrer_referral_count=new_count,
            referrer_phone=referrer.phone,
            milestone=milestone,
            credited_at=now,
        )

        metrics.record_referral_event("credited", credits=reward * 2)
        if milestone is not None:
            metrics.record_referral_event("milestone")
        logger.info(
            "referral_credited",
            referral_id=str(referral.id),
            referrer_id=str(referral.referrer_id),
            referred_id=str(referral.referred_id),
            reward_credits=reward,
            referral_count=new_count,
            milestone=milestone,
        )

        await self.notifier.notify_referral_credited(credit)
        return credit

    async def award_pending(self, user_id: UUID, now: datetime | None = None) -> ReferralCredit | None:
        """
        Explicit award trigger for a referred user.

        Only acts once the user's phone is verified; otherwise returns None.
        """
        account = await self.ledger.get_or_create_account(user_id)
        if not account.phone_verified:
            logger.info("referral_award_phone_unverified", user_id=str(user_id))
            return None
        return await self.credit_on_verification(user_id, now)

    async def get_stats(self, user_id: UUID) -> ReferralStats:
        """Referral standing of one user."""
        account = await self.ledger.get_or_create_account(user_id)

        stmt = select(func.count(Referral.id)).where(
            Referral.referrer_id == user_id,
            Referral.status == ReferralStatus.PENDING,
        )
        pending = (await self.session.execute(stmt)).scalar_one()

        return ReferralStats(
            referral_code=account.referral_code,
            referral_count=account.referral_count,
            referral_credits_earned=account.referral_credits_earned,
            pending_referrals=int(pending or 0),
            max_referrals=self.policy.max_referrals,
        )

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _find_account_by_code(self, code: str) -> UserAccount | None:
        stmt = select(UserAccount).where(UserAccount.referral_code == code)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _find_referral_by_referred(self, referred_id: UUID) -> Referral | None:
        stmt = select(Referral).where(Referral.referred_id == referred_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _lock_pending_referral(self, referred_id: UUID) -> Referral | None:
        """Lock the pending referral row (SELECT FOR UPDATE)."""
        stmt = (
            select(Referral)
            .where(
                Referral.referred_id == referred_id,
                Referral.status == ReferralStatus.PENDING,
            )
            .with_for_update()
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _lock_parties(
        self, referrer_id: UUID, referred_id: UUID
    ) -> tuple[UserAccount, UserAccount]:
        """Lock both accounts in id order so concurrent rewards cannot deadlock."""
        if str(referrer_id) < str(referred_id):
            referrer = await self.ledger.lock_account(referrer_id, create=False)
            referred = await self.ledger.lock_account(referred_id, create=False)
        else:
            referred = await self.ledger.lock_account(referred_id, create=False)
            referrer = await self.ledger.lock_account(referrer_id, create=False)
        return referrer, referred

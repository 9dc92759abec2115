"""
Phone Verification Service - The trust gate in front of referral rewards.

NO DICTIONARIES - Returns PhoneCodeIssued / PhoneVerificationResult dataclasses.
"""

import secrets
from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from metering.config import Settings
from metering.db.models import ReminderJob, UserAccount
from metering.exceptions import DataIntegrityError, PhoneVerificationError, WriteVerificationError
from metering.models.api import ReminderKind
from metering.models.domain import PhoneCodeIssued, PhoneVerificationResult
from metering.observability.metrics import metrics
from metering.services.ledger import LedgerWriter
from metering.services.referral import ReferralService

logger = get_logger(__name__)

CODE_DIGITS = 6


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def generate_verification_code(digits: int = CODE_DIGITS) -> str:
    """Zero-padded numeric code."""
    return f"{secrets.randbelow(10**digits):0{digits}d}"


def _mask_phone(phone: str) -> str:
    return phone[:-4] + "****" if len(phone) > 4 else "****"


class PhoneVerificationService:
    """
    Issues and checks SMS verification codes.

    A successful verification triggers the pending -> credited referral
    transition. Referral failures are reported, never raised: the phone
    stays verified and the award endpoint can retry.
    """

    def __init__(
        self,
        session: AsyncSession,
        code_ttl: timedelta,
        referrals: ReferralService,
    ) -> None:
        self.session = session
        self.code_ttl = code_ttl
        self.ledger = LedgerWriter(session)
        self.referrals = referrals

    @classmethod
    def from_settings(cls, session: AsyncSession, settings: Settings) -> "PhoneVerificationService":
        return cls(
            session,
            code_ttl=timedelta(minutes=settings.phone_code_ttl_minutes),
            referrals=ReferralService.from_settings(session, settings),
        )

    async def issue_code(
        self, user_id: UUID, phone: str, now: datetime | None = None
    ) -> PhoneCodeIssued:
        """
        Store a fresh code for the pending phone and queue it for SMS delivery.

        The code and the delivery job commit together.
        """
        now = now or _utc_now()
        code = generate_verification_code()
        expires_at = now + self.code_ttl
        ttl_minutes = int(self.code_ttl.total_seconds() // 60)

        account = await self.ledger.lock_account(user_id)
        account.phone_pending = phone
        account.phone_verification_code = code
        account.phone_code_expires_at = expires_at

        self.session.add(
            ReminderJob(
                user_id=user_id,
                kind=ReminderKind.VERIFICATION_CODE,
                contact=phone,
                body=(
                    f"Your verification code is: {code}. "
                    f"This code expires in {ttl_minutes} minutes."
                ),
                send_after=now,
            )
        )
        await self.session.flush()

        verified = await self.session.get(UserAccount, user_id, populate_existing=True)
        if verified is None:
            raise WriteVerificationError(f"Account {user_id} disappeared after update")
        if verified.phone_verification_code != code:
            raise DataIntegrityError("Verification code mismatch after write")

        await self.session.commit()
        # Never log the code itself
        logger.info("phone_code_issued", user_id=str(user_id), phone=_mask_phone(phone))
        return PhoneCodeIssued(user_id=user_id, phone=phone, expires_at=expires_at)

    async def verify(
        self, user_id: UUID, phone: str, code: str, now: datetime | None = None
    ) -> PhoneVerificationResult:
        """
        Check a code and mark the phone verified.

        Raises:
            PhoneVerificationError: No code requested, wrong code, expired code
                or phone mismatch (nothing is written)
        """
        now = now or _utc_now()
        account = await self.ledger.lock_account(user_id)

        stored_code = account.phone_verification_code
        if stored_code is None:
            await self.session.rollback()
            raise PhoneVerificationError("No verification code requested")

        if not secrets.compare_digest(stored_code, code):
            await self.session.rollback()
            logger.info("phone_code_invalid", user_id=str(user_id))
            raise PhoneVerificationError("Invalid verification code")

        expires_at = account.phone_code_expires_at
        if expires_at is not None and expires_at < now:
            await self.session.rollback()
            logger.info("phone_code_expired", user_id=str(user_id))
            raise PhoneVerificationError(
                "Verification code has expired. Please request a new one."
            )

        if account.phone_pending and account.phone_pending != phone:
            await self.session.rollback()
            logger.warning("phone_mismatch", user_id=str(user_id))
            raise PhoneVerificationError("Phone number mismatch")

        account.phone = phone
        account.phone_verified = True
        account.phone_pending = None
        account.phone_verification_code = None
        account.phone_code_expires_at = None
        await self.session.flush()

        verified = await self.session.get(UserAccount, user_id, populate_existing=True)
        if verified is None:
            raise WriteVerificationError(f"Account {user_id} disappeared after update")
        if not verified.phone_verified or verified.phone != phone:
            raise DataIntegrityError("Phone verification not stored")

        await self.session.commit()
        logger.info("phone_verified", user_id=str(user_id), phone=_mask_phone(phone))

        referral = None
        referral_failed = False
        try:
            referral = await self.referrals.credit_on_verification(user_id, now)
        except Exception as exc:
            await self.session.rollback()
            referral_failed = True
            metrics.record_error(type(exc).__name__, "referral_credit_on_verification")
            logger.error(
                "referral_credit_after_verification_failed",
                user_id=str(user_id),
                error=str(exc),
            )

        return PhoneVerificationResult(
            user_id=user_id,
            phone=phone,
            referral=referral,
            referral_failed=referral_failed,
        )

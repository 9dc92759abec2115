"""
Reward Notifier and notification inbox.

NO DICTIONARIES - Notification payloads are explicit columns.

Every write in RewardNotifier is best-effort: it runs after the reward has
committed, failures are logged and counted, nothing is retried here.
"""

from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from metering.db.models import Notification, ReminderJob
from metering.models.api import NotificationType, ReminderKind
from metering.models.domain import (
    NotificationData,
    NotificationInbox,
    ReferralCredit,
    ReferralPolicy,
)
from metering.observability.metrics import metrics

logger = get_logger(__name__)

INBOX_LIMIT = 20


class RewardNotifier:
    """Emits user-facing notifications and delayed reminders for referral events."""

    def __init__(self, session: AsyncSession, policy: ReferralPolicy, public_base_url: str) -> None:
        self.session = session
        self.policy = policy
        self.public_base_url = public_base_url

    async def notify_referral_signup(self, referrer_id: UUID, referred_id: UUID) -> bool:
        """Tell the referrer that someone signed up with their code."""
        row = Notification(
            user_id=referrer_id,
            type=NotificationType.REFERRAL_SIGNUP,
            title="New referral signup!",
            message=(
                "A friend signed up with your link. Credits will be awarded "
                "once they verify their phone."
            ),
            counterpart_user_id=referred_id,
            read=False,
        )
        return await self._emit("referral_signup", [row], referrer_id)

    async def notify_referral_credited(self, credit: ReferralCredit) -> bool:
        """
        Notify both parties of a credited referral.

        Adds a milestone notification when the referrer just reached one, and
        schedules an SMS reminder when the referrer has a phone on file.
        """
        reward = credit.reward_credits
        rows: list[Notification | ReminderJob] = [
            Notification(
                user_id=credit.referrer_id,
                type=NotificationType.REFERRAL_CREDITED,
                title=f"+{reward} credits earned!",
                message=(
                    f"Your friend verified their account. "
                    f"You both earned {reward} free property audits!"
                ),
                reward_credits=reward,
                counterpart_user_id=credit.referred_id,
                read=False,
            ),
            Notification(
                user_id=credit.referred_id,
                type=NotificationType.WELCOME_BONUS,
                title="Welcome bonus!",
                message=f"You got {reward} bonus credits for joining via a friend's referral!",
                reward_credits=reward,
                counterpart_user_id=credit.referrer_id,
                read=False,
            ),
        ]

        if credit.milestone is not None:
            rows.append(
                Notification(
                    user_id=credit.referrer_id,
                    type=NotificationType.REFERRAL_MILESTONE,
                    title=f"{credit.milestone} referrals!",
                    message=f"Amazing! You've referred {credit.milestone} friends!",
                    milestone=credit.milestone,
                    read=False,
                )
            )

        if credit.referrer_phone:
            rows.append(
                ReminderJob(
                    user_id=credit.referrer_id,
                    kind=ReminderKind.REFERRAL_REMINDER,
                    contact=credit.referrer_phone,
                    body=(
                        f"Great news! Your friend joined and you've earned {reward} free "
                        f"property audits. Log in to use them: {self.public_base_url}"
                    ),
                    send_after=credit.credited_at + self.policy.reminder_delay,
                )
            )

        return await self._emit("referral_credited", rows, credit.referrer_id)

    async def _emit(
        self, operation: str, rows: list[Notification | ReminderJob], user_id: UUID
    ) -> bool:
        try:
            self.session.add_all(rows)
            await self.session.flush()
            await self.session.commit()
        except Exception as exc:
            await self.session.rollback()
            logger.error(
                "notification_emit_failed",
                operation=operation,
                user_id=str(user_id),
                error=str(exc),
            )
            metrics.record_side_effect_failure(f"notify_{operation}")
            return False

        logger.info("notifications_emitted", operation=operation, count=len(rows))
        return True


class NotificationService:
    """Inbox operations, always scoped to the calling user."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def list_recent(self, user_id: UUID, limit: int = INBOX_LIMIT) -> NotificationInbox:
        """Most recent notifications first, plus the total unread count."""
        stmt = (
            select(Notification)
            .where(Notification.user_id == user_id)
            .order_by(Notification.created_at.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        rows = result.scalars().all()

        count_stmt = select(func.count(Notification.id)).where(
            Notification.user_id == user_id,
            Notification.read.is_(False),
        )
        unread = (await self.session.execute(count_stmt)).scalar_one()

        return NotificationInbox(
            notifications=[self._to_domain(row) for row in rows],
            unread_count=int(unread or 0),
        )

    async def mark_read(self, user_id: UUID, notification_id: UUID) -> int:
        """Mark one of the caller's notifications read. Returns rows updated."""
        stmt = (
            update(Notification)
            .where(Notification.id == notification_id, Notification.user_id == user_id)
            .values(read=True)
        )
        result = await self.session.execute(stmt)
        await self.session.commit()
        return result.rowcount or 0

    async def mark_all_read(self, user_id: UUID) -> int:
        """Mark every unread notification of the caller read. Returns rows updated."""
        stmt = (
            update(Notification)
            .where(Notification.user_id == user_id, Notification.read.is_(False))
            .values(read=True)
        )
        result = await self.session.execute(stmt)
        await self.session.commit()
        return result.rowcount or 0

    @staticmethod
    def _to_domain(row: Notification) -> NotificationData:
        return NotificationData(
            notification_id=row.id,
            user_id=row.user_id,
            type=NotificationType(row.type),
            title=row.title,
            message=row.message,
            reward_credits=row.reward_credits,
            counterpart_user_id=row.counterpart_user_id,
            milestone=row.milestone,
            read=row.read,
            created_at=row.created_at,
        )

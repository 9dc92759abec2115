"""
Tests for RewardNotifier and NotificationService.
"""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError

from conftest import NOW, make_result
from metering.db.models import Notification, ReminderJob
from metering.models.api import NotificationType, ReminderKind
from metering.models.domain import ReferralCredit, ReferralPolicy
from metering.services.notifications import NotificationService, RewardNotifier


def make_credit(milestone: int | None = None, phone: str | None = None) -> ReferralCredit:
    return ReferralCredit(
        referral_id=uuid4(),
        referrer_id=uuid4(),
        referred_id=uuid4(),
        reward_credits=3,
        referrer_referral_count=milestone or 1,
        referrer_phone=phone,
        milestone=milestone,
        credited_at=NOW,
    )


def emitted(db_session: AsyncMock) -> list:
    return db_session.add_all.call_args[0][0]


class TestRewardNotifier:
    """Referral notifications and reminders."""

    @pytest.mark.asyncio
    async def test_signup_notifies_referrer(
        self, db_session: AsyncMock, referral_policy: ReferralPolicy
    ):
        referrer_id, referred_id = uuid4(), uuid4()
        notifier = RewardNotifier(db_session, referral_policy, "https://upblock.ai")

        assert await notifier.notify_referral_signup(referrer_id, referred_id) is True

        (row,) = emitted(db_session)
        assert row.user_id == referrer_id
        assert row.type == NotificationType.REFERRAL_SIGNUP
        assert row.counterpart_user_id == referred_id
        db_session.commit.assert_called_once()

    @pytest.mark.asyncio
    async def test_credited_notifies_both(
        self, db_session: AsyncMock, referral_policy: ReferralPolicy
    ):
        credit = make_credit()
        notifier = RewardNotifier(db_session, referral_policy, "https://upblock.ai")

        await notifier.notify_referral_credited(credit)

        rows = emitted(db_session)
        assert [row.type for row in rows] == [
            NotificationType.REFERRAL_CREDITED,
            NotificationType.WELCOME_BONUS,
        ]
        assert rows[0].user_id == credit.referrer_id
        assert rows[1].user_id == credit.referred_id
        assert all(row.reward_credits == 3 for row in rows)
        assert rows[0].title == "+3 credits earned!"

    @pytest.mark.asyncio
    async def test_milestone_and_reminder(
        self, db_session: AsyncMock, referral_policy: ReferralPolicy
    ):
        credit = make_credit(milestone=5, phone="+61400000000")
        notifier = RewardNotifier(db_session, referral_policy, "https://upblock.ai")

        await notifier.notify_referral_credited(credit)

        rows = emitted(db_session)
        milestone = [r for r in rows if isinstance(r, Notification) and r.milestone]
        assert milestone[0].type == NotificationType.REFERRAL_MILESTONE
        assert milestone[0].milestone == 5

        (job,) = [r for r in rows if isinstance(r, ReminderJob)]
        assert job.kind == ReminderKind.REFERRAL_REMINDER
        assert job.contact == "+61400000000"
        assert job.send_after == NOW + timedelta(hours=48)
        assert "https://upblock.ai" in job.body

    @pytest.mark.asyncio
    async def test_no_reminder_without_phone(
        self, db_session: AsyncMock, referral_policy: ReferralPolicy
    ):
        notifier = RewardNotifier(db_session, referral_policy, "https://upblock.ai")

        await notifier.notify_referral_credited(make_credit())

        assert not any(isinstance(r, ReminderJob) for r in emitted(db_session))

    @pytest.mark.asyncio
    async def test_failure_is_reported_not_raised(
        self, db_session: AsyncMock, referral_policy: ReferralPolicy
    ):
        db_session.commit = AsyncMock(side_effect=OperationalError("insert", {}, Exception("down")))
        notifier = RewardNotifier(db_session, referral_policy, "https://upblock.ai")

        assert await notifier.notify_referral_credited(make_credit()) is False
        db_session.rollback.assert_called_once()


def make_row(read: bool = False) -> MagicMock:
    row = MagicMock(spec=Notification)
    row.id = uuid4()
    row.user_id = uuid4()
    row.type = "referral_signup"
    row.title = "New referral signup!"
    row.message = "A friend signed up with your link."
    row.reward_credits = None
    row.counterpart_user_id = uuid4()
    row.milestone = None
    row.read = read
    row.created_at = NOW
    return row


class TestNotificationService:
    """Inbox reads and read-marking."""

    @pytest.mark.asyncio
    async def test_list_recent(self, db_session: AsyncMock):
        rows = [make_row(), make_row(read=True)]
        db_session.execute = AsyncMock(
            side_effect=[make_result(scalars=rows), make_result(count=1)]
        )

        inbox = await NotificationService(db_session).list_recent(uuid4())

        assert len(inbox.notifications) == 2
        assert inbox.unread_count == 1
        assert inbox.notifications[0].type == NotificationType.REFERRAL_SIGNUP
        assert inbox.notifications[1].read is True

    @pytest.mark.asyncio
    async def test_mark_read(self, db_session: AsyncMock):
        db_session.execute = AsyncMock(return_value=make_result(rowcount=1))

        updated = await NotificationService(db_session).mark_read(uuid4(), uuid4())

        assert updated == 1
        db_session.commit.assert_called_once()

    @pytest.mark.asyncio
    async def test_mark_read_scoped_to_caller(self, db_session: AsyncMock):
        user_id = uuid4()
        await NotificationService(db_session).mark_read(user_id, uuid4())

        stmt = db_session.execute.call_args[0][0]
        assert user_id in stmt.compile().params.values()

    @pytest.mark.asyncio
    async def test_mark_all_read(self, db_session: AsyncMock):
        db_session.execute = AsyncMock(return_value=make_result(rowcount=4))

        assert await NotificationService(db_session).mark_all_read(uuid4()) == 4

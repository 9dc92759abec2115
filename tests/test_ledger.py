"""
Tests for LedgerWriter.

Write verification, closed decision variants and grant operations.
"""

from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest
from sqlalchemy.exc import IntegrityError

from conftest import create_mock_account
from metering.exceptions import AccountNotFoundError, DataIntegrityError, WriteVerificationError
from metering.models.api import PlanType
from metering.models.domain import (
    ConsumePurchasedCredit,
    GrantLifetimeFreeUse,
    GrantMonthlyUse,
    RecordUnlimitedUse,
)
from metering.services.ledger import LedgerWriter


class TestApplyDecision:
    """Each decision variant writes exactly its named field."""

    @pytest.mark.asyncio
    async def test_lifetime_free_use(self, db_session: AsyncMock):
        account = create_mock_account(search_count=1, credit_topups=5)
        db_session.get = AsyncMock(return_value=account)

        balance = await LedgerWriter(db_session).apply_decision(
            account, GrantLifetimeFreeUse(search_count=2)
        )

        assert balance.search_count == 2
        assert balance.credit_topups == 5
        db_session.flush.assert_called_once()
        db_session.commit.assert_called_once()

    @pytest.mark.asyncio
    async def test_monthly_reset_stamps_month(self, db_session: AsyncMock):
        account = create_mock_account(plan=PlanType.PRO, monthly_used=10, billing_month="2026-09")
        db_session.get = AsyncMock(return_value=account)

        balance = await LedgerWriter(db_session).apply_decision(
            account, GrantMonthlyUse(monthly_used=1, billing_month="2026-10")
        )

        assert balance.monthly_used == 1
        assert balance.billing_month == "2026-10"

    @pytest.mark.asyncio
    async def test_monthly_increment_keeps_month(self, db_session: AsyncMock):
        account = create_mock_account(plan=PlanType.PRO, monthly_used=3, billing_month="2026-10")
        db_session.get = AsyncMock(return_value=account)

        balance = await LedgerWriter(db_session).apply_decision(account, GrantMonthlyUse(monthly_used=4))

        assert balance.monthly_used == 4
        assert balance.billing_month == "2026-10"

    @pytest.mark.asyncio
    async def test_consume_credit(self, db_session: AsyncMock):
        account = create_mock_account(search_count=2, credit_topups=1)
        db_session.get = AsyncMock(return_value=account)

        balance = await LedgerWriter(db_session).apply_decision(
            account, ConsumePurchasedCredit(credit_topups=0)
        )

        assert balance.credit_topups == 0
        assert balance.search_count == 2

    @pytest.mark.asyncio
    async def test_unlimited_usage(self, db_session: AsyncMock):
        account = create_mock_account(plan=PlanType.UNLIMITED_PRO, search_count=41)
        db_session.get = AsyncMock(return_value=account)

        balance = await LedgerWriter(db_session).apply_decision(
            account, RecordUnlimitedUse(search_count=42)
        )

        assert balance.search_count == 42

    @pytest.mark.asyncio
    async def test_verification_mismatch_raises(self, db_session: AsyncMock):
        account = create_mock_account(credit_topups=3)
        stale = create_mock_account(account_id=account.id, credit_topups=3)
        db_session.get = AsyncMock(return_value=stale)

        with pytest.raises(DataIntegrityError, match="credit_topups mismatch"):
            await LedgerWriter(db_session).apply_decision(
                account, ConsumePurchasedCredit(credit_topups=2)
            )

        db_session.commit.assert_not_called()

    @pytest.mark.asyncio
    async def test_vanished_row_raises(self, db_session: AsyncMock):
        account = create_mock_account()
        db_session.get = AsyncMock(return_value=None)

        with pytest.raises(WriteVerificationError):
            await LedgerWriter(db_session).apply_decision(
                account, GrantLifetimeFreeUse(search_count=1)
            )

    def test_credit_decision_cannot_go_negative(self):
        with pytest.raises(ValueError):
            ConsumePurchasedCredit(credit_topups=-1)


class TestGetOrCreateAccount:
    """Accounts are created on first contact."""

    @pytest.mark.asyncio
    async def test_returns_existing(self, db_session: AsyncMock):
        account = create_mock_account()
        writer = LedgerWriter(db_session)

        with patch.object(writer, "_find_account", AsyncMock(return_value=account)):
            result = await writer.get_or_create_account(account.id)

        assert result is account
        db_session.add.assert_not_called()

    @pytest.mark.asyncio
    async def test_creates_free_trial(self, db_session: AsyncMock):
        user_id = uuid4()
        writer = LedgerWriter(db_session)
        created = create_mock_account(account_id=user_id)
        db_session.get = AsyncMock(return_value=created)

        with patch.object(writer, "_find_account", AsyncMock(return_value=None)):
            result = await writer.get_or_create_account(user_id)

        added = db_session.add.call_args[0][0]
        assert added.id == user_id
        assert added.plan == PlanType.FREE_TRIAL
        assert added.credit_topups == 0
        assert result is created
        db_session.commit.assert_called_once()

    @pytest.mark.asyncio
    async def test_creation_race_returns_winner(self, db_session: AsyncMock):
        user_id = uuid4()
        winner = create_mock_account(account_id=user_id)
        writer = LedgerWriter(db_session)
        db_session.flush = AsyncMock(side_effect=IntegrityError("insert", {}, Exception("dup")))

        with patch.object(writer, "_find_account", AsyncMock(side_effect=[None, winner])):
            result = await writer.get_or_create_account(user_id)

        assert result is winner
        db_session.rollback.assert_called_once()

    @pytest.mark.asyncio
    async def test_creation_race_without_winner_raises(self, db_session: AsyncMock):
        writer = LedgerWriter(db_session)
        db_session.flush = AsyncMock(side_effect=IntegrityError("insert", {}, Exception("dup")))

        with patch.object(writer, "_find_account", AsyncMock(return_value=None)):
            with pytest.raises(WriteVerificationError):
                await writer.get_or_create_account(uuid4())


class TestLockAccount:
    """Row lock before a read-decide-write cycle."""

    @pytest.mark.asyncio
    async def test_missing_account_without_create_raises(self, db_session: AsyncMock):
        writer = LedgerWriter(db_session)

        with patch.object(writer, "_lock_account_for_update", AsyncMock(return_value=None)):
            with pytest.raises(AccountNotFoundError):
                await writer.lock_account(uuid4(), create=False)

    @pytest.mark.asyncio
    async def test_missing_account_is_created_then_locked(self, db_session: AsyncMock):
        account = create_mock_account()
        writer = LedgerWriter(db_session)

        with (
            patch.object(
                writer, "_lock_account_for_update", AsyncMock(side_effect=[None, account])
            ),
            patch.object(writer, "get_or_create_account", AsyncMock(return_value=account)) as create,
        ):
            result = await writer.lock_account(account.id)

        assert result is account
        create.assert_called_once_with(account.id)


class TestGrants:
    """Grants bypass the calculator."""

    @pytest.mark.asyncio
    async def test_grant_credits_adds_and_sets_plan(self, db_session: AsyncMock):
        account = create_mock_account(credit_topups=2)
        db_session.get = AsyncMock(return_value=account)
        writer = LedgerWriter(db_session)

        with patch.object(writer, "_lock_account_for_update", AsyncMock(return_value=account)):
            balance = await writer.grant_credits(account.id, 20, plan=PlanType.BULK_PACK)

        assert balance.credit_topups == 22
        assert balance.plan == PlanType.BULK_PACK
        db_session.commit.assert_called_once()

    @pytest.mark.asyncio
    async def test_grant_must_be_positive(self, db_session: AsyncMock):
        with pytest.raises(DataIntegrityError):
            await LedgerWriter(db_session).grant_credits(uuid4(), 0)

    @pytest.mark.asyncio
    async def test_set_plan_starts_subscription(self, db_session: AsyncMock):
        account = create_mock_account(monthly_used=7, billing_month="2026-01")
        db_session.get = AsyncMock(return_value=account)
        writer = LedgerWriter(db_session)

        with patch.object(writer, "_lock_account_for_update", AsyncMock(return_value=account)):
            balance = await writer.set_plan(account.id, PlanType.PRO, billing_month="2026-10")

        assert balance.plan == PlanType.PRO
        assert balance.monthly_used == 0
        assert balance.billing_month == "2026-10"

    @pytest.mark.asyncio
    async def test_referral_reward_credits_both_without_commit(self, db_session: AsyncMock):
        referrer = create_mock_account(credit_topups=1, referral_count=4, referral_credits_earned=12)
        referred = create_mock_account(credit_topups=0)
        db_session.get = AsyncMock(side_effect=[referrer, referred])

        count = await LedgerWriter(db_session).apply_referral_reward(referrer, referred, 3)

        assert count == 5
        assert referrer.credit_topups == 4
        assert referrer.referral_credits_earned == 15
        assert referred.credit_topups == 3
        db_session.commit.assert_not_called()


class TestToBalance:
    """ORM -> BalanceSnapshot."""

    def test_converts_fields(self):
        account = create_mock_account(
            plan=PlanType.PRO, monthly_used=2, billing_month="2026-10", phone_verified=True
        )
        balance = LedgerWriter.to_balance(account)

        assert balance.user_id == account.id
        assert balance.plan == PlanType.PRO
        assert balance.monthly_used == 2
        assert balance.phone_verified is True

    def test_plan_string_is_coerced(self):
        account = create_mock_account()
        account.plan = "STARTER_PACK"
        assert LedgerWriter.to_balance(account).plan == PlanType.STARTER_PACK
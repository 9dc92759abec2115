"""
Hypothesis Property-Based Tests for API Models.

Uses Hypothesis to generate random valid/invalid inputs and verify request
validation: address trimming, phone normalization, referral code casing and
billing event shape.
"""

from uuid import uuid4

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st
from pydantic import ValidationError

from metering.models.api import (
    BillingEventRequest,
    BillingEventType,
    MarkNotificationsReadRequest,
    PhoneCodeRequest,
    PlanType,
    SearchRequest,
    TrackReferralRequest,
)

# ============================================================================
# Hypothesis Strategies
# ============================================================================

addresses = st.text(min_size=1, max_size=200).filter(lambda x: x.strip())
padding = st.text(alphabet=" \t", max_size=5)
referral_codes = st.text(alphabet="abcdefghjkmnpqrstuvwxyz23456789", min_size=4, max_size=12)
phone_digits = st.text(alphabet="0123456789", min_size=8, max_size=15)


class TestSearchRequestProperties:
    """Address normalization."""

    @given(address=addresses, left=padding, right=padding)
    @settings(max_examples=100)
    def test_address_is_trimmed(self, address: str, left: str, right: str):
        request = SearchRequest(user_id=uuid4(), address=left + address + right)
        assert request.address == (left + address + right).strip()
        assert request.address == request.address.strip()

    @given(blank=st.text(alphabet=" \t\n", min_size=1, max_size=10))
    def test_blank_address_rejected(self, blank: str):
        with pytest.raises(ValidationError):
            SearchRequest(user_id=uuid4(), address=blank)


class TestTrackReferralRequestProperties:
    """Codes are case-insensitive."""

    @given(code=referral_codes)
    @settings(max_examples=100)
    def test_code_is_upper_cased(self, code: str):
        request = TrackReferralRequest(referral_code=code, new_user_id=uuid4())
        assert request.referral_code == code.upper()

    @given(code=st.text(alphabet="!@#$%^&*-_", min_size=4, max_size=12))
    def test_symbols_rejected(self, code: str):
        with pytest.raises(ValidationError):
            TrackReferralRequest(referral_code=code, new_user_id=uuid4())


class TestPhoneRequestProperties:
    """Phone normalization."""

    @given(digits=phone_digits, plus=st.booleans())
    @settings(max_examples=100)
    def test_valid_numbers_accepted(self, digits: str, plus: bool):
        phone = ("+" if plus else "") + digits
        request = PhoneCodeRequest(user_id=uuid4(), phone=phone)
        assert request.phone == phone

    def test_spaces_and_dashes_removed(self):
        request = PhoneCodeRequest(user_id=uuid4(), phone="+61 412-345-678")
        assert request.phone == "+61412345678"

    @given(letters=st.text(alphabet="abcdefghij", min_size=8, max_size=15))
    def test_letters_rejected(self, letters: str):
        with pytest.raises(ValidationError):
            PhoneCodeRequest(user_id=uuid4(), phone=letters)


class TestBillingEventRequestProperties:
    """Billing event shape."""

    @given(plan=st.sampled_from([p for p in PlanType if p != PlanType.FREE_TRIAL]))
    def test_purchasable_plans(self, plan: PlanType):
        request = BillingEventRequest(
            user_id=uuid4(), event_type=BillingEventType.PLAN_PURCHASE, plan=plan
        )
        assert request.plan == plan

    def test_free_trial_not_purchasable(self):
        with pytest.raises(ValidationError):
            BillingEventRequest(
                user_id=uuid4(),
                event_type=BillingEventType.PLAN_PURCHASE,
                plan=PlanType.FREE_TRIAL,
            )

    def test_purchase_requires_plan(self):
        with pytest.raises(ValidationError):
            BillingEventRequest(user_id=uuid4(), event_type=BillingEventType.PLAN_PURCHASE)

    @given(credits=st.integers(max_value=0))
    def test_grant_credits_must_be_positive(self, credits: int):
        with pytest.raises(ValidationError):
            BillingEventRequest(
                user_id=uuid4(), event_type=BillingEventType.CREDIT_GRANT, credits=credits
            )

    def test_grant_requires_credits(self):
        with pytest.raises(ValidationError):
            BillingEventRequest(user_id=uuid4(), event_type=BillingEventType.CREDIT_GRANT)


class TestMarkReadRequest:
    """mark_read needs a target."""

    def test_mark_read_requires_id(self):
        with pytest.raises(ValidationError):
            MarkNotificationsReadRequest(action="mark_read")

    def test_mark_all_needs_no_id(self):
        assert MarkNotificationsReadRequest(action="mark_all_read").notification_id is None

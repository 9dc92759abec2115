"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

import re
from enum import Enum
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator

_REFERRAL_CODE_PATTERN = re.compile(r"^[A-Z0-9]{4,12}$")
_PHONE_PATTERN = re.compile(r"^\+?[0-9]{8,15}$")


class PlanType(str, Enum):
    """Plan enumeration."""

    FREE_TRIAL = "FREE_TRIAL"
    STARTER_PACK = "STARTER_PACK"
    BULK_PACK = "BULK_PACK"
    PRO = "PRO"
    UNLIMITED_PRO = "UNLIMITED_PRO"


class ReferralStatus(str, Enum):
    """Referral lifecycle status."""

    PENDING = "pending"
    VERIFIED = "verified"
    CREDITED = "credited"


class NotificationType(str, Enum):
    """Notification type enumeration."""

    REFERRAL_SIGNUP = "referral_signup"
    REFERRAL_CREDITED = "referral_credited"
    WELCOME_BONUS = "welcome_bonus"
    REFERRAL_MILESTONE = "referral_milestone"


class ReminderKind(str, Enum):
    """Kinds of outbound delayed messages."""

    REFERRAL_REMINDER = "referral_reminder"
    VERIFICATION_CODE = "verification_code"


class BillingEventType(str, Enum):
    """Billing event type enumeration."""

    PLAN_PURCHASE = "plan_purchase"
    CREDIT_GRANT = "credit_grant"


def _normalize_phone(value: str) -> str:
    phone = value.strip().replace(" ", "").replace("-", "")
    if not _PHONE_PATTERN.match(phone):
        raise ValueError("phone must be 8-15 digits, optionally prefixed with +")
    return phone


# ============================================================================
# Search Models
# ============================================================================


class SearchRequest(BaseModel):
    """POST /v1/searches request body."""

    user_id: UUID
    address: str = Field(..., min_length=1, max_length=500)
    skip_consumption: bool = Field(
        default=False, description="Record the search without consuming entitlement"
    )

    @field_validator("address")
    @classmethod
    def validate_address(cls, v: str) -> str:
        """Trim surrounding whitespace; matching is exact after that."""
        address = v.strip()
        if not address:
            raise ValueError("address cannot be blank")
        return address


class SearchResponse(BaseModel):
    """POST /v1/searches response."""

    success: bool = True
    plan: PlanType
    search_count: int
    credit_topups: int
    monthly_used: int
    billing_month: str | None = None
    remaining_searches: int | None = None  # None = unlimited
    is_recheck: bool
    credit_consumed: bool
    history_recorded: bool


class SearchHistoryItem(BaseModel):
    """Single entry of search history."""

    address: str
    searched_at: str  # ISO 8601 timestamp


class SearchHistoryResponse(BaseModel):
    """GET /v1/searches/history response."""

    history: list[SearchHistoryItem]


class BalanceResponse(BaseModel):
    """GET /v1/account/balance response."""

    user_id: UUID
    plan: PlanType
    search_count: int
    credit_topups: int
    monthly_used: int
    billing_month: str | None = None
    remaining_searches: int | None = None
    phone_verified: bool = False


# ============================================================================
# Phone Verification Models
# ============================================================================


class PhoneCodeRequest(BaseModel):
    """POST /v1/phone/code request body."""

    user_id: UUID
    phone: str = Field(..., min_length=8, max_length=20)

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v: str) -> str:
        return _normalize_phone(v)


class PhoneCodeResponse(BaseModel):
    """POST /v1/phone/code response."""

    success: bool = True
    expires_at: str


class PhoneVerifyRequest(BaseModel):
    """POST /v1/phone/verify request body."""

    user_id: UUID
    phone: str = Field(..., min_length=8, max_length=20)
    code: str = Field(..., min_length=4, max_length=8, pattern=r"^[0-9]+$")

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v: str) -> str:
        return _normalize_phone(v)


class PhoneVerifyResponse(BaseModel):
    """POST /v1/phone/verify response."""

    success: bool = True
    phone: str
    referral_credited: bool = False
    message: str


# ============================================================================
# Referral Models
# ============================================================================


class ReferralCodeResponse(BaseModel):
    """POST /v1/referrals/code response."""

    referral_code: str
    referral_link: str


class TrackReferralRequest(BaseModel):
    """POST /v1/referrals/track request body."""

    referral_code: str = Field(..., min_length=4, max_length=12)
    new_user_id: UUID

    @field_validator("referral_code")
    @classmethod
    def validate_referral_code(cls, v: str) -> str:
        """Referral codes are case-insensitive alphanumerics."""
        code = v.strip().upper()
        if not _REFERRAL_CODE_PATTERN.match(code):
            raise ValueError("referral_code must be 4-12 letters or digits")
        return code


class TrackReferralResponse(BaseModel):
    """POST /v1/referrals/track response."""

    success: bool = True
    message: str


class AwardReferralRequest(BaseModel):
    """POST /v1/referrals/award request body."""

    user_id: UUID


class AwardReferralResponse(BaseModel):
    """POST /v1/referrals/award response."""

    success: bool = True
    credits_awarded: int = 0
    message: str


class ReferralStatsResponse(BaseModel):
    """GET /v1/referrals/me response."""

    referral_code: str | None = None
    referral_count: int
    referral_credits_earned: int
    pending_referrals: int
    max_referrals: int


# ============================================================================
# Notification Models
# ============================================================================


class NotificationItem(BaseModel):
    """Single notification - payload fields are explicit, no dict."""

    id: UUID
    type: NotificationType
    title: str
    message: str
    reward_credits: int | None = None
    counterpart_user_id: UUID | None = None
    milestone: int | None = None
    read: bool
    created_at: str


class NotificationListResponse(BaseModel):
    """GET /v1/notifications response."""

    notifications: list[NotificationItem]
    unread_count: int


class MarkNotificationsReadRequest(BaseModel):
    """POST /v1/notifications/read request body."""

    action: Literal["mark_read", "mark_all_read"]
    notification_id: UUID | None = None

    @model_validator(mode="after")
    def validate_target(self) -> "MarkNotificationsReadRequest":
        if self.action == "mark_read" and self.notification_id is None:
            raise ValueError("notification_id is required for mark_read")
        return self


class MarkNotificationsReadResponse(BaseModel):
    """POST /v1/notifications/read response."""

    success: bool = True
    updated: int


# ============================================================================
# Billing Event Models
# ============================================================================


class BillingEventRequest(BaseModel):
    """POST /v1/billing/events request body (service-to-service)."""

    user_id: UUID
    event_type: BillingEventType
    plan: PlanType | None = None
    credits: int | None = Field(None, gt=0, le=10_000)
    external_reference: str | None = Field(None, max_length=255)

    @model_validator(mode="after")
    def validate_event(self) -> "BillingEventRequest":
        if self.event_type == BillingEventType.PLAN_PURCHASE and self.plan is None:
            raise ValueError("plan is required for plan_purchase events")
        if self.event_type == BillingEventType.PLAN_PURCHASE and self.plan == PlanType.FREE_TRIAL:
            raise ValueError("FREE_TRIAL cannot be purchased")
        if self.event_type == BillingEventType.CREDIT_GRANT and self.credits is None:
            raise ValueError("credits is required for credit_grant events")
        return self


class BillingEventResponse(BaseModel):
    """POST /v1/billing/events response."""

    user_id: UUID
    plan: PlanType
    credit_topups: int
    monthly_used: int
    billing_month: str | None = None


# ============================================================================
# Health
# ============================================================================


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str
    database: str
    timestamp: str

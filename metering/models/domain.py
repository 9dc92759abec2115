"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
Ledger updates are closed variants; there is no "whichever fields are present" map.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

from metering.models.api import NotificationType, PlanType, ReferralStatus


# ============================================================================
# Policies (configuration passed explicitly into calculator / state machine)
# ============================================================================


@dataclass(frozen=True)
class EntitlementPolicy:
    """Allowances used by the entitlement calculator."""

    base_allowance: int
    signup_bonus: int
    monthly_quota: int

    def __post_init__(self) -> None:
        if self.base_allowance < 0 or self.signup_bonus < 0:
            raise ValueError("Trial allowances cannot be negative")
        if self.monthly_quota <= 0:
            raise ValueError(f"Monthly quota must be positive: {self.monthly_quota}")

    @property
    def trial_allowance(self) -> int:
        """Total lifetime free searches for trial-tier plans."""
        return self.base_allowance + self.signup_bonus


@dataclass(frozen=True)
class ReferralPolicy:
    """Rules of the referral program."""

    reward_credits: int
    max_referrals: int
    milestones: frozenset[int]
    reminder_delay: timedelta
    code_length: int = 6

    def __post_init__(self) -> None:
        if self.reward_credits <= 0:
            raise ValueError(f"Reward must be positive: {self.reward_credits}")
        if self.max_referrals < 0:
            raise ValueError(f"Referral cap cannot be negative: {self.max_referrals}")
        if self.code_length < 4:
            raise ValueError(f"Referral code too short: {self.code_length}")


# ============================================================================
# Entitlement
# ============================================================================


@dataclass(frozen=True)
class EntitlementSnapshot:
    """Plan and usage counters read from the account immediately before a decision."""

    plan: PlanType
    search_count: int
    credit_topups: int
    monthly_used: int
    billing_month: str | None


@dataclass(frozen=True)
class GrantLifetimeFreeUse:
    """Draw one search from the lifetime free allowance."""

    search_count: int


@dataclass(frozen=True)
class GrantMonthlyUse:
    """Draw one search from the subscription quota; billing_month set means reset."""

    monthly_used: int
    billing_month: str | None = None

    @property
    def resets_month(self) -> bool:
        return self.billing_month is not None


@dataclass(frozen=True)
class ConsumePurchasedCredit:
    """Decrement the purchased credit balance."""

    credit_topups: int

    def __post_init__(self) -> None:
        if self.credit_topups < 0:
            raise ValueError(f"Credit balance cannot go negative: {self.credit_topups}")


@dataclass(frozen=True)
class RecordUnlimitedUse:
    """Usage-only increment, no balance effect."""

    search_count: int


@dataclass(frozen=True)
class NoEntitlement:
    """Nothing left to draw from. A normal outcome, not an error."""

    reason: str = "No credits available"


ChargeDecision = GrantLifetimeFreeUse | GrantMonthlyUse | ConsumePurchasedCredit | RecordUnlimitedUse
ConsumptionDecision = ChargeDecision | NoEntitlement


# ============================================================================
# Ledger
# ============================================================================


@dataclass(frozen=True)
class BalanceSnapshot:
    """Account balances re-read after a ledger write."""

    user_id: UUID
    plan: PlanType
    search_count: int
    credit_topups: int
    monthly_used: int
    billing_month: str | None
    phone_verified: bool = False

    def __post_init__(self) -> None:
        if self.credit_topups < 0:
            raise ValueError(f"Credit balance cannot be negative: {self.credit_topups}")

    def to_entitlement(self) -> EntitlementSnapshot:
        return EntitlementSnapshot(
            plan=self.plan,
            search_count=self.search_count,
            credit_topups=self.credit_topups,
            monthly_used=self.monthly_used,
            billing_month=self.billing_month,
        )


@dataclass(frozen=True)
class PlanPurchase:
    """Billing event: a plan or credit pack was bought."""

    user_id: UUID
    plan: PlanType
    external_reference: str | None = None


@dataclass(frozen=True)
class CreditGrant:
    """Billing event: credits granted directly."""

    user_id: UUID
    credits: int
    external_reference: str | None = None

    def __post_init__(self) -> None:
        if self.credits <= 0:
            raise ValueError(f"Credit grant must be positive: {self.credits}")


# ============================================================================
# Search
# ============================================================================


@dataclass(frozen=True)
class SearchOutcome:
    """Result of one search intake."""

    balance: BalanceSnapshot
    is_recheck: bool
    credit_consumed: bool
    history_recorded: bool
    remaining_searches: int | None


@dataclass(frozen=True)
class SearchHistoryEntry:
    """One row of search history."""

    address: str
    searched_at: datetime


# ============================================================================
# Referral
# ============================================================================


@dataclass(frozen=True)
class ReferralLink:
    """A pending referral created at signup."""

    referral_id: UUID
    referrer_id: UUID
    referred_id: UUID
    status: ReferralStatus
    created_at: datetime


@dataclass(frozen=True)
class ReferralCredit:
    """Result of a pending -> credited transition."""

    referral_id: UUID
    referrer_id: UUID
    referred_id: UUID
    reward_credits: int
    referrer_referral_count: int
    referrer_phone: str | None
    milestone: int | None
    credited_at: datetime


@dataclass(frozen=True)
class ReferralStats:
    """Referral program standing of one user."""

    referral_code: str | None
    referral_count: int
    referral_credits_earned: int
    pending_referrals: int
    max_referrals: int


# ============================================================================
# Notifications
# ============================================================================


@dataclass(frozen=True)
class NotificationData:
    """Notification row as seen by the inbox."""

    notification_id: UUID
    user_id: UUID
    type: NotificationType
    title: str
    message: str
    reward_credits: int | None
    counterpart_user_id: UUID | None
    milestone: int | None
    read: bool
    created_at: datetime


@dataclass(frozen=True)
class NotificationInbox:
    """Most recent notifications plus unread count."""

    notifications: list[NotificationData]
    unread_count: int


# ============================================================================
# Phone verification
# ============================================================================


@dataclass(frozen=True)
class PhoneCodeIssued:
    """A verification code was generated and queued for delivery."""

    user_id: UUID
    phone: str
    expires_at: datetime


@dataclass(frozen=True)
class PhoneVerificationResult:
    """Outcome of a successful phone verification."""

    user_id: UUID
    phone: str
    referral: ReferralCredit | None
    referral_failed: bool = False

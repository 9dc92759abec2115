"""
Entitlement Calculator - Decides what one chargeable search draws from.

NO DICTIONARIES - Input is an EntitlementSnapshot, output is one closed decision variant.
PURE - No I/O, no clock reads; `now` is always passed in.
"""

from datetime import datetime

from metering.config import Settings
from metering.models.api import PlanType
from metering.models.domain import (
    ConsumePurchasedCredit,
    ConsumptionDecision,
    EntitlementPolicy,
    EntitlementSnapshot,
    GrantLifetimeFreeUse,
    GrantMonthlyUse,
    NoEntitlement,
    RecordUnlimitedUse,
)

TRIAL_PLANS: frozenset[PlanType] = frozenset(
    {PlanType.FREE_TRIAL, PlanType.STARTER_PACK, PlanType.BULK_PACK}
)
SUBSCRIPTION_PLANS: frozenset[PlanType] = frozenset({PlanType.PRO})
UNLIMITED_PLANS: frozenset[PlanType] = frozenset({PlanType.UNLIMITED_PRO})


def current_billing_month(now: datetime) -> str:
    """Format the UTC calendar month key (YYYY-MM)."""
    return f"{now.year:04d}-{now.month:02d}"


def policy_from_settings(settings: Settings) -> EntitlementPolicy:
    """Build the calculator policy from application settings."""
    return EntitlementPolicy(
        base_allowance=settings.trial_base_allowance,
        signup_bonus=settings.trial_signup_bonus,
        monthly_quota=settings.subscription_monthly_quota,
    )


def is_unlimited(plan: PlanType) -> bool:
    return plan in UNLIMITED_PLANS


def is_subscription(plan: PlanType) -> bool:
    return plan in SUBSCRIPTION_PLANS


def decide_consumption(
    snapshot: EntitlementSnapshot,
    policy: EntitlementPolicy,
    now: datetime,
) -> ConsumptionDecision:
    """
    Decide how one chargeable search is paid for.

    Tier order is strict and recurring/free allowances are always drawn
    before purchased credits:

    - Unlimited: usage-only increment, never blocks.
    - Subscription: month rollover resets usage to 1, else quota, else credits.
    - Trial: lifetime allowance (base + signup bonus), else credits.

    Returns NoEntitlement when nothing is left; it is never raised.
    """
    if is_unlimited(snapshot.plan):
        return RecordUnlimitedUse(search_count=snapshot.search_count + 1)

    if is_subscription(snapshot.plan):
        month = current_billing_month(now)
        if snapshot.billing_month != month:
            return GrantMonthlyUse(monthly_used=1, billing_month=month)
        if snapshot.monthly_used < policy.monthly_quota:
            return GrantMonthlyUse(monthly_used=snapshot.monthly_used + 1)
        return _consume_credit_or_reject(snapshot)

    if snapshot.search_count < policy.trial_allowance:
        return GrantLifetimeFreeUse(search_count=snapshot.search_count + 1)
    return _consume_credit_or_reject(snapshot)


def remaining_entitlement(
    snapshot: EntitlementSnapshot,
    policy: EntitlementPolicy,
    now: datetime,
) -> int | None:
    """
    Count chargeable searches still available.

    Returns None for unlimited plans.
    """
    if is_unlimited(snapshot.plan):
        return None

    credits = max(snapshot.credit_topups, 0)

    if is_subscription(snapshot.plan):
        if snapshot.billing_month != current_billing_month(now):
            return policy.monthly_quota + credits
        return max(policy.monthly_quota - snapshot.monthly_used, 0) + credits

    return max(policy.trial_allowance - snapshot.search_count, 0) + credits


def decision_kind(decision: ConsumptionDecision) -> str:
    """Short label for logs and metrics."""
    if isinstance(decision, GrantLifetimeFreeUse):
        return "lifetime_free"
    if isinstance(decision, GrantMonthlyUse):
        return "monthly_reset" if decision.resets_month else "monthly"
    if isinstance(decision, ConsumePurchasedCredit):
        return "purchased_credit"
    if isinstance(decision, RecordUnlimitedUse):
        return "unlimited"
    return "no_entitlement"


def _consume_credit_or_reject(snapshot: EntitlementSnapshot) -> ConsumptionDecision:
    if snapshot.credit_topups > 0:
        return ConsumePurchasedCredit(credit_topups=snapshot.credit_topups - 1)
    return NoEntitlement()

"""
API Routes - FastAPI endpoints for search metering and referral rewards.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from metering.api.dependencies import (
    CallerIdentity,
    get_caller,
    require_owner,
    require_service_key,
)
from metering.config import settings
from metering.db.session import get_db
from metering.exceptions import (
    AccountNotFoundError,
    AlreadyReferredError,
    DataIntegrityError,
    NoEntitlementError,
    PhoneVerificationError,
    ReferralCapReachedError,
    ReferralCodeGenerationError,
    ReferralCodeNotFoundError,
    ReferralNotEligibleError,
    SelfReferralError,
    WriteVerificationError,
)
from metering.models.api import (
    AwardReferralRequest,
    AwardReferralResponse,
    BalanceResponse,
    BillingEventRequest,
    BillingEventResponse,
    BillingEventType,
    HealthResponse,
    MarkNotificationsReadRequest,
    MarkNotificationsReadResponse,
    NotificationItem,
    NotificationListResponse,
    PhoneCodeRequest,
    PhoneCodeResponse,
    PhoneVerifyRequest,
    PhoneVerifyResponse,
    ReferralCodeResponse,
    ReferralStatsResponse,
    SearchHistoryItem,
    SearchHistoryResponse,
    SearchRequest,
    SearchResponse,
    TrackReferralRequest,
    TrackReferralResponse,
)
from metering.models.domain import CreditGrant, PlanPurchase
from metering.observability.metrics import metrics
from metering.services.billing_events import BillingEventService
from metering.services.notifications import NotificationService
from metering.services.phone_verification import PhoneVerificationService
from metering.services.referral import ReferralService
from metering.services.search import SearchService

logger = get_logger(__name__)

router = APIRouter()


def _integrity_error(exc: Exception, operation: str) -> HTTPException:
    metrics.record_error(type(exc).__name__, operation)
    logger.error("database_integrity_error", operation=operation, error=str(exc))
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Database integrity error",
    )


# =============================================================================
# Searches
# =============================================================================


@router.post("/v1/searches", response_model=SearchResponse)
async def create_search(
    request: SearchRequest,
    caller: CallerIdentity = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
) -> SearchResponse:
    """
    Search intake: meter one search of an address.

    Rechecks of an address inside the window are free; the response says
    whether a credit was consumed.

    Auth: Bearer {jwt}; user_id must be the caller.
    """
    require_owner(caller, request.user_id)
    service = SearchService.from_settings(db, settings)

    try:
        outcome = await service.perform_search(
            request.user_id,
            request.address,
            skip_consumption=request.skip_consumption,
        )
    except NoEntitlementError as exc:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=exc.reason,
        ) from exc
    except (WriteVerificationError, DataIntegrityError) as exc:
        raise _integrity_error(exc, "create_search") from exc

    balance = outcome.balance
    return SearchResponse(
        plan=balance.plan,
        search_count=balance.search_count,
        credit_topups=balance.credit_topups,
        monthly_used=balance.monthly_used,
        billing_month=balance.billing_month,
        remaining_searches=outcome.remaining_searches,
        is_recheck=outcome.is_recheck,
        credit_consumed=outcome.credit_consumed,
        history_recorded=outcome.history_recorded,
    )


@router.get("/v1/searches/history", response_model=SearchHistoryResponse)
async def get_search_history(
    caller: CallerIdentity = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
) -> SearchHistoryResponse:
    """The caller's 20 most recent searches."""
    service = SearchService.from_settings(db, settings)
    entries = await service.list_history(caller.user_id)
    return SearchHistoryResponse(
        history=[
            SearchHistoryItem(address=entry.address, searched_at=entry.searched_at.isoformat())
            for entry in entries
        ]
    )


@router.get("/v1/account/balance", response_model=BalanceResponse)
async def get_balance(
    caller: CallerIdentity = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
) -> BalanceResponse:
    """Balances and remaining entitlement. Creates the account on first contact."""
    service = SearchService.from_settings(db, settings)

    try:
        balance = await service.get_balance(caller.user_id)
    except (WriteVerificationError, DataIntegrityError) as exc:
        raise _integrity_error(exc, "get_balance") from exc

    return BalanceResponse(
        user_id=balance.user_id,
        plan=balance.plan,
        search_count=balance.search_count,
        credit_topups=balance.credit_topups,
        monthly_used=balance.monthly_used,
        billing_month=balance.billing_month,
        remaining_searches=service.remaining(balance),
        phone_verified=balance.phone_verified,
    )


# =============================================================================
# Phone verification
# =============================================================================


@router.post("/v1/phone/code", response_model=PhoneCodeResponse)
async def send_phone_code(
    request: PhoneCodeRequest,
    caller: CallerIdentity = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
) -> PhoneCodeResponse:
    """Issue a verification code; delivery is queued for the SMS collaborator."""
    require_owner(caller, request.user_id)
    service = PhoneVerificationService.from_settings(db, settings)

    try:
        issued = await service.issue_code(request.user_id, request.phone)
    except (WriteVerificationError, DataIntegrityError) as exc:
        raise _integrity_error(exc, "send_phone_code") from exc

    return PhoneCodeResponse(expires_at=issued.expires_at.isoformat())


@router.post("/v1/phone/verify", response_model=PhoneVerifyResponse)
async def verify_phone_code(
    request: PhoneVerifyRequest,
    caller: CallerIdentity = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
) -> PhoneVerifyResponse:
    """
    Verify a phone code.

    On success any pending referral of the caller is credited. A referral
    failure does not fail verification; POST /v1/referrals/award retries it.
    """
    require_owner(caller, request.user_id)
    service = PhoneVerificationService.from_settings(db, settings)

    try:
        result = await service.verify(request.user_id, request.phone, request.code)
    except PhoneVerificationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=exc.reason,
        ) from exc
    except AccountNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Account not found",
        ) from exc
    except (WriteVerificationError, DataIntegrityError) as exc:
        raise _integrity_error(exc, "verify_phone_code") from exc

    if result.referral is not None:
        message = "Phone verified successfully. Referral credits awarded."
    elif result.referral_failed:
        message = "Phone verified successfully. Referral credits are pending."
    else:
        message = "Phone verified successfully"

    return PhoneVerifyResponse(
        phone=result.phone,
        referral_credited=result.referral is not None,
        message=message,
    )


# =============================================================================
# Referrals
# =============================================================================


@router.post("/v1/referrals/code", response_model=ReferralCodeResponse)
async def get_referral_code(
    caller: CallerIdentity = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
) -> ReferralCodeResponse:
    """Get or create the caller's referral code and shareable link."""
    service = ReferralService.from_settings(db, settings)

    try:
        code = await service.get_or_create_code(caller.user_id)
    except ReferralNotEligibleError as exc:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Referral program is available for Trial and Starter Pack members",
        ) from exc
    except ReferralCodeGenerationError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to generate unique code",
        ) from exc
    except (WriteVerificationError, DataIntegrityError) as exc:
        raise _integrity_error(exc, "get_referral_code") from exc

    return ReferralCodeResponse(referral_code=code, referral_link=service.referral_link(code))


@router.post("/v1/referrals/track", response_model=TrackReferralResponse)
async def track_referral(
    request: TrackReferralRequest,
    caller: CallerIdentity = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
) -> TrackReferralResponse:
    """
    Link the newly signed up caller to the owner of a referral code.

    Precondition failures are soft: the signup itself already succeeded.
    """
    require_owner(caller, request.new_user_id)
    service = ReferralService.from_settings(db, settings)

    try:
        await service.track_signup(request.referral_code, request.new_user_id)
    except ReferralCodeNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Invalid referral code",
        ) from exc
    except SelfReferralError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Cannot refer yourself",
        ) from exc
    except AlreadyReferredError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="User already has a referrer",
        ) from exc
    except ReferralCapReachedError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Referrer has reached maximum referrals",
        ) from exc
    except (WriteVerificationError, DataIntegrityError) as exc:
        raise _integrity_error(exc, "track_referral") from exc

    return TrackReferralResponse(message="Referral tracked successfully")


@router.post("/v1/referrals/award", response_model=AwardReferralResponse)
async def award_referral(
    request: AwardReferralRequest,
    caller: CallerIdentity = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
) -> AwardReferralResponse:
    """Explicitly credit the caller's pending referral (phone must be verified)."""
    require_owner(caller, request.user_id)
    service = ReferralService.from_settings(db, settings)

    try:
        credit = await service.award_pending(request.user_id)
    except AccountNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Account not found",
        ) from exc
    except (WriteVerificationError, DataIntegrityError) as exc:
        raise _integrity_error(exc, "award_referral") from exc

    if credit is None:
        return AwardReferralResponse(message="No pending referral")

    return AwardReferralResponse(
        credits_awarded=credit.reward_credits,
        message="Referral credits awarded to both users",
    )


@router.get("/v1/referrals/me", response_model=ReferralStatsResponse)
async def get_referral_stats(
    caller: CallerIdentity = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
) -> ReferralStatsResponse:
    """The caller's referral code, counts and earnings."""
    service = ReferralService.from_settings(db, settings)
    stats = await service.get_stats(caller.user_id)
    return ReferralStatsResponse(
        referral_code=stats.referral_code,
        referral_count=stats.referral_count,
        referral_credits_earned=stats.referral_credits_earned,
        pending_referrals=stats.pending_referrals,
        max_referrals=stats.max_referrals,
    )


# =============================================================================
# Notifications
# =============================================================================


@router.get("/v1/notifications", response_model=NotificationListResponse)
async def list_notifications(
    caller: CallerIdentity = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
) -> NotificationListResponse:
    """The caller's 20 most recent notifications and unread count."""
    service = NotificationService(db)
    inbox = await service.list_recent(caller.user_id)
    return NotificationListResponse(
        notifications=[
            NotificationItem(
                id=item.notification_id,
                type=item.type,
                title=item.title,
                message=item.message,
                reward_credits=item.reward_credits,
                counterpart_user_id=item.counterpart_user_id,
                milestone=item.milestone,
                read=item.read,
                created_at=item.created_at.isoformat(),
            )
            for item in inbox.notifications
        ],
        unread_count=inbox.unread_count,
    )


@router.post("/v1/notifications/read", response_model=MarkNotificationsReadResponse)
async def mark_notifications_read(
    request: MarkNotificationsReadRequest,
    caller: CallerIdentity = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
) -> MarkNotificationsReadResponse:
    """Mark one or all of the caller's notifications read."""
    service = NotificationService(db)

    if request.action == "mark_all_read":
        updated = await service.mark_all_read(caller.user_id)
    else:
        assert request.notification_id is not None  # enforced by request validation
        updated = await service.mark_read(caller.user_id, request.notification_id)

    return MarkNotificationsReadResponse(updated=updated)


# =============================================================================
# Billing events (service-to-service)
# =============================================================================


@router.post("/v1/billing/events", response_model=BillingEventResponse)
async def apply_billing_event(
    request: BillingEventRequest,
    _: None = Depends(require_service_key),
    db: AsyncSession = Depends(get_db),
) -> BillingEventResponse:
    """
    Apply a completed purchase or a direct credit grant.

    Auth: X-API-Key (service key). Signature checks and deduplication of
    payment-provider webhooks happen before this call.
    """
    service = BillingEventService.from_settings(db, settings)

    try:
        if request.event_type == BillingEventType.PLAN_PURCHASE:
            assert request.plan is not None  # enforced by request validation
            balance = await service.apply_plan_purchase(
                PlanPurchase(
                    user_id=request.user_id,
                    plan=request.plan,
                    external_reference=request.external_reference,
                )
            )
        else:
            assert request.credits is not None  # enforced by request validation
            balance = await service.apply_credit_grant(
                CreditGrant(
                    user_id=request.user_id,
                    credits=request.credits,
                    external_reference=request.external_reference,
                )
            )
    except AccountNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Account not found",
        ) from exc
    except (WriteVerificationError, DataIntegrityError) as exc:
        raise _integrity_error(exc, "apply_billing_event") from exc

    return BillingEventResponse(
        user_id=balance.user_id,
        plan=balance.plan,
        credit_topups=balance.credit_topups,
        monthly_used=balance.monthly_used,
        billing_month=balance.billing_month,
    )


# =============================================================================
# Health
# =============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))

        return HealthResponse(
            status="healthy",
            database="connected",
            timestamp=datetime.now(UTC).isoformat(),
        )

    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Database unavailable: {exc}",
        ) from exc

"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""

from uuid import UUID


class MeteringError(Exception):
    """Base exception for all metering errors."""

    pass


class NoEntitlementError(MeteringError):
    """Raised when a chargeable search finds nothing to draw from."""

    def __init__(self, user_id: UUID, reason: str = "No credits available") -> None:
        self.user_id = user_id
        self.reason = reason
        super().__init__(f"No entitlement for {user_id}: {reason}")


class AccountNotFoundError(MeteringError):
    """Raised when account doesn't exist."""

    def __init__(self, user_id: UUID) -> None:
        self.user_id = user_id
        super().__init__(f"Account not found: {user_id}")


class OwnershipMismatchError(MeteringError):
    """Raised when the verified caller is not the user named in the request."""

    def __init__(self, caller_id: UUID, requested_id: UUID) -> None:
        self.caller_id = caller_id
        self.requested_id = requested_id
        super().__init__(f"Caller {caller_id} cannot act for {requested_id}")


class WriteVerificationError(MeteringError):
    """Raised when database write verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Write verification failed: {message}")


class DataIntegrityError(MeteringError):
    """Raised when data integrity constraint violated."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Data integrity error: {message}")


class AuthenticationError(MeteringError):
    """Raised when authentication fails (invalid token, invalid API key)."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Authentication failed: {message}")


# ============================================================================
# Referral preconditions - soft failures, never fail the signup itself
# ============================================================================


class ReferralError(MeteringError):
    """Base class for referral precondition failures."""

    pass


class ReferralCodeNotFoundError(ReferralError):
    """Raised when a referral code resolves to no referrer."""

    def __init__(self, code: str) -> None:
        self.code = code
        super().__init__(f"Invalid referral code: {code}")


class SelfReferralError(ReferralError):
    """Raised when a user tries to refer themselves."""

    def __init__(self, user_id: UUID) -> None:
        self.user_id = user_id
        super().__init__(f"User {user_id} cannot refer themselves")


class AlreadyReferredError(ReferralError):
    """Raised when the new user already has a referral row."""

    def __init__(self, referred_id: UUID) -> None:
        self.referred_id = referred_id
        super().__init__(f"User {referred_id} already has a referrer")


class ReferralCapReachedError(ReferralError):
    """Raised when the referrer has reached the referral cap."""

    def __init__(self, referrer_id: UUID, cap: int) -> None:
        self.referrer_id = referrer_id
        self.cap = cap
        super().__init__(f"Referrer {referrer_id} has reached maximum referrals ({cap})")


class ReferralNotEligibleError(ReferralError):
    """Raised when the user's plan cannot take part in the referral program."""

    def __init__(self, user_id: UUID, plan: str) -> None:
        self.user_id = user_id
        self.plan = plan
        super().__init__(f"Plan {plan} of {user_id} is not eligible for referrals")


class ReferralCodeGenerationError(ReferralError):
    """Raised when no unique referral code could be generated."""

    def __init__(self, attempts: int) -> None:
        self.attempts = attempts
        super().__init__(f"Failed to generate unique referral code after {attempts} attempts")


# ============================================================================
# Phone verification
# ============================================================================


class PhoneVerificationError(MeteringError):
    """Raised when a phone verification code is rejected."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Phone verification failed: {reason}")

"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from metering.models.api import NotificationType, PlanType, ReferralStatus, ReminderKind


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def _enum_column(enum_cls: type, name: str, length: int = 32) -> SQLEnum:
    return SQLEnum(
        enum_cls,
        name=name,
        native_enum=False,
        length=length,
        values_callable=lambda x: [e.value for e in x],
    )


class UserAccount(Base):
    """
    ORM model for user_accounts table.

    The only hot shared row: mutated by both consumption and referral paths.
    """

    __tablename__ = "user_accounts"

    # Primary Key - supplied by the identity provider
    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True)

    # Plan
    plan: Mapped[PlanType] = mapped_column(
        _enum_column(PlanType, "plan_type"), nullable=False, default=PlanType.FREE_TRIAL
    )

    # Lifetime free uses (also the usage counter for unlimited plans)
    search_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Purchased credits (top-ups, referral rewards)
    credit_topups: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Subscription usage for the billing month it applies to (YYYY-MM)
    monthly_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    billing_month: Mapped[str | None] = mapped_column(String(7), nullable=True)

    # Referral program
    referral_code: Mapped[str | None] = mapped_column(String(16), nullable=True, unique=True)
    referred_by_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)
    referral_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    referral_credits_earned: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Phone (trust gate)
    phone: Mapped[str | None] = mapped_column(String(20), nullable=True)
    phone_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    phone_pending: Mapped[str | None] = mapped_column(String(20), nullable=True)
    phone_verification_code: Mapped[str | None] = mapped_column(String(8), nullable=True)
    phone_code_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("credit_topups >= 0", name="ck_credit_topups_non_negative"),
        CheckConstraint("search_count >= 0", name="ck_search_count_non_negative"),
        CheckConstraint("monthly_used >= 0", name="ck_monthly_used_non_negative"),
        CheckConstraint("referral_count >= 0", name="ck_referral_count_non_negative"),
        Index("idx_user_accounts_updated_at", "updated_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<UserAccount(id={self.id}, plan={self.plan}, "
            f"search_count={self.search_count}, credit_topups={self.credit_topups})>"
        )


class SearchRecord(Base):
    """
    ORM model for search_records table.

    Recheck window lookups and search history.
    """

    __tablename__ = "search_records"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("user_accounts.id"), nullable=False
    )
    address: Mapped[str] = mapped_column(Text, nullable=False)
    searched_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        Index("idx_search_records_user_address_time", "user_id", "address", "searched_at"),
        Index("idx_search_records_user_time", "user_id", "searched_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<SearchRecord(id={self.id}, user_id={self.user_id}, searched_at={self.searched_at})>"


class Referral(Base):
    """
    ORM model for referrals table.

    At most one row per referred user; transitions pending -> credited once.
    """

    __tablename__ = "referrals"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    referrer_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("user_accounts.id"), nullable=False
    )
    referred_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("user_accounts.id"), nullable=False
    )
    status: Mapped[ReferralStatus] = mapped_column(
        _enum_column(ReferralStatus, "referral_status", length=20),
        nullable=False,
        default=ReferralStatus.PENDING,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    credited_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("referred_id", name="uq_referral_referred"),
        CheckConstraint("referrer_id <> referred_id", name="ck_referral_not_self"),
        Index("idx_referrals_referrer_status", "referrer_id", "status"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Referral(id={self.id}, referrer_id={self.referrer_id}, "
            f"referred_id={self.referred_id}, status={self.status})>"
        )


class Notification(Base):
    """
    ORM model for notifications table.

    Payload is explicit columns (no JSON).
    """

    __tablename__ = "notifications"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("user_accounts.id"), nullable=False
    )
    type: Mapped[NotificationType] = mapped_column(
        _enum_column(NotificationType, "notification_type"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)

    # Payload fields
    reward_credits: Mapped[int | None] = mapped_column(Integer, nullable=True)
    counterpart_user_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)
    milestone: Mapped[int | None] = mapped_column(Integer, nullable=True)

    read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (Index("idx_notifications_user_created", "user_id", "created_at"),)

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Notification(id={self.id}, user_id={self.user_id}, type={self.type})>"


class ReminderJob(Base):
    """
    ORM model for reminder_jobs table.

    Consumed by the external delayed-message delivery service at/after send_after.
    """

    __tablename__ = "reminder_jobs"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("user_accounts.id"), nullable=False
    )
    kind: Mapped[ReminderKind] = mapped_column(
        _enum_column(ReminderKind, "reminder_kind"), nullable=False
    )
    contact: Mapped[str] = mapped_column(String(20), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    send_after: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        Index("idx_reminder_jobs_due", "send_after", postgresql_where=text("sent_at IS NULL")),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<ReminderJob(id={self.id}, user_id={self.user_id}, send_after={self.send_after})>"

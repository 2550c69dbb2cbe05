"""SQLAlchemy ORM models for balances, pricing, sessions, requests and charges."""

import uuid
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any

from sqlalchemy import JSON, BigInteger, CheckConstraint, ForeignKey, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from chatpay.config import settings as app_settings
from chatpay.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LedgerEntryKind(StrEnum):
    LOCK = "LOCK"
    RELEASE = "RELEASE"
    REFUND = "REFUND"
    EARN = "EARN"
    SPEND = "SPEND"


class HoldStatus(StrEnum):
    LOCKED = "LOCKED"
    RELEASED = "RELEASED"
    EXPIRED = "EXPIRED"
    REFUNDED = "REFUNDED"


class ServiceType(StrEnum):
    CHAT = "CHAT"
    AUDIO = "AUDIO"
    VIDEO = "VIDEO"
    IMAGE = "IMAGE"


class ServiceRequestStatus(StrEnum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"


class ContentType(StrEnum):
    TEXT = "TEXT"
    IMAGE = "IMAGE"
    AUDIO = "AUDIO"
    VIDEO = "VIDEO"


class NotificationKind(StrEnum):
    SERVICE_REQUEST = "SERVICE_REQUEST"
    REQUEST_ACCEPTED = "REQUEST_ACCEPTED"
    SESSION_STARTED = "SESSION_STARTED"
    REQUEST_REJECTED = "REQUEST_REJECTED"
    REQUEST_EXPIRED = "REQUEST_EXPIRED"
    REQUEST_CANCELLED = "REQUEST_CANCELLED"


# ============================================================================
# Ledger
# ============================================================================


class Balance(Base):
    """Per-user money position in minor currency units."""

    __tablename__ = "balances"
    __table_args__ = (
        CheckConstraint("available >= 0", name="ck_balances_available_non_negative"),
        CheckConstraint("pending >= 0", name="ck_balances_pending_non_negative"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(Text, unique=True, index=True)
    available: Mapped[int] = mapped_column(BigInteger, default=0)
    pending: Mapped[int] = mapped_column(BigInteger, default=0)
    total_earned: Mapped[int] = mapped_column(BigInteger, default=0)
    total_spent: Mapped[int] = mapped_column(BigInteger, default=0)
    currency: Mapped[str] = mapped_column(Text, default=lambda: app_settings.default_currency)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow)

    @property
    def holdings(self) -> int:
        return self.available + self.pending


class LedgerEntry(Base):
    """Append-only record of one balance mutation. Never updated or deleted."""

    __tablename__ = "ledger_entries"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(Text, index=True)
    kind: Mapped[LedgerEntryKind]
    amount: Mapped[int] = mapped_column(BigInteger)
    # Signed change of available + pending
    delta: Mapped[int] = mapped_column(BigInteger)
    previous_balance: Mapped[int] = mapped_column(BigInteger)
    new_balance: Mapped[int] = mapped_column(BigInteger)
    reason: Mapped[str] = mapped_column(Text)
    related_entity_id: Mapped[str | None] = mapped_column(Text, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)


class PendingBalanceHold(Base):
    """Funds moved from available to pending, reversible exactly once."""

    __tablename__ = "pending_balance_holds"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(Text, index=True)
    amount: Mapped[int] = mapped_column(BigInteger)
    currency: Mapped[str] = mapped_column(Text)
    status: Mapped[HoldStatus] = mapped_column(default=HoldStatus.LOCKED, index=True)
    source_type: Mapped[str] = mapped_column(Text)
    source_id: Mapped[str] = mapped_column(Text, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)
    resolved_at: Mapped[datetime | None] = mapped_column(nullable=True)


class DepositReceipt(Base):
    """De-duplication key for confirmed gateway deposits."""

    __tablename__ = "deposit_receipts"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    reference: Mapped[str] = mapped_column(Text, unique=True)
    user_id: Mapped[str] = mapped_column(Text, index=True)
    amount: Mapped[int] = mapped_column(BigInteger)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)


# ============================================================================
# Pricing
# ============================================================================


class MonetizationSettings(Base):
    """A recipient's published prices."""

    __tablename__ = "monetization_settings"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(Text, unique=True, index=True)
    is_enabled: Mapped[bool] = mapped_column(default=False)
    currency: Mapped[str] = mapped_column(Text, default=lambda: app_settings.default_currency)

    # Per second
    monetize_voice_notes: Mapped[bool] = mapped_column(default=False)
    voice_note_price: Mapped[int] = mapped_column(BigInteger, default=0)
    # Per image
    monetize_images: Mapped[bool] = mapped_column(default=False)
    image_price: Mapped[int] = mapped_column(BigInteger, default=0)
    # Per second
    monetize_videos: Mapped[bool] = mapped_column(default=False)
    video_price: Mapped[int] = mapped_column(BigInteger, default=0)

    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow)

    # Relationships
    tiers: Mapped[list["ChatTimeTier"]] = relationship(
        back_populates="settings",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="ChatTimeTier.duration_minutes",
    )

    @property
    def active_tiers(self) -> list["ChatTimeTier"]:
        return [tier for tier in self.tiers if tier.is_active]


class ChatTimeTier(Base):
    """A purchasable (duration, price) pair."""

    __tablename__ = "chat_time_tiers"
    __table_args__ = (UniqueConstraint("settings_id", "duration_minutes", name="uq_chat_time_tiers_duration"),)

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    settings_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("monetization_settings.id", ondelete="CASCADE"),
        index=True,
    )
    duration_minutes: Mapped[int]
    price: Mapped[int] = mapped_column(BigInteger)
    is_active: Mapped[bool] = mapped_column(default=True)

    # Relationships
    settings: Mapped["MonetizationSettings"] = relationship(back_populates="tiers")


# ============================================================================
# Chat time
# ============================================================================


class ChatSession(Base):
    """Purchased chat time between a buyer and a seller, with a pausable clock."""

    __tablename__ = "chat_sessions"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    buyer_id: Mapped[str] = mapped_column(Text, index=True)
    seller_id: Mapped[str] = mapped_column(Text, index=True)
    duration_minutes: Mapped[int]
    price: Mapped[int] = mapped_column(BigInteger)
    currency: Mapped[str] = mapped_column(Text)

    used_minutes: Mapped[float] = mapped_column(default=0.0)
    is_paused: Mapped[bool] = mapped_column(default=True)
    is_active: Mapped[bool] = mapped_column(default=True, index=True)
    is_cancelled: Mapped[bool] = mapped_column(default=False)
    is_paid: Mapped[bool] = mapped_column(default=True)

    # Timestamps
    start_time: Mapped[datetime]
    # Wall-clock deadline while running
    end_time: Mapped[datetime]
    paused_at: Mapped[datetime | None] = mapped_column(nullable=True)
    resumed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_active_at: Mapped[datetime | None] = mapped_column(nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)

    def is_participant(self, user_id: str) -> bool:
        return user_id in (self.buyer_id, self.seller_id)


# ============================================================================
# Service requests
# ============================================================================


class ServiceRequest(Base):
    """An escrowed request waiting for the provider's answer."""

    __tablename__ = "service_requests"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    requester_id: Mapped[str] = mapped_column(Text, index=True)
    provider_id: Mapped[str] = mapped_column(Text, index=True)
    service_type: Mapped[ServiceType]
    duration: Mapped[int]
    price: Mapped[int] = mapped_column(BigInteger)
    currency: Mapped[str] = mapped_column(Text)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    reject_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[ServiceRequestStatus] = mapped_column(default=ServiceRequestStatus.PENDING, index=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, index=True)
    responded_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Relationships
    session: Mapped["ServiceSession"] = relationship(back_populates="request", uselist=False, lazy="selectin")


class ServiceSession(Base):
    """Paid session created when a provider accepts a request. Immutable."""

    __tablename__ = "service_sessions"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    request_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("service_requests.id", ondelete="CASCADE"),
        unique=True,
    )
    requester_id: Mapped[str] = mapped_column(Text, index=True)
    provider_id: Mapped[str] = mapped_column(Text, index=True)
    service_type: Mapped[ServiceType]
    duration: Mapped[int]
    price: Mapped[int] = mapped_column(BigInteger)
    currency: Mapped[str] = mapped_column(Text)
    start_time: Mapped[datetime]
    end_time: Mapped[datetime]
    is_paid: Mapped[bool] = mapped_column(default=True)
    paid_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Relationships
    request: Mapped["ServiceRequest"] = relationship(back_populates="session")


# ============================================================================
# Metered content
# ============================================================================


class ContentCharge(Base):
    """One billed message. The unique message id is the idempotency key."""

    __tablename__ = "content_charges"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    message_id: Mapped[str] = mapped_column(Text, unique=True)
    session_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True, index=True)
    sender_id: Mapped[str] = mapped_column(Text, index=True)
    recipient_id: Mapped[str] = mapped_column(Text, index=True)
    content_type: Mapped[ContentType]
    base_price: Mapped[int] = mapped_column(BigInteger)
    units: Mapped[int]
    total_amount: Mapped[int] = mapped_column(BigInteger)
    is_paid: Mapped[bool] = mapped_column(default=True)
    paid_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)


# ============================================================================
# Notifications
# ============================================================================


class Notification(Base):
    """Queued notice for a user. Delivery happens elsewhere."""

    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(Text, index=True)
    request_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True, index=True)
    kind: Mapped[NotificationKind]
    title: Mapped[str] = mapped_column(Text)
    message: Mapped[str] = mapped_column(Text)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON)
    is_read: Mapped[bool] = mapped_column(default=False)
    read_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)

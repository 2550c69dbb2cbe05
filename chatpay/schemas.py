"""Pydantic schemas for request/response validation."""

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from chatpay.models import ContentType, HoldStatus, LedgerEntryKind, NotificationKind, ServiceRequestStatus, ServiceType


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int

    @classmethod
    def of(cls, page: int, limit: int, total: int) -> "Pagination":
        return cls(page=page, limit=limit, total=total, total_pages=(total + limit - 1) // limit)


# ============================================================================
# Auth Schemas
# ============================================================================


class DevTokenRequest(BaseModel):
    """Issue a token for a user id (debug builds only)."""

    user_id: str = Field(min_length=1)


class AuthResponse(BaseModel):
    """Auth response with JWT token."""

    token: str
    user_id: str


# ============================================================================
# Balance Schemas
# ============================================================================


class BalanceResponse(ORMModel):
    """User's balance in minor currency units."""

    user_id: str
    available: int
    pending: int
    total_earned: int
    total_spent: int
    currency: str


class LedgerEntryResponse(ORMModel):
    id: uuid.UUID
    kind: LedgerEntryKind
    amount: int
    delta: int
    previous_balance: int
    new_balance: int
    reason: str
    related_entity_id: str | None
    created_at: datetime


class LedgerHistoryResponse(BaseModel):
    entries: list[LedgerEntryResponse]
    pagination: Pagination


class HoldResponse(ORMModel):
    id: uuid.UUID
    amount: int
    currency: str
    status: HoldStatus
    source_type: str
    source_id: str
    description: str | None
    created_at: datetime
    resolved_at: datetime | None


class PendingBalanceResponse(BaseModel):
    total_locked: int
    item_count: int
    items: list[HoldResponse]


class DepositConfirmation(BaseModel):
    """Confirmed deposit forwarded by the payment gateway."""

    user_id: str = Field(min_length=1)
    amount: int = Field(gt=0)
    reference: str = Field(min_length=1)


class DepositResponse(BaseModel):
    credited: bool
    balance: BalanceResponse


# ============================================================================
# Pricing Schemas
# ============================================================================


class ChatTimeTierInput(BaseModel):
    duration_minutes: int = Field(gt=0)
    price: int
    is_active: bool = True


class MonetizationSettingsUpdate(BaseModel):
    """Full replacement of a user's prices. Prices are minor units."""

    is_enabled: bool
    chat_time_tiers: list[ChatTimeTierInput] | None = None
    monetize_voice_notes: bool = False
    voice_note_price: int = 0
    monetize_images: bool = False
    image_price: int = 0
    monetize_videos: bool = False
    video_price: int = 0
    currency: str | None = None


class ChatTimeTierResponse(ORMModel):
    duration_minutes: int
    price: int
    is_active: bool


class MonetizationSettingsResponse(ORMModel):
    user_id: str
    is_enabled: bool
    currency: str
    monetize_voice_notes: bool
    voice_note_price: int
    monetize_images: bool
    image_price: int
    monetize_videos: bool
    video_price: int
    tiers: list[ChatTimeTierResponse]


class MonetizationInfo(BaseModel):
    """Public view of what talking to a user costs."""

    is_monetized: bool
    currency: str | None = None
    chat_time_tiers: list[ChatTimeTierResponse] = []
    voice_note_price: int | None = None
    image_price: int | None = None
    video_price: int | None = None


# ============================================================================
# Chat Session Schemas
# ============================================================================


class PurchaseChatTimeRequest(BaseModel):
    seller_id: str = Field(min_length=1)
    duration_minutes: int = Field(gt=0)


class ChatSessionInfo(BaseModel):
    id: uuid.UUID
    buyer_id: str
    seller_id: str
    duration_minutes: int
    price: int
    currency: str
    start_time: datetime
    end_time: datetime
    remaining_minutes: float
    used_minutes: float
    is_paused: bool
    is_active: bool
    is_cancelled: bool
    is_paid: bool


class CancelSessionResponse(BaseModel):
    refund_amount: int
    used_minutes: float
    remaining_minutes: float
    session: ChatSessionInfo


class EarningStats(BaseModel):
    balance: BalanceResponse
    total_sessions: int
    active_sessions: int
    session_earnings: int
    content_earnings: int


# ============================================================================
# Content Schemas
# ============================================================================


class AccessCheckRequest(BaseModel):
    recipient_id: str = Field(min_length=1)
    content_type: ContentType
    duration_seconds: int | None = Field(default=None, gt=0)


class ContentCost(BaseModel):
    content_type: ContentType
    base_price: int
    units: int
    total_cost: int
    currency: str

    @property
    def description(self) -> str:
        if self.content_type == ContentType.IMAGE:
            return f"1 image @ {self.currency} {self.base_price}"
        return f"{self.units} seconds @ {self.currency} {self.base_price}/sec = {self.currency} {self.total_cost}"


class ContentAuthorization(BaseModel):
    """Outcome of checking whether a message may be sent.

    ``session_required`` comes with the recipient's tier menu and no cost.
    """

    session_required: bool
    available_tiers: list[ChatTimeTierResponse] = []
    cost: ContentCost | None = None


class ContentChargeResponse(ORMModel):
    id: uuid.UUID
    message_id: str
    session_id: uuid.UUID | None
    sender_id: str
    recipient_id: str
    content_type: ContentType
    base_price: int
    units: int
    total_amount: int
    is_paid: bool


# ============================================================================
# Service Request Schemas
# ============================================================================


class CreateServiceRequest(BaseModel):
    provider_id: str = Field(min_length=1)
    service_type: ServiceType
    duration: int = Field(gt=0)
    message: str | None = None


class RespondToRequest(BaseModel):
    accept: bool
    reason: str | None = None


class ServiceSessionResponse(ORMModel):
    id: uuid.UUID
    request_id: uuid.UUID
    requester_id: str
    provider_id: str
    service_type: ServiceType
    duration: int
    price: int
    currency: str
    start_time: datetime
    end_time: datetime
    is_paid: bool


class ServiceRequestResponse(ORMModel):
    id: uuid.UUID
    requester_id: str
    provider_id: str
    service_type: ServiceType
    duration: int
    price: int
    currency: str
    message: str | None
    reject_reason: str | None
    status: ServiceRequestStatus
    created_at: datetime
    responded_at: datetime | None


class RespondResponse(BaseModel):
    request: ServiceRequestResponse
    session: ServiceSessionResponse | None = None


class RequestStats(BaseModel):
    total: int
    pending: int
    accepted: int
    rejected: int
    expired: int
    cancelled: int


# ============================================================================
# Notification Schemas
# ============================================================================


class NotificationResponse(ORMModel):
    id: uuid.UUID
    request_id: uuid.UUID | None
    kind: NotificationKind
    title: str
    message: str
    payload: dict[str, Any]
    is_read: bool
    read_at: datetime | None
    created_at: datetime


class NotificationListResponse(BaseModel):
    notifications: list[NotificationResponse]
    pagination: Pagination


class MarkAllReadResponse(BaseModel):
    updated_count: int


# ============================================================================
# Sweeps
# ============================================================================


class SweepResult(BaseModel):
    paused_sessions: int
    expired_requests: int

"""Typed notification payloads and the queue they are written to.

Delivery (push, socket, email) belongs to another service; this module only
records what should be said to whom, in the same transaction as the state
change that caused it.
"""

import uuid
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from chatpay.clock import Clock
from chatpay.errors import Unauthorized
from chatpay.models import Notification, NotificationKind, ServiceType
from chatpay.uow import UnitOfWork


class _Payload(BaseModel):
    model_config = ConfigDict(frozen=True)

    def title(self) -> str:
        raise NotImplementedError

    def text(self) -> str:
        raise NotImplementedError


class ServiceRequested(_Payload):
    kind: Literal[NotificationKind.SERVICE_REQUEST] = NotificationKind.SERVICE_REQUEST
    requester_id: str
    service_type: ServiceType
    duration: int
    price: int
    message: str | None = None

    def title(self) -> str:
        return f"New {self.service_type} Request"

    def text(self) -> str:
        return self.message or f"User wants to {self.service_type.lower()} for {self.duration} minutes"


class RequestAccepted(_Payload):
    kind: Literal[NotificationKind.REQUEST_ACCEPTED] = NotificationKind.REQUEST_ACCEPTED
    session_id: uuid.UUID
    service_type: ServiceType

    def title(self) -> str:
        return "Request Accepted"

    def text(self) -> str:
        return f"Your {self.service_type} request has been accepted"


class SessionStarted(_Payload):
    kind: Literal[NotificationKind.SESSION_STARTED] = NotificationKind.SESSION_STARTED
    session_id: uuid.UUID
    service_type: ServiceType

    def title(self) -> str:
        return "Session Started"

    def text(self) -> str:
        return f"{self.service_type} session has started"


class RequestRejected(_Payload):
    kind: Literal[NotificationKind.REQUEST_REJECTED] = NotificationKind.REQUEST_REJECTED
    service_type: ServiceType
    reason: str | None = None

    def title(self) -> str:
        return "Request Rejected"

    def text(self) -> str:
        return self.reason or f"Your {self.service_type} request was rejected"


class RequestExpiredNotice(_Payload):
    kind: Literal[NotificationKind.REQUEST_EXPIRED] = NotificationKind.REQUEST_EXPIRED
    days: int
    is_requester: bool

    def title(self) -> str:
        return "Request Expired"

    def text(self) -> str:
        if self.is_requester:
            return f"Your service request has expired ({self.days} days)"
        return f"Service request has expired ({self.days} days)"


class RequestCancelled(_Payload):
    kind: Literal[NotificationKind.REQUEST_CANCELLED] = NotificationKind.REQUEST_CANCELLED
    requester_id: str

    def title(self) -> str:
        return "Request Cancelled"

    def text(self) -> str:
        return "User cancelled their service request"


NotificationPayload = Annotated[
    ServiceRequested | RequestAccepted | SessionStarted | RequestRejected | RequestExpiredNotice | RequestCancelled,
    Field(discriminator="kind"),
]

payload_adapter: TypeAdapter[NotificationPayload] = TypeAdapter(NotificationPayload)


def parse_payload(data: dict) -> NotificationPayload:
    return payload_adapter.validate_python(data)


class Notifications:
    def __init__(self, uow: UnitOfWork, clock: Clock) -> None:
        self.uow = uow
        self.clock = clock

    def enqueue(
        self,
        db: AsyncSession,
        user_id: str,
        payload: NotificationPayload,
        *,
        request_id: uuid.UUID | None = None,
    ) -> Notification:
        """Queue a notification inside the caller's unit of work."""
        notification = Notification(
            user_id=user_id,
            request_id=request_id,
            kind=payload.kind,
            title=payload.title(),
            message=payload.text(),
            payload=payload.model_dump(mode="json"),
            is_read=False,
            created_at=self.clock.now(),
        )
        db.add(notification)
        return notification

    async def list_for_user(
        self,
        user_id: str,
        *,
        unread_only: bool = False,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[Notification], int]:
        conditions = [Notification.user_id == user_id]
        if unread_only:
            conditions.append(Notification.is_read.is_(False))

        async with self.uow.read() as db:
            total = await db.scalar(select(func.count()).select_from(Notification).where(*conditions))
            result = await db.execute(
                select(Notification)
                .where(*conditions)
                .order_by(Notification.created_at.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            return list(result.scalars().all()), total or 0

    async def mark_read(self, user_id: str, notification_id: uuid.UUID) -> Notification:
        async with self.uow() as db:
            notification = await db.get(Notification, notification_id)
            if notification is None or notification.user_id != user_id:
                raise Unauthorized("Not authorized", notification_id=str(notification_id))
            if not notification.is_read:
                notification.is_read = True
                notification.read_at = self.clock.now()
        return notification

    async def mark_all_read(self, user_id: str) -> int:
        async with self.uow() as db:
            result = await db.execute(
                update(Notification)
                .where(Notification.user_id == user_id, Notification.is_read.is_(False))
                .values(is_read=True, read_at=self.clock.now())
            )
        return result.rowcount

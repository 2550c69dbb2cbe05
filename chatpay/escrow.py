"""Escrowed service requests: funds are locked until the provider answers."""

import uuid
from datetime import datetime, timedelta
from typing import Literal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from chatpay.clock import Clock
from chatpay.errors import (
    HoldNotLocked,
    InvalidRequest,
    RequestExpired,
    RequestNotFound,
    RequestNotPending,
    Unauthorized,
)
from chatpay.ledger import BalanceLedger
from chatpay.logging_config import get_logger
from chatpay.models import PendingBalanceHold, ServiceRequest, ServiceRequestStatus, ServiceSession, ServiceType
from chatpay.notifications import (
    Notifications,
    RequestAccepted,
    RequestCancelled,
    RequestExpiredNotice,
    RequestRejected,
    ServiceRequested,
    SessionStarted,
)
from chatpay.pricing import PricingCatalog
from chatpay.schemas import RequestStats
from chatpay.uow import UnitOfWork

logger = get_logger(__name__)

HOLD_SOURCE = "SERVICE_REQUEST"


class EscrowRequestEngine:
    """
    Lock → release / refund / expire.

    Creating a request moves its price from the requester's available to
    pending funds. The provider's answer settles the hold: accepting pays it
    out, rejecting returns it. Requests nobody answers within
    ``expiry_days`` are expired and refunded.
    """

    def __init__(
        self,
        uow: UnitOfWork,
        ledger: BalanceLedger,
        pricing: PricingCatalog,
        notifications: Notifications,
        clock: Clock,
        *,
        expiry_days: int = 7,
    ) -> None:
        self.uow = uow
        self.ledger = ledger
        self.pricing = pricing
        self.notifications = notifications
        self.clock = clock
        self.expiry_days = expiry_days

    def _is_stale(self, request: ServiceRequest, now: datetime, days: int | None = None) -> bool:
        return request.created_at < now - timedelta(days=days if days is not None else self.expiry_days)

    async def _peek(self, request_id: uuid.UUID) -> ServiceRequest:
        """Unlocked read, used to learn whose balances to lock."""
        async with self.uow.read() as db:
            request = await db.get(ServiceRequest, request_id)
        if request is None:
            raise RequestNotFound(request_id=str(request_id))
        return request

    async def _load(self, db: AsyncSession, request_id: uuid.UUID) -> ServiceRequest:
        result = await db.execute(select(ServiceRequest).where(ServiceRequest.id == request_id).with_for_update())
        request = result.scalar_one_or_none()
        if request is None:
            raise RequestNotFound(request_id=str(request_id))
        return request

    async def _hold(self, db: AsyncSession, request: ServiceRequest) -> PendingBalanceHold:
        hold = await self.ledger.find_locked_hold(db, str(request.id), request.requester_id)
        if hold is None:
            raise HoldNotLocked("No locked funds for this request", request_id=str(request.id))
        return hold

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def create_request(
        self,
        requester_id: str,
        provider_id: str,
        service_type: ServiceType,
        duration: int,
        message: str | None = None,
    ) -> ServiceRequest:
        if requester_id == provider_id:
            raise InvalidRequest("Cannot request service from yourself")

        now = self.clock.now()
        async with self.uow(requester_id) as db:
            found = await self.pricing.get_enabled_settings(db, provider_id)
            price = self.pricing.service_price(found, service_type, duration)

            request = ServiceRequest(
                id=uuid.uuid4(),
                requester_id=requester_id,
                provider_id=provider_id,
                service_type=service_type,
                duration=duration,
                price=price,
                currency=found.currency,
                message=message,
                status=ServiceRequestStatus.PENDING,
                created_at=now,
            )
            db.add(request)
            await db.flush()

            await self.ledger.lock(
                db,
                requester_id,
                price,
                source_type=HOLD_SOURCE,
                source_id=str(request.id),
                currency=found.currency,
                description=f"Payment locked for {service_type} request",
            )
            self.notifications.enqueue(
                db,
                provider_id,
                ServiceRequested(
                    requester_id=requester_id,
                    service_type=service_type,
                    duration=duration,
                    price=price,
                    message=message,
                ),
                request_id=request.id,
            )

        logger.info(
            "Service request created",
            request_id=str(request.id),
            requester_id=requester_id,
            provider_id=provider_id,
            service_type=service_type,
            price=price,
        )
        return request

    async def respond(
        self,
        request_id: uuid.UUID,
        provider_id: str,
        accept: bool,
        reason: str | None = None,
    ) -> tuple[ServiceRequest, ServiceSession | None]:
        """
        Accept or reject a pending request.

        Accepting pays the hold out to the provider and opens a paid service
        session starting now. Answering a request older than ``expiry_days``
        expires it instead, and RequestExpired is raised after the expiry is
        committed.
        """
        peek = await self._peek(request_id)
        if peek.provider_id != provider_id:
            raise Unauthorized("Not authorized", request_id=str(request_id))

        now = self.clock.now()
        stale = False
        session = None
        async with self.uow(peek.requester_id, peek.provider_id) as db:
            request = await self._load(db, request_id)
            if request.status != ServiceRequestStatus.PENDING:
                raise RequestNotPending(request_id=str(request_id), status=request.status)

            if self._is_stale(request, now):
                stale = True
            elif accept:
                session = await self._accept(db, request, now)
            else:
                await self._reject(db, request, now, reason)

        if stale:
            await self.expire(request_id)
            raise RequestExpired(
                f"Request has expired (older than {self.expiry_days} days)",
                request_id=str(request_id),
            )

        logger.info(
            "Service request answered",
            request_id=str(request_id),
            provider_id=provider_id,
            status=request.status,
        )
        return request, session

    async def _accept(self, db: AsyncSession, request: ServiceRequest, now: datetime) -> ServiceSession:
        hold = await self._hold(db, request)
        await self.ledger.release(
            db, hold, request.provider_id, f"Payment for {request.service_type} service",
        )

        request.status = ServiceRequestStatus.ACCEPTED
        request.responded_at = now

        session = ServiceSession(
            id=uuid.uuid4(),
            request_id=request.id,
            requester_id=request.requester_id,
            provider_id=request.provider_id,
            service_type=request.service_type,
            duration=request.duration,
            price=request.price,
            currency=request.currency,
            start_time=now,
            end_time=now + timedelta(minutes=request.duration),
            is_paid=True,
            paid_at=now,
        )
        db.add(session)
        await db.flush()

        self.notifications.enqueue(
            db,
            request.requester_id,
            RequestAccepted(session_id=session.id, service_type=request.service_type),
            request_id=request.id,
        )
        self.notifications.enqueue(
            db,
            request.provider_id,
            SessionStarted(session_id=session.id, service_type=request.service_type),
            request_id=request.id,
        )
        return session

    async def _reject(self, db: AsyncSession, request: ServiceRequest, now: datetime, reason: str | None) -> None:
        hold = await self._hold(db, request)
        await self.ledger.refund(db, hold, f"Refund for rejected {request.service_type} request")

        request.status = ServiceRequestStatus.REJECTED
        request.reject_reason = reason
        request.responded_at = now

        self.notifications.enqueue(
            db,
            request.requester_id,
            RequestRejected(service_type=request.service_type, reason=reason),
            request_id=request.id,
        )

    async def cancel_request(self, request_id: uuid.UUID, requester_id: str) -> ServiceRequest:
        """Withdraw a pending request and get the locked funds back."""
        peek = await self._peek(request_id)
        if peek.requester_id != requester_id:
            raise Unauthorized("Not authorized", request_id=str(request_id))

        now = self.clock.now()
        async with self.uow(peek.requester_id, peek.provider_id) as db:
            request = await self._load(db, request_id)
            if request.status != ServiceRequestStatus.PENDING:
                raise RequestNotPending("Can only cancel pending requests", request_id=str(request_id))

            hold = await self._hold(db, request)
            await self.ledger.refund(db, hold, f"Refund for cancelled {request.service_type} request")

            request.status = ServiceRequestStatus.CANCELLED
            request.responded_at = now

            self.notifications.enqueue(
                db,
                request.provider_id,
                RequestCancelled(requester_id=requester_id),
                request_id=request.id,
            )

        logger.info("Service request cancelled", request_id=str(request_id), requester_id=requester_id)
        return request

    async def expire(self, request_id: uuid.UUID) -> bool:
        """
        Expire a pending request and refund its hold.

        Returns False, changing nothing, when the request has already left
        PENDING (answered, cancelled or expired by someone else).
        """
        peek = await self._peek(request_id)

        now = self.clock.now()
        async with self.uow(peek.requester_id, peek.provider_id) as db:
            request = await self._load(db, request_id)
            if request.status != ServiceRequestStatus.PENDING:
                return False

            hold = await self._hold(db, request)
            await self.ledger.refund(
                db, hold, f"Refund for expired {request.service_type} request", expired=True,
            )

            request.status = ServiceRequestStatus.EXPIRED
            request.responded_at = now

            for user_id, is_requester in ((request.requester_id, True), (request.provider_id, False)):
                self.notifications.enqueue(
                    db,
                    user_id,
                    RequestExpiredNotice(days=self.expiry_days, is_requester=is_requester),
                    request_id=request.id,
                )

        logger.info("Service request expired", request_id=str(request_id), requester_id=peek.requester_id)
        return True

    async def auto_expire_stale(self, threshold_days: int | None = None) -> int:
        """Expire every pending request older than the threshold; returns the count."""
        days = threshold_days if threshold_days is not None else self.expiry_days
        cutoff = self.clock.now() - timedelta(days=days)

        async with self.uow.read() as db:
            result = await db.execute(
                select(ServiceRequest.id).where(
                    ServiceRequest.status == ServiceRequestStatus.PENDING,
                    ServiceRequest.created_at < cutoff,
                )
            )
            candidates = list(result.scalars().all())

        expired = 0
        for request_id in candidates:
            try:
                if await self.expire(request_id):
                    expired += 1
            except Exception:
                logger.exception("Failed to expire service request", request_id=str(request_id))

        if candidates:
            logger.info("Expired stale service requests", count=expired, threshold_days=days)
        return expired

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_request(self, request_id: uuid.UUID, user_id: str) -> ServiceRequest:
        request = await self._peek(request_id)
        if user_id not in (request.requester_id, request.provider_id):
            raise Unauthorized("Not authorized", request_id=str(request_id))
        return request

    async def pending_received(self, provider_id: str) -> list[ServiceRequest]:
        """Pending requests a provider can still answer, newest first."""
        cutoff = self.clock.now() - timedelta(days=self.expiry_days)
        async with self.uow.read() as db:
            result = await db.execute(
                select(ServiceRequest)
                .where(
                    ServiceRequest.provider_id == provider_id,
                    ServiceRequest.status == ServiceRequestStatus.PENDING,
                    ServiceRequest.created_at >= cutoff,
                )
                .order_by(ServiceRequest.created_at.desc())
            )
            return list(result.scalars().all())

    async def sent_requests(
        self,
        requester_id: str,
        status: ServiceRequestStatus | None = None,
    ) -> list[ServiceRequest]:
        query = select(ServiceRequest).where(ServiceRequest.requester_id == requester_id)
        if status is not None:
            query = query.where(ServiceRequest.status == status)

        async with self.uow.read() as db:
            result = await db.execute(query.order_by(ServiceRequest.created_at.desc()))
            return list(result.scalars().all())

    async def request_stats(self, user_id: str, role: Literal["requester", "provider"]) -> RequestStats:
        column = ServiceRequest.requester_id if role == "requester" else ServiceRequest.provider_id
        async with self.uow.read() as db:
            result = await db.execute(
                select(ServiceRequest.status, func.count())
                .where(column == user_id)
                .group_by(ServiceRequest.status)
            )
            counts = {status: count for status, count in result.all()}

        return RequestStats(
            total=sum(counts.values()),
            pending=counts.get(ServiceRequestStatus.PENDING, 0),
            accepted=counts.get(ServiceRequestStatus.ACCEPTED, 0),
            rejected=counts.get(ServiceRequestStatus.REJECTED, 0),
            expired=counts.get(ServiceRequestStatus.EXPIRED, 0),
            cancelled=counts.get(ServiceRequestStatus.CANCELLED, 0),
        )

"""Chat time: purchase, pausable clock, expiry and pro-rata cancellation."""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_EVEN, Decimal

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from chatpay.clock import Clock
from chatpay.errors import InvalidRequest, SessionConflict, SessionExpired, SessionNotFound, SessionNotRunning, Unauthorized
from chatpay.ledger import BalanceLedger
from chatpay.logging_config import get_logger
from chatpay.models import ChatSession, ContentCharge, LedgerEntryKind
from chatpay.pricing import PricingCatalog
from chatpay.schemas import BalanceResponse, ChatSessionInfo, EarningStats
from chatpay.uow import UnitOfWork

logger = get_logger(__name__)

# Float noise below this is treated as "no time left"
_EPSILON_MINUTES = 1e-6


def checkpoint(session: ChatSession) -> datetime:
    """Instant from which a running session's unrecorded time is measured."""
    return max(t for t in (session.last_active_at, session.resumed_at, session.start_time) if t is not None)


def unrecorded_minutes(session: ChatSession, now: datetime) -> float:
    if session.is_paused:
        return 0.0
    return max(0.0, (now - checkpoint(session)).total_seconds() / 60)


def remaining_minutes(session: ChatSession, now: datetime) -> float:
    """
    Minutes of purchased time left.

    This is the only remaining-time formula: display, expiry checks, content
    authorization and refunds all go through it.
    """
    remaining = session.duration_minutes - (session.used_minutes + unrecorded_minutes(session, now))
    return remaining if remaining > _EPSILON_MINUTES else 0.0


def prorated_refund(price: int, duration_minutes: int, remaining: float) -> int:
    """``price / duration * remaining`` in minor units, rounded half to even."""
    if remaining <= 0:
        return 0
    amount = Decimal(price) * Decimal(str(remaining)) / Decimal(duration_minutes)
    return min(price, int(amount.quantize(Decimal(1), rounding=ROUND_HALF_EVEN)))


def session_info(session: ChatSession, now: datetime) -> ChatSessionInfo:
    remaining = remaining_minutes(session, now)
    return ChatSessionInfo(
        id=session.id,
        buyer_id=session.buyer_id,
        seller_id=session.seller_id,
        duration_minutes=session.duration_minutes,
        price=session.price,
        currency=session.currency,
        start_time=session.start_time,
        end_time=session.end_time,
        remaining_minutes=round(remaining, 2),
        used_minutes=round(session.used_minutes, 2),
        is_paused=session.is_paused,
        is_active=session.is_active and not session.is_cancelled and remaining > 0,
        is_cancelled=session.is_cancelled,
        is_paid=session.is_paid,
    )


@dataclass
class CancelOutcome:
    session: ChatSession
    refund_amount: int
    remaining_minutes: float


class SessionEngine:
    """
    Purchased chat time between a buyer and a seller.

    A session is bought paused with its full quota. Activating it arms a
    wall-clock deadline (``end_time``); pausing stops the clock and books the
    elapsed minutes into ``used_minutes``. There is no timer: expiry is noticed
    by the next touch, pause, activate or sweep that sees no time left.
    """

    def __init__(self, uow: UnitOfWork, ledger: BalanceLedger, pricing: PricingCatalog, clock: Clock) -> None:
        self.uow = uow
        self.ledger = ledger
        self.pricing = pricing
        self.clock = clock

    # ------------------------------------------------------------------
    # Clock transitions (in-memory, caller commits)
    # ------------------------------------------------------------------

    @staticmethod
    def _record_elapsed(session: ChatSession, now: datetime) -> None:
        """Book running time since the checkpoint, never beyond the quota."""
        if session.is_paused:
            return
        left = max(0.0, session.duration_minutes - session.used_minutes)
        session.used_minutes += min(left, unrecorded_minutes(session, now))
        session.last_active_at = now

    def _resume(self, session: ChatSession, now: datetime) -> None:
        self._record_elapsed(session, now)
        left = session.duration_minutes - session.used_minutes
        session.is_paused = False
        session.resumed_at = now
        session.last_active_at = now
        session.end_time = now + timedelta(minutes=left)

    def _pause(self, session: ChatSession, now: datetime) -> None:
        self._record_elapsed(session, now)
        session.is_paused = True
        session.paused_at = now

    def _finalize(self, session: ChatSession, now: datetime) -> None:
        """Close out a session whose time has run out."""
        if not session.is_paused:
            # Charged up to the deadline, never past it
            self._record_elapsed(session, min(now, session.end_time))
            session.paused_at = now
        if session.duration_minutes - session.used_minutes < _EPSILON_MINUTES:
            session.used_minutes = float(session.duration_minutes)
        session.is_paused = True
        session.is_active = False

    def _expire_if_due(self, session: ChatSession, now: datetime) -> bool:
        if remaining_minutes(session, now) > 0:
            return False
        self._finalize(session, now)
        logger.info("Session time used up", session_id=str(session.id), used_minutes=session.used_minutes)
        return True

    @staticmethod
    def _require_open(session: ChatSession) -> None:
        if session.is_cancelled or not session.is_active:
            raise SessionExpired("Session is not available", session_id=str(session.id))

    @staticmethod
    def _require_participant(session: ChatSession, user_id: str) -> None:
        if not session.is_participant(user_id):
            raise Unauthorized("You are not part of this chat session", session_id=str(session.id))

    async def _load(self, db: AsyncSession, session_id: uuid.UUID) -> ChatSession:
        result = await db.execute(select(ChatSession).where(ChatSession.id == session_id).with_for_update())
        session = result.scalar_one_or_none()
        if session is None:
            raise SessionNotFound(session_id=str(session_id))
        return session

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def purchase(self, buyer_id: str, seller_id: str, duration_minutes: int) -> ChatSession:
        """
        Buy one of the seller's published tiers.

        The price moves to the seller immediately; the session starts paused
        with the whole quota unused.
        """
        if buyer_id == seller_id:
            raise InvalidRequest("Cannot purchase chat time from yourself")

        now = self.clock.now()
        async with self.uow(buyer_id, seller_id) as db:
            found = await self.pricing.get_enabled_settings(db, seller_id)
            tier = self.pricing.tier_for(found, duration_minutes)

            result = await db.execute(
                select(ChatSession)
                .where(
                    ChatSession.buyer_id == buyer_id,
                    ChatSession.seller_id == seller_id,
                    ChatSession.is_active.is_(True),
                    ChatSession.is_cancelled.is_(False),
                )
                .with_for_update()
            )
            for existing in result.scalars():
                left = remaining_minutes(existing, now)
                if left > 0:
                    raise SessionConflict(
                        f"You already have an active session with {left:.2f} minutes remaining",
                        session_id=str(existing.id),
                    )
                self._finalize(existing, now)

            session = ChatSession(
                id=uuid.uuid4(),
                buyer_id=buyer_id,
                seller_id=seller_id,
                duration_minutes=tier.duration_minutes,
                price=tier.price,
                currency=found.currency,
                used_minutes=0.0,
                is_paused=True,
                is_active=True,
                is_cancelled=False,
                is_paid=True,
                start_time=now,
                end_time=now,
                paid_at=now,
                created_at=now,
            )
            db.add(session)
            await db.flush()

            await self.ledger.transfer(
                db,
                buyer_id,
                seller_id,
                tier.price,
                f"Chat time: {tier.duration_minutes} minutes",
                related_entity_id=str(session.id),
            )

        logger.info(
            "Chat session purchased",
            session_id=str(session.id),
            buyer_id=buyer_id,
            seller_id=seller_id,
            duration_minutes=tier.duration_minutes,
            price=tier.price,
        )
        return session

    async def activate(self, session_id: uuid.UUID, caller_id: str | None = None) -> ChatSession:
        """Start (or restart) the clock with a deadline of now + remaining time."""
        now = self.clock.now()
        async with self.uow() as db:
            session = await self._load(db, session_id)
            if caller_id is not None:
                self._require_participant(session, caller_id)
            self._require_open(session)

            expired = self._expire_if_due(session, now)
            if not expired:
                self._resume(session, now)

        if expired:
            raise SessionExpired("Session time has been fully used", session_id=str(session_id))

        logger.info(
            "Session activated",
            session_id=str(session_id),
            remaining_minutes=round(remaining_minutes(session, now), 2),
        )
        return session

    async def touch_activity(self, session_id: uuid.UUID) -> ChatSession:
        """
        Record a message in the session.

        A paused session is resumed. A running one has its elapsed time booked
        and its checkpoint moved to now. Once the time is gone the session is
        finalized, that state is committed, and SessionExpired is raised.
        """
        now = self.clock.now()
        async with self.uow() as db:
            session = await self._load(db, session_id)
            self._require_open(session)

            expired = self._expire_if_due(session, now)
            if not expired:
                if session.is_paused:
                    self._resume(session, now)
                else:
                    self._record_elapsed(session, now)

        if expired:
            raise SessionExpired(session_id=str(session_id))
        return session

    async def pause(self, session_id: uuid.UUID, caller_id: str) -> ChatSession:
        now = self.clock.now()
        async with self.uow() as db:
            session = await self._load(db, session_id)
            self._require_participant(session, caller_id)
            self._require_open(session)
            if session.is_paused:
                raise SessionNotRunning(session_id=str(session_id))

            if not self._expire_if_due(session, now):
                self._pause(session, now)

        logger.info("Session paused", session_id=str(session_id), used_minutes=round(session.used_minutes, 2))
        return session

    async def cancel(self, session_id: uuid.UUID, caller_id: str) -> CancelOutcome:
        """
        End the session early and give the buyer back the unused share.

        Either participant may cancel. The refund is clawed back from the
        seller's available funds; if the seller has already spent it the
        cancellation fails with InsufficientFunds and nothing changes.
        """
        async with self.uow.read() as db:
            found = await db.get(ChatSession, session_id)
        if found is None:
            raise SessionNotFound(session_id=str(session_id))

        now = self.clock.now()
        # Balances first, then the session row, same order as purchase
        async with self.uow(found.buyer_id, found.seller_id) as db:
            session = await self._load(db, session_id)
            self._require_participant(session, caller_id)
            self._require_open(session)

            self._record_elapsed(session, now)
            left = remaining_minutes(session, now)
            refund = prorated_refund(session.price, session.duration_minutes, left)

            if not session.is_paused:
                session.is_paused = True
                session.paused_at = now
            session.is_active = False
            session.is_cancelled = True

            if refund > 0:
                reason = f"Refund for cancelled chat session ({left:.2f} minutes unused)"
                await self.ledger.debit(
                    db, session.seller_id, refund, reason,
                    related_entity_id=str(session.id), kind=LedgerEntryKind.REFUND,
                )
                await self.ledger.credit(
                    db, session.buyer_id, refund, reason,
                    related_entity_id=str(session.id), kind=LedgerEntryKind.REFUND,
                )

        logger.info(
            "Session cancelled",
            session_id=str(session_id),
            cancelled_by=caller_id,
            refund_amount=refund,
            used_minutes=round(session.used_minutes, 2),
        )
        return CancelOutcome(session=session, refund_amount=refund, remaining_minutes=left)

    async def auto_pause_inactive(self, inactivity_minutes: int) -> int:
        """
        Pause running sessions nobody has touched for ``inactivity_minutes``,
        and finalize running ones whose deadline has passed.

        Each session is handled in its own unit of work; a failure is logged
        and the sweep moves on.
        """
        now = self.clock.now()
        cutoff = now - timedelta(minutes=inactivity_minutes)

        async with self.uow.read() as db:
            result = await db.execute(
                select(ChatSession.id).where(
                    ChatSession.is_active.is_(True),
                    ChatSession.is_paused.is_(False),
                    ChatSession.is_cancelled.is_(False),
                    or_(ChatSession.last_active_at < cutoff, ChatSession.end_time <= now),
                )
            )
            candidates = list(result.scalars().all())

        paused = 0
        for session_id in candidates:
            try:
                if await self._auto_pause_one(session_id, inactivity_minutes):
                    paused += 1
            except Exception:
                logger.exception("Failed to auto-pause session", session_id=str(session_id))

        if paused:
            logger.info("Auto-paused inactive sessions", count=paused)
        return paused

    async def _auto_pause_one(self, session_id: uuid.UUID, inactivity_minutes: int) -> bool:
        now = self.clock.now()
        async with self.uow() as db:
            session = await self._load(db, session_id)
            # A user may have paused, resumed or cancelled since the scan
            if session.is_paused or session.is_cancelled or not session.is_active:
                return False
            if self._expire_if_due(session, now):
                return True
            if checkpoint(session) > now - timedelta(minutes=inactivity_minutes):
                return False
            self._pause(session, now)

        logger.info("Auto-paused inactive session", session_id=str(session_id))
        return True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_session(self, session_id: uuid.UUID) -> ChatSession:
        async with self.uow.read() as db:
            session = await db.get(ChatSession, session_id)
        if session is None:
            raise SessionNotFound(session_id=str(session_id))
        return session

    async def get_active_session(self, db: AsyncSession, buyer_id: str, seller_id: str) -> ChatSession | None:
        """The buyer's session with the seller that still has time, if any. Read-only."""
        now = self.clock.now()
        result = await db.execute(
            select(ChatSession)
            .where(
                ChatSession.buyer_id == buyer_id,
                ChatSession.seller_id == seller_id,
                ChatSession.is_active.is_(True),
                ChatSession.is_cancelled.is_(False),
            )
            .order_by(ChatSession.created_at.desc())
        )
        for session in result.scalars():
            if remaining_minutes(session, now) > 0:
                return session
        return None

    async def active_session_between(self, user_id: str, other_id: str) -> ChatSession | None:
        """Live session between two users, whichever of them bought it."""
        async with self.uow.read() as db:
            session = await self.get_active_session(db, user_id, other_id)
            if session is None:
                session = await self.get_active_session(db, other_id, user_id)
        return session

    async def list_sessions(self, user_id: str, active: bool | None = None) -> list[ChatSession]:
        async with self.uow.read() as db:
            result = await db.execute(
                select(ChatSession)
                .where(
                    or_(ChatSession.buyer_id == user_id, ChatSession.seller_id == user_id),
                    ChatSession.is_cancelled.is_(False),
                )
                .order_by(ChatSession.created_at.desc())
            )
            sessions = list(result.scalars().all())

        if active is None:
            return sessions

        now = self.clock.now()
        return [s for s in sessions if (s.is_active and remaining_minutes(s, now) > 0) == active]

    async def earning_stats(self, user_id: str) -> EarningStats:
        """What a seller has made from chat time and metered content."""
        now = self.clock.now()
        balance = await self.ledger.get_balance(user_id)

        async with self.uow.read() as db:
            result = await db.execute(
                select(ChatSession).where(ChatSession.seller_id == user_id, ChatSession.is_cancelled.is_(False))
            )
            sessions = list(result.scalars().all())
            content_earnings = await db.scalar(
                select(func.coalesce(func.sum(ContentCharge.total_amount), 0)).where(
                    ContentCharge.recipient_id == user_id
                )
            )

        return EarningStats(
            balance=BalanceResponse.model_validate(balance),
            total_sessions=len(sessions),
            active_sessions=sum(1 for s in sessions if s.is_active and remaining_minutes(s, now) > 0),
            session_earnings=sum(s.price for s in sessions),
            content_earnings=content_earnings or 0,
        )

    def info(self, session: ChatSession) -> ChatSessionInfo:
        return session_info(session, self.clock.now())

"""Per-message billing for monetized voice notes, images and videos."""

import uuid

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from chatpay.clock import Clock
from chatpay.errors import DuplicateCharge, DurationRequired, InsufficientFunds, SessionExpired, SessionNotFound, Unauthorized
from chatpay.ledger import BalanceLedger
from chatpay.logging_config import get_logger
from chatpay.models import Balance, ChatSession, ContentCharge, ContentType, MonetizationSettings
from chatpay.pricing import PricingCatalog
from chatpay.schemas import ChatTimeTierResponse, ContentAuthorization, ContentCost
from chatpay.sessions import SessionEngine, remaining_minutes
from chatpay.uow import UnitOfWork

logger = get_logger(__name__)

_METERED = (ContentType.AUDIO, ContentType.VIDEO)


def content_cost(
    found: MonetizationSettings,
    content_type: ContentType,
    duration_seconds: int | None = None,
) -> ContentCost | None:
    """Price of one message, or None when the recipient does not charge for it."""
    if content_type == ContentType.TEXT:
        return None

    rate = PricingCatalog.content_rate(found, content_type)
    if rate is None:
        return None

    if content_type in _METERED:
        if not duration_seconds or duration_seconds <= 0:
            label = "voice notes" if content_type == ContentType.AUDIO else "videos"
            raise DurationRequired(f"Duration is required for {label}", content_type=content_type)
        units = duration_seconds
    else:
        units = 1

    return ContentCost(
        content_type=content_type,
        base_price=rate,
        units=units,
        total_cost=rate * units,
        currency=found.currency,
    )


class ContentBilling:
    def __init__(
        self,
        uow: UnitOfWork,
        ledger: BalanceLedger,
        pricing: PricingCatalog,
        sessions: SessionEngine,
        clock: Clock,
    ) -> None:
        self.uow = uow
        self.ledger = ledger
        self.pricing = pricing
        self.sessions = sessions
        self.clock = clock

    async def authorize(
        self,
        sender_id: str,
        recipient_id: str,
        content_type: ContentType,
        duration_seconds: int | None = None,
    ) -> ContentAuthorization:
        """
        Decide whether a message may be sent and what it will cost.

        Nothing is written. A sender without a live session gets the
        recipient's tier menu back instead of a cost.
        """
        if content_type == ContentType.TEXT:
            return ContentAuthorization(session_required=False)

        async with self.uow.read() as db:
            found = await self.pricing.get_settings(db, recipient_id)
            if found is None or not found.is_enabled:
                return ContentAuthorization(session_required=False)

            session = await self.sessions.get_active_session(db, sender_id, recipient_id)
            if session is None:
                return ContentAuthorization(
                    session_required=True,
                    available_tiers=[ChatTimeTierResponse.model_validate(tier) for tier in found.active_tiers],
                )

            cost = content_cost(found, content_type, duration_seconds)
            if cost is None:
                return ContentAuthorization(session_required=False)

            available = await db.scalar(select(Balance.available).where(Balance.user_id == sender_id)) or 0

        if available < cost.total_cost:
            raise InsufficientFunds(
                f"Insufficient balance for {content_type}. "
                f"Required: {cost.currency} {cost.total_cost}, Available: {cost.currency} {available}",
                user_id=sender_id,
                required=cost.total_cost,
                available=available,
            )
        return ContentAuthorization(session_required=False, cost=cost)

    async def charge(
        self,
        message_id: str,
        session_id: uuid.UUID,
        sender_id: str,
        recipient_id: str,
        content_type: ContentType,
        duration_seconds: int | None = None,
    ) -> tuple[ContentCharge | None, bool]:
        """
        Bill a sent message once.

        Returns ``(charge, created)``. Free content gives ``(None, False)``; a
        retry with a message id that was already billed gives the existing
        charge and ``created=False`` without moving any funds.
        """
        async with self.uow.read() as db:
            existing = await self._find(db, message_id)
            found = await self.pricing.get_settings(db, recipient_id)
        # Billed before; later price changes do not apply to it
        if existing is not None:
            return existing, False
        if found is None or not found.is_enabled:
            return None, False

        cost = content_cost(found, content_type, duration_seconds)
        if cost is None:
            return None, False

        try:
            charge = await self._charge(message_id, session_id, sender_id, recipient_id, cost)
        except DuplicateCharge:
            return await self._existing(message_id), False
        except IntegrityError:
            # A concurrent retry inserted the same message id first
            existing = await self._existing(message_id)
            if existing is None:
                raise
            return existing, False

        logger.info(
            "Content charge processed",
            message_id=message_id,
            sender_id=sender_id,
            recipient_id=recipient_id,
            content_type=content_type,
            amount=cost.total_cost,
        )
        return charge, True

    async def _charge(
        self,
        message_id: str,
        session_id: uuid.UUID,
        sender_id: str,
        recipient_id: str,
        cost: ContentCost,
    ) -> ContentCharge:
        now = self.clock.now()
        async with self.uow(sender_id, recipient_id) as db:
            if await self._find(db, message_id) is not None:
                raise DuplicateCharge(message_id=message_id)

            session = await db.get(ChatSession, session_id)
            if session is None:
                raise SessionNotFound(session_id=str(session_id))
            if session.buyer_id != sender_id or session.seller_id != recipient_id:
                raise Unauthorized("Session does not cover this conversation", session_id=str(session_id))
            if session.is_cancelled or not session.is_active or remaining_minutes(session, now) <= 0:
                raise SessionExpired(session_id=str(session_id))

            reason = cost.description
            await self.ledger.debit(db, sender_id, cost.total_cost, reason, related_entity_id=message_id)
            await self.ledger.credit(db, recipient_id, cost.total_cost, reason, related_entity_id=message_id)

            charge = ContentCharge(
                message_id=message_id,
                session_id=session_id,
                sender_id=sender_id,
                recipient_id=recipient_id,
                content_type=cost.content_type,
                base_price=cost.base_price,
                units=cost.units,
                total_amount=cost.total_cost,
                is_paid=True,
                paid_at=now,
                created_at=now,
            )
            db.add(charge)
            await db.flush()
        return charge

    @staticmethod
    async def _find(db: AsyncSession, message_id: str) -> ContentCharge | None:
        return await db.scalar(select(ContentCharge).where(ContentCharge.message_id == message_id))

    async def _existing(self, message_id: str) -> ContentCharge | None:
        async with self.uow.read() as db:
            return await self._find(db, message_id)

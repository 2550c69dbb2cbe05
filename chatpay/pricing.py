"""Per-recipient monetization settings: content prices and chat-time tiers."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from chatpay.clock import Clock
from chatpay.config import settings as app_settings
from chatpay.errors import InvalidRequest, PricingNotConfigured
from chatpay.logging_config import get_logger
from chatpay.models import ChatTimeTier, ContentType, MonetizationSettings, ServiceType
from chatpay.schemas import ChatTimeTierResponse, MonetizationInfo, MonetizationSettingsUpdate
from chatpay.uow import UnitOfWork

logger = get_logger(__name__)


def validate_update(update: MonetizationSettingsUpdate) -> None:
    """Reject settings a buyer could never pay for."""
    if update.is_enabled and not update.chat_time_tiers:
        raise InvalidRequest("At least one chat time tier is required when monetization is enabled")

    durations = [tier.duration_minutes for tier in update.chat_time_tiers or []]
    if len(durations) != len(set(durations)):
        raise InvalidRequest("Chat time tiers must have distinct durations")

    for tier in update.chat_time_tiers or []:
        if tier.price <= 0:
            raise InvalidRequest(f"Price for {tier.duration_minutes} minutes must be greater than 0")

    if update.monetize_voice_notes and update.voice_note_price <= 0:
        raise InvalidRequest("Voice note price (per second) must be greater than 0")
    if update.monetize_images and update.image_price <= 0:
        raise InvalidRequest("Image price must be greater than 0")
    if update.monetize_videos and update.video_price <= 0:
        raise InvalidRequest("Video price (per second) must be greater than 0")


class PricingCatalog:
    def __init__(self, uow: UnitOfWork, clock: Clock) -> None:
        self.uow = uow
        self.clock = clock

    async def get_settings(self, db: AsyncSession, user_id: str) -> MonetizationSettings | None:
        result = await db.execute(select(MonetizationSettings).where(MonetizationSettings.user_id == user_id))
        return result.scalar_one_or_none()

    async def get_enabled_settings(self, db: AsyncSession, user_id: str) -> MonetizationSettings:
        """Settings of a user who is currently charging, or PricingNotConfigured."""
        found = await self.get_settings(db, user_id)
        if found is None or not found.is_enabled:
            raise PricingNotConfigured(user_id=user_id)
        return found

    async def load(self, user_id: str) -> MonetizationSettings | None:
        async with self.uow.read() as db:
            return await self.get_settings(db, user_id)

    async def public_info(self, user_id: str) -> MonetizationInfo:
        """What messaging the user costs, as shown to other users."""
        found = await self.load(user_id)
        if found is None or not found.is_enabled:
            return MonetizationInfo(is_monetized=False)

        return MonetizationInfo(
            is_monetized=True,
            currency=found.currency,
            chat_time_tiers=[ChatTimeTierResponse.model_validate(tier) for tier in found.active_tiers],
            voice_note_price=found.voice_note_price if found.monetize_voice_notes else None,
            image_price=found.image_price if found.monetize_images else None,
            video_price=found.video_price if found.monetize_videos else None,
        )

    async def set_settings(self, user_id: str, update: MonetizationSettingsUpdate) -> MonetizationSettings:
        """Create or replace a user's prices. A given tier list replaces the old one."""
        validate_update(update)

        async with self.uow() as db:
            found = await self.get_settings(db, user_id)
            if found is None:
                found = MonetizationSettings(user_id=user_id, tiers=[])
                db.add(found)

            found.is_enabled = update.is_enabled
            found.currency = update.currency or app_settings.default_currency
            found.monetize_voice_notes = update.monetize_voice_notes
            found.voice_note_price = update.voice_note_price
            found.monetize_images = update.monetize_images
            found.image_price = update.image_price
            found.monetize_videos = update.monetize_videos
            found.video_price = update.video_price
            found.updated_at = self.clock.now()
            await db.flush()

            if update.chat_time_tiers:
                # Flush the removals first; the unique (settings, duration) key
                # would trip on a tier that is deleted and re-added.
                found.tiers.clear()
                await db.flush()
                found.tiers.extend(
                    ChatTimeTier(
                        duration_minutes=tier.duration_minutes,
                        price=tier.price,
                        is_active=tier.is_active,
                    )
                    for tier in update.chat_time_tiers
                )
                await db.flush()

        logger.info("Monetization settings updated", user_id=user_id, is_enabled=found.is_enabled)
        return found

    async def disable(self, user_id: str) -> MonetizationSettings:
        async with self.uow() as db:
            found = await self.get_settings(db, user_id)
            if found is None:
                raise PricingNotConfigured("Monetization settings not found", user_id=user_id)
            found.is_enabled = False
            found.updated_at = self.clock.now()

        logger.info("Monetization disabled", user_id=user_id)
        return found

    # ------------------------------------------------------------------
    # Price lookups
    # ------------------------------------------------------------------

    @staticmethod
    def tier_for(found: MonetizationSettings, duration_minutes: int) -> ChatTimeTier:
        for tier in found.active_tiers:
            if tier.duration_minutes == duration_minutes:
                return tier
        raise PricingNotConfigured(
            f"No pricing tier found for {duration_minutes} minutes",
            user_id=found.user_id,
            duration_minutes=duration_minutes,
        )

    @staticmethod
    def content_rate(found: MonetizationSettings, content_type: ContentType) -> int | None:
        """Base price of one unit of the content type, or None when it is free."""
        if content_type == ContentType.AUDIO and found.monetize_voice_notes:
            return found.voice_note_price
        if content_type == ContentType.IMAGE and found.monetize_images:
            return found.image_price
        if content_type == ContentType.VIDEO and found.monetize_videos:
            return found.video_price
        return None

    @classmethod
    def service_price(cls, found: MonetizationSettings, service_type: ServiceType, duration: int) -> int:
        """Tier price for chat, the provider's flat per-type rate otherwise."""
        if service_type == ServiceType.CHAT:
            return cls.tier_for(found, duration).price

        rates = {
            ServiceType.VIDEO: found.video_price,
            ServiceType.IMAGE: found.image_price,
            ServiceType.AUDIO: found.voice_note_price,
        }
        price = rates.get(service_type) or 0
        if price <= 0:
            raise PricingNotConfigured(
                f"No price configured for {service_type} requests",
                user_id=found.user_id,
                service_type=service_type,
            )
        return price

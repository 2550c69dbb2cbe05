import uuid

import pytest
from sqlalchemy import func, select

from chatpay.errors import DurationRequired, InsufficientFunds, SessionExpired, Unauthorized
from chatpay.models import ContentCharge, ContentType


@pytest.fixture
async def session(services, fund, publish_pricing):
    """Sender with 500 holds a 10 minute session with a recipient who bills media."""
    await publish_pricing(
        "recipient",
        tiers={10: 100},
        monetize_videos=True,
        video_price=2,
        monetize_images=True,
        image_price=15,
        monetize_voice_notes=True,
        voice_note_price=1,
    )
    await fund("sender", 500)
    return await services.sessions.purchase("sender", "recipient", 10)


async def charge_count(services):
    async with services.uow.read() as db:
        return await db.scalar(select(func.count()).select_from(ContentCharge))


class TestAuthorize:
    async def test_text_is_always_free(self, services, publish_pricing):
        await publish_pricing("recipient")
        result = await services.content.authorize("sender", "recipient", ContentType.TEXT)
        assert not result.session_required
        assert result.cost is None

    async def test_unmonetized_recipient_is_free(self, services):
        result = await services.content.authorize("sender", "recipient", ContentType.VIDEO, 30)
        assert not result.session_required
        assert result.cost is None

    async def test_no_session_returns_tier_menu(self, services, publish_pricing):
        await publish_pricing("recipient", tiers={10: 100, 30: 250})

        result = await services.content.authorize("sender", "recipient", ContentType.IMAGE)

        assert result.session_required
        assert [(t.duration_minutes, t.price) for t in result.available_tiers] == [(10, 100), (30, 250)]
        assert result.cost is None

    async def test_session_only_covers_the_buyer_direction(self, services, session):
        # The sender publishes no prices, so replies are free
        result = await services.content.authorize("recipient", "sender", ContentType.IMAGE)
        assert not result.session_required
        assert result.cost is None

        result = await services.content.authorize("sender", "recipient", ContentType.IMAGE)
        assert result.cost.total_cost == 15

    async def test_video_cost_is_per_second(self, services, session):
        result = await services.content.authorize("sender", "recipient", ContentType.VIDEO, 10)

        assert not result.session_required
        assert result.cost.base_price == 2
        assert result.cost.units == 10
        assert result.cost.total_cost == 20
        assert result.cost.description == "10 seconds @ KES 2/sec = KES 20"

    async def test_metered_content_needs_duration(self, services, session):
        with pytest.raises(DurationRequired):
            await services.content.authorize("sender", "recipient", ContentType.AUDIO)

    async def test_precheck_rejects_unaffordable_content(self, services, session, balance_of):
        with pytest.raises(InsufficientFunds):
            await services.content.authorize("sender", "recipient", ContentType.VIDEO, 1000)
        assert await balance_of("sender") == (400, 0)

    async def test_expired_session_requires_new_purchase(self, services, session, clock):
        await services.sessions.activate(session.id)
        clock.advance(minutes=11)

        result = await services.content.authorize("sender", "recipient", ContentType.IMAGE)
        assert result.session_required


class TestCharge:
    async def test_video_charge_moves_funds(self, services, session, balance_of):
        charge, created = await services.content.charge(
            "msg-1", session.id, "sender", "recipient", ContentType.VIDEO, 10,
        )

        assert created
        assert charge.total_amount == 20
        assert charge.is_paid
        assert await balance_of("sender") == (380, 0)
        assert await balance_of("recipient") == (120, 0)

    async def test_retry_with_same_message_id_charges_once(self, services, session, balance_of):
        first, _ = await services.content.charge("msg-1", session.id, "sender", "recipient", ContentType.VIDEO, 10)
        again, created = await services.content.charge(
            "msg-1", session.id, "sender", "recipient", ContentType.VIDEO, 10,
        )

        assert not created
        assert again.id == first.id
        assert await charge_count(services) == 1
        assert await balance_of("sender") == (380, 0)
        assert await balance_of("recipient") == (120, 0)

    async def test_retry_after_pricing_change_returns_the_original_charge(self, services, session, balance_of):
        first, _ = await services.content.charge("msg-1", session.id, "sender", "recipient", ContentType.VIDEO, 10)
        await services.pricing.disable("recipient")

        again, created = await services.content.charge(
            "msg-1", session.id, "sender", "recipient", ContentType.VIDEO, 10,
        )

        assert not created
        assert again.id == first.id
        assert again.total_amount == 20
        assert await balance_of("sender") == (380, 0)

    async def test_free_content_is_not_recorded(self, services, session):
        charge, created = await services.content.charge("msg-1", session.id, "sender", "recipient", ContentType.TEXT)
        assert charge is None
        assert not created
        assert await charge_count(services) == 0

    async def test_session_must_bind_sender_to_recipient(self, services, session):
        with pytest.raises(Unauthorized):
            await services.content.charge("msg-1", session.id, "stranger", "recipient", ContentType.IMAGE)

    async def test_cancelled_session_cannot_be_billed(self, services, session):
        await services.sessions.cancel(session.id, "sender")
        with pytest.raises(SessionExpired):
            await services.content.charge("msg-1", session.id, "sender", "recipient", ContentType.IMAGE)

    async def test_insufficient_funds_rolls_back(self, services, session, balance_of):
        with pytest.raises(InsufficientFunds):
            await services.content.charge("msg-1", session.id, "sender", "recipient", ContentType.VIDEO, 500)

        assert await charge_count(services) == 0
        assert await balance_of("sender") == (400, 0)

    async def test_earnings_include_content(self, services, session):
        await services.content.charge(str(uuid.uuid4()), session.id, "sender", "recipient", ContentType.IMAGE)

        stats = await services.sessions.earning_stats("recipient")
        assert stats.content_earnings == 15
        assert stats.session_earnings == 100

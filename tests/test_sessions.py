import uuid

import pytest

from chatpay.errors import (
    InsufficientFunds,
    InvalidRequest,
    PricingNotConfigured,
    SessionConflict,
    SessionExpired,
    SessionNotFound,
    SessionNotRunning,
    Unauthorized,
)
from chatpay.sessions import prorated_refund, remaining_minutes


@pytest.fixture
async def bought(services, fund, publish_pricing):
    """Buyer with 500 has bought the seller's 10 minute tier at 100."""
    await publish_pricing("seller", tiers={10: 100, 30: 250})
    await fund("buyer", 500)
    return await services.sessions.purchase("buyer", "seller", 10)


class TestPurchase:
    async def test_purchase_pays_seller_and_starts_paused(self, services, bought, balance_of):
        assert await balance_of("buyer") == (400, 0)
        assert await balance_of("seller") == (100, 0)
        assert bought.used_minutes == 0
        assert bought.is_paused
        assert bought.is_active
        assert bought.is_paid

    async def test_requires_enabled_pricing(self, services, fund):
        await fund("buyer", 500)
        with pytest.raises(PricingNotConfigured):
            await services.sessions.purchase("buyer", "seller", 10)

    async def test_requires_published_tier(self, services, fund, publish_pricing):
        await publish_pricing("seller")
        await fund("buyer", 500)
        with pytest.raises(PricingNotConfigured):
            await services.sessions.purchase("buyer", "seller", 45)

    async def test_cannot_buy_from_yourself(self, services, publish_pricing):
        await publish_pricing("seller")
        with pytest.raises(InvalidRequest):
            await services.sessions.purchase("seller", "seller", 10)

    async def test_insufficient_funds_leaves_nothing_behind(self, services, fund, publish_pricing, balance_of):
        await publish_pricing("seller")
        await fund("buyer", 60)

        with pytest.raises(InsufficientFunds):
            await services.sessions.purchase("buyer", "seller", 10)

        assert await balance_of("buyer") == (60, 0)
        assert await services.sessions.list_sessions("buyer") == []

    async def test_second_purchase_conflicts_while_time_remains(self, services, bought):
        with pytest.raises(SessionConflict):
            await services.sessions.purchase("buyer", "seller", 30)

    async def test_used_up_session_is_closed_by_next_purchase(self, services, bought, clock, balance_of):
        await services.sessions.activate(bought.id)
        clock.advance(minutes=11)

        second = await services.sessions.purchase("buyer", "seller", 10)

        first = await services.sessions.get_session(bought.id)
        assert not first.is_active
        assert first.used_minutes == 10
        assert second.is_active
        assert await balance_of("buyer") == (300, 0)


class TestClock:
    async def test_activate_sets_deadline(self, services, bought, clock):
        session = await services.sessions.activate(bought.id)

        assert not session.is_paused
        assert (session.end_time - clock.now()).total_seconds() == 600

    async def test_pause_books_elapsed_minutes(self, services, bought, clock):
        await services.sessions.activate(bought.id)
        clock.advance(minutes=5)

        session = await services.sessions.pause(bought.id, "buyer")

        assert session.is_paused
        assert session.used_minutes == pytest.approx(5)
        assert remaining_minutes(session, clock.now()) == pytest.approx(5)

    async def test_paused_session_does_not_age(self, services, bought, clock):
        await services.sessions.activate(bought.id)
        clock.advance(minutes=2)
        await services.sessions.pause(bought.id, "seller")
        clock.advance(hours=3)

        session = await services.sessions.get_session(bought.id)
        assert remaining_minutes(session, clock.now()) == pytest.approx(8)

    async def test_resume_sets_deadline_from_remaining_time(self, services, bought, clock):
        await services.sessions.activate(bought.id)
        clock.advance(minutes=4)
        await services.sessions.pause(bought.id, "buyer")
        clock.advance(minutes=30)

        session = await services.sessions.activate(bought.id)
        assert (session.end_time - clock.now()).total_seconds() == pytest.approx(360)

    async def test_pause_requires_running_session(self, services, bought):
        with pytest.raises(SessionNotRunning):
            await services.sessions.pause(bought.id, "buyer")

    async def test_pause_requires_participant(self, services, bought):
        await services.sessions.activate(bought.id)
        with pytest.raises(Unauthorized):
            await services.sessions.pause(bought.id, "stranger")

    async def test_unknown_session(self, services):
        with pytest.raises(SessionNotFound):
            await services.sessions.activate(uuid.uuid4())


class TestActivity:
    async def test_touch_resumes_paused_session(self, services, bought):
        session = await services.sessions.touch_activity(bought.id)
        assert not session.is_paused

    async def test_touch_books_time_without_rewinding_clock(self, services, bought, clock):
        await services.sessions.activate(bought.id)
        clock.advance(minutes=3)
        await services.sessions.touch_activity(bought.id)
        clock.advance(minutes=3)

        session = await services.sessions.touch_activity(bought.id)
        assert session.used_minutes == pytest.approx(6)
        assert remaining_minutes(session, clock.now()) == pytest.approx(4)

    async def test_touch_after_deadline_finalizes_then_raises(self, services, bought, clock):
        await services.sessions.activate(bought.id)
        clock.advance(minutes=12)

        with pytest.raises(SessionExpired):
            await services.sessions.touch_activity(bought.id)

        session = await services.sessions.get_session(bought.id)
        assert session.is_paused
        assert not session.is_active
        # Charged up to the deadline, not the two minutes past it
        assert session.used_minutes == 10

        with pytest.raises(SessionExpired):
            await services.sessions.touch_activity(bought.id)


class TestCancel:
    async def test_immediate_cancel_refunds_everything(self, services, bought, balance_of):
        outcome = await services.sessions.cancel(bought.id, "buyer")

        assert outcome.refund_amount == 100
        assert outcome.session.is_cancelled
        assert await balance_of("buyer") == (500, 0)
        assert await balance_of("seller") == (0, 0)

    async def test_half_used_refunds_half(self, services, bought, clock, balance_of):
        await services.sessions.activate(bought.id)
        clock.advance(minutes=5)
        await services.sessions.pause(bought.id, "buyer")

        outcome = await services.sessions.cancel(bought.id, "buyer")

        assert outcome.refund_amount == 50
        assert await balance_of("buyer") == (450, 0)
        assert await balance_of("seller") == (50, 0)

    async def test_cancel_while_running_counts_elapsed_time(self, services, bought, clock):
        await services.sessions.activate(bought.id)
        clock.advance(minutes=7, seconds=30)

        outcome = await services.sessions.cancel(bought.id, "seller")

        # 2.5 of 10 minutes left at a price of 100
        assert outcome.refund_amount == 25
        assert outcome.session.used_minutes == pytest.approx(7.5)

    async def test_cancel_fails_when_seller_spent_the_money(self, services, bought, publish_pricing, balance_of):
        await publish_pricing("third", tiers={5: 100})
        await services.sessions.purchase("seller", "third", 5)

        with pytest.raises(InsufficientFunds):
            await services.sessions.cancel(bought.id, "buyer")

        session = await services.sessions.get_session(bought.id)
        assert not session.is_cancelled
        assert await balance_of("buyer") == (400, 0)

    async def test_cancel_twice(self, services, bought):
        await services.sessions.cancel(bought.id, "buyer")
        with pytest.raises(SessionExpired):
            await services.sessions.cancel(bought.id, "buyer")

    async def test_cancel_requires_participant(self, services, bought):
        with pytest.raises(Unauthorized):
            await services.sessions.cancel(bought.id, "stranger")


class TestAutoPause:
    async def test_idle_running_session_is_paused(self, services, bought, clock):
        await services.sessions.activate(bought.id)
        clock.advance(minutes=6)

        assert await services.sessions.auto_pause_inactive(5) == 1

        session = await services.sessions.get_session(bought.id)
        assert session.is_paused
        assert session.is_active
        assert session.used_minutes == pytest.approx(6)

    async def test_recent_activity_keeps_session_running(self, services, bought, clock):
        await services.sessions.activate(bought.id)
        clock.advance(minutes=4)
        await services.sessions.touch_activity(bought.id)
        clock.advance(minutes=4)

        assert await services.sessions.auto_pause_inactive(5) == 0

    async def test_past_deadline_is_finalized(self, services, publish_pricing, fund, clock):
        await publish_pricing("seller", tiers={3: 30})
        await fund("buyer", 100)
        session = await services.sessions.purchase("buyer", "seller", 3)
        await services.sessions.activate(session.id)
        clock.advance(minutes=4)

        assert await services.sessions.auto_pause_inactive(5) == 1

        session = await services.sessions.get_session(session.id)
        assert not session.is_active
        assert session.used_minutes == 3

    async def test_sweep_is_idempotent(self, services, bought, clock):
        await services.sessions.activate(bought.id)
        clock.advance(minutes=6)

        assert await services.sessions.auto_pause_inactive(5) == 1
        assert await services.sessions.auto_pause_inactive(5) == 0


class TestQueries:
    async def test_active_session_between_either_direction(self, services, bought):
        assert (await services.sessions.active_session_between("seller", "buyer")).id == bought.id
        assert await services.sessions.active_session_between("buyer", "stranger") is None

    async def test_list_filters_by_activity(self, services, bought, clock):
        await services.sessions.activate(bought.id)
        assert [s.id for s in await services.sessions.list_sessions("buyer", active=True)] == [bought.id]

        clock.advance(minutes=11)
        assert await services.sessions.list_sessions("buyer", active=True) == []
        assert len(await services.sessions.list_sessions("seller", active=False)) == 1

    async def test_info_rounds_minutes(self, services, bought, clock):
        await services.sessions.activate(bought.id)
        clock.advance(seconds=20)

        info = services.sessions.info(await services.sessions.get_session(bought.id))
        assert info.remaining_minutes == 9.67
        assert info.is_active

    async def test_earning_stats(self, services, bought):
        stats = await services.sessions.earning_stats("seller")
        assert stats.total_sessions == 1
        assert stats.active_sessions == 1
        assert stats.session_earnings == 100
        assert stats.content_earnings == 0
        assert stats.balance.available == 100


class TestProratedRefund:
    @pytest.mark.parametrize(
        ("price", "duration", "remaining", "expected"),
        [
            (100, 10, 5.0, 50),
            (100, 10, 10.0, 100),
            (100, 10, 0.0, 0),
            (5, 2, 1.0, 2),  # 2.5 rounds to even
            (7, 2, 1.0, 4),  # 3.5 rounds to even
            (100, 3, 1.0, 33),
        ],
    )
    def test_rounding(self, price, duration, remaining, expected):
        assert prorated_refund(price, duration, remaining) == expected

import uuid

import pytest
from sqlalchemy import select

from chatpay.errors import (
    InsufficientFunds,
    InvalidRequest,
    PricingNotConfigured,
    RequestExpired,
    RequestNotFound,
    RequestNotPending,
    Unauthorized,
)
from chatpay.models import HoldStatus, NotificationKind, PendingBalanceHold, ServiceRequestStatus, ServiceType
from chatpay.notifications import RequestAccepted, parse_payload


@pytest.fixture
async def pending(services, fund, publish_pricing):
    """Requester with 1000 has asked the provider for a 10 minute chat at 50."""
    await publish_pricing("provider", tiers={10: 50})
    await fund("requester", 1000)
    return await services.escrow.create_request("requester", "provider", ServiceType.CHAT, 10, "hello")


async def hold_for(services, request):
    async with services.uow.read() as db:
        return await db.scalar(select(PendingBalanceHold).where(PendingBalanceHold.source_id == str(request.id)))


async def kinds_for(services, user_id):
    found, _ = await services.notifications.list_for_user(user_id)
    return sorted(notification.kind for notification in found)


class TestCreate:
    async def test_create_locks_price(self, services, pending, balance_of):
        assert pending.status == ServiceRequestStatus.PENDING
        assert pending.price == 50
        assert await balance_of("requester") == (950, 50)
        assert (await hold_for(services, pending)).status == HoldStatus.LOCKED
        assert await kinds_for(services, "provider") == [NotificationKind.SERVICE_REQUEST]

    async def test_cannot_request_yourself(self, services, publish_pricing):
        await publish_pricing("provider")
        with pytest.raises(InvalidRequest):
            await services.escrow.create_request("provider", "provider", ServiceType.CHAT, 10)

    async def test_provider_must_charge(self, services, fund):
        await fund("requester", 1000)
        with pytest.raises(PricingNotConfigured):
            await services.escrow.create_request("requester", "provider", ServiceType.CHAT, 10)

    async def test_insufficient_funds_creates_nothing(self, services, fund, publish_pricing, balance_of):
        await publish_pricing("provider", tiers={10: 50})
        await fund("requester", 20)

        with pytest.raises(InsufficientFunds):
            await services.escrow.create_request("requester", "provider", ServiceType.CHAT, 10)

        assert await balance_of("requester") == (20, 0)
        assert await services.escrow.sent_requests("requester") == []
        assert await kinds_for(services, "provider") == []

    async def test_non_chat_uses_flat_rate(self, services, fund, publish_pricing, balance_of):
        await publish_pricing("provider", monetize_videos=True, video_price=70)
        await fund("requester", 1000)

        request = await services.escrow.create_request("requester", "provider", ServiceType.VIDEO, 15)

        assert request.price == 70
        assert await balance_of("requester") == (930, 70)


class TestRespond:
    async def test_accept_releases_to_provider(self, services, pending, clock, balance_of):
        request, session = await services.escrow.respond(pending.id, "provider", accept=True)

        assert request.status == ServiceRequestStatus.ACCEPTED
        assert await balance_of("requester") == (950, 0)
        assert await balance_of("provider") == (50, 0)
        assert (await hold_for(services, pending)).status == HoldStatus.RELEASED

        assert session.is_paid
        assert session.price == 50
        assert (session.end_time - session.start_time).total_seconds() == 600
        assert session.start_time == clock.now()

        found, _ = await services.notifications.list_for_user("requester")
        assert parse_payload(found[0].payload) == RequestAccepted(session_id=session.id, service_type=ServiceType.CHAT)
        assert await kinds_for(services, "provider") == sorted(
            [NotificationKind.SERVICE_REQUEST, NotificationKind.SESSION_STARTED]
        )

    async def test_reject_refunds_requester(self, services, pending, balance_of):
        request, session = await services.escrow.respond(pending.id, "provider", accept=False, reason="busy")

        assert session is None
        assert request.status == ServiceRequestStatus.REJECTED
        assert request.reject_reason == "busy"
        assert await balance_of("requester") == (1000, 0)
        assert await balance_of("provider") == (0, 0)
        assert (await hold_for(services, pending)).status == HoldStatus.REFUNDED
        assert await kinds_for(services, "requester") == [NotificationKind.REQUEST_REJECTED]

    async def test_only_provider_may_answer(self, services, pending):
        with pytest.raises(Unauthorized):
            await services.escrow.respond(pending.id, "requester", accept=True)

    async def test_second_answer_is_refused(self, services, pending, balance_of):
        await services.escrow.respond(pending.id, "provider", accept=True)

        with pytest.raises(RequestNotPending):
            await services.escrow.respond(pending.id, "provider", accept=False)

        assert await balance_of("provider") == (50, 0)

    async def test_stale_answer_expires_request(self, services, pending, clock, balance_of):
        clock.advance(days=8)

        with pytest.raises(RequestExpired):
            await services.escrow.respond(pending.id, "provider", accept=True)

        request = await services.escrow.get_request(pending.id, "requester")
        assert request.status == ServiceRequestStatus.EXPIRED
        assert await balance_of("requester") == (1000, 0)
        assert await balance_of("provider") == (0, 0)

    async def test_unknown_request(self, services):
        with pytest.raises(RequestNotFound):
            await services.escrow.respond(uuid.uuid4(), "provider", accept=True)


class TestCancel:
    async def test_requester_cancels_pending(self, services, pending, balance_of):
        request = await services.escrow.cancel_request(pending.id, "requester")

        assert request.status == ServiceRequestStatus.CANCELLED
        assert await balance_of("requester") == (1000, 0)
        assert (await hold_for(services, pending)).status == HoldStatus.REFUNDED
        assert NotificationKind.REQUEST_CANCELLED in await kinds_for(services, "provider")

    async def test_only_requester_may_cancel(self, services, pending):
        with pytest.raises(Unauthorized):
            await services.escrow.cancel_request(pending.id, "provider")

    async def test_cannot_cancel_answered_request(self, services, pending):
        await services.escrow.respond(pending.id, "provider", accept=True)
        with pytest.raises(RequestNotPending):
            await services.escrow.cancel_request(pending.id, "requester")


class TestExpiry:
    async def test_stale_request_is_expired_and_refunded(self, services, pending, clock, balance_of):
        clock.advance(days=8)

        assert await services.escrow.auto_expire_stale(7) == 1

        request = await services.escrow.get_request(pending.id, "provider")
        assert request.status == ServiceRequestStatus.EXPIRED
        assert await balance_of("requester") == (1000, 0)
        assert (await hold_for(services, pending)).status == HoldStatus.EXPIRED
        assert NotificationKind.REQUEST_EXPIRED in await kinds_for(services, "requester")
        assert NotificationKind.REQUEST_EXPIRED in await kinds_for(services, "provider")

        assert await services.escrow.auto_expire_stale(7) == 0
        assert await balance_of("requester") == (1000, 0)

    async def test_fresh_request_is_left_alone(self, services, pending, clock):
        clock.advance(days=6)
        assert await services.escrow.auto_expire_stale(7) == 0

    async def test_expire_skips_answered_request(self, services, pending):
        await services.escrow.respond(pending.id, "provider", accept=False)
        assert await services.escrow.expire(pending.id) is False


class TestQueries:
    async def test_pending_received_hides_stale(self, services, pending, clock):
        assert [r.id for r in await services.escrow.pending_received("provider")] == [pending.id]
        clock.advance(days=8)
        assert await services.escrow.pending_received("provider") == []

    async def test_sent_requests_filter_by_status(self, services, pending):
        assert len(await services.escrow.sent_requests("requester")) == 1
        assert await services.escrow.sent_requests("requester", status=ServiceRequestStatus.ACCEPTED) == []

    async def test_stats(self, services, pending):
        second = await services.escrow.create_request("requester", "provider", ServiceType.CHAT, 10)
        await services.escrow.respond(pending.id, "provider", accept=True)
        await services.escrow.cancel_request(second.id, "requester")

        stats = await services.escrow.request_stats("provider", "provider")
        assert stats.total == 2
        assert stats.accepted == 1
        assert stats.cancelled == 1
        assert stats.pending == 0

    async def test_get_request_requires_participant(self, services, pending):
        with pytest.raises(Unauthorized):
            await services.escrow.get_request(pending.id, "stranger")

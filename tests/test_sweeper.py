import asyncio

import pytest

from chatpay.models import ServiceRequestStatus, ServiceType
from chatpay.sweeper import sweep_loop


@pytest.fixture
async def workload(services, fund, publish_pricing):
    """One running chat session and one pending service request."""
    await publish_pricing("seller", tiers={10: 100})
    await fund("buyer", 1000)
    session = await services.sessions.purchase("buyer", "seller", 10)
    await services.sessions.activate(session.id)
    request = await services.escrow.create_request("buyer", "seller", ServiceType.CHAT, 10)
    return session, request


class TestRunOnce:
    async def test_nothing_due(self, services, workload):
        result = await services.sweeper.run_once()
        assert result.paused_sessions == 0
        assert result.expired_requests == 0

    async def test_idle_session_is_paused(self, services, workload, clock):
        session, _ = workload
        clock.advance(minutes=6)

        result = await services.sweeper.run_once()

        assert result.paused_sessions == 1
        assert (await services.sessions.get_session(session.id)).is_paused

    async def test_week_old_request_is_expired_once(self, services, workload, clock, balance_of):
        _, request = workload
        clock.advance(days=8)

        first = await services.sweeper.run_once()
        second = await services.sweeper.run_once()

        assert first.expired_requests == 1
        assert second.expired_requests == 0
        assert (await services.escrow.get_request(request.id, "buyer")).status == ServiceRequestStatus.EXPIRED
        assert await balance_of("buyer") == (900, 0)

    async def test_request_answered_before_sweep_is_skipped(self, services, workload, clock):
        _, request = workload
        await services.escrow.cancel_request(request.id, "buyer")
        clock.advance(days=8)

        assert (await services.sweeper.run_once()).expired_requests == 0

    async def test_one_bad_item_does_not_stop_the_sweep(self, services, workload, clock, monkeypatch):
        _, request = workload
        clock.advance(days=8)

        async def broken(session_id, inactivity_minutes):
            raise RuntimeError("boom")

        monkeypatch.setattr(services.sessions, "_auto_pause_one", broken)

        result = await services.sweeper.run_once()

        assert result.paused_sessions == 0
        assert result.expired_requests == 1


class TestSweepLoop:
    async def test_loop_runs_until_cancelled(self, services, workload, clock):
        clock.advance(minutes=6)

        task = asyncio.create_task(sweep_loop(services.sweeper, 0.01))
        for _ in range(100):
            await asyncio.sleep(0.01)
            session = await services.sessions.get_session(workload[0].id)
            if session.is_paused:
                break

        task.cancel()
        await task

        assert session.is_paused


class TestThresholds:
    async def test_zero_inactivity_is_not_replaced_by_default(self, services, workload, clock):
        session, _ = workload
        clock.advance(minutes=1)

        assert await services.sweeper.auto_pause_inactive(0) == 1
        assert (await services.sessions.get_session(session.id)).is_paused

    async def test_zero_expiry_days_is_not_replaced_by_default(self, services, workload, clock):
        clock.advance(seconds=1)
        assert await services.sweeper.auto_expire_stale(0) == 1

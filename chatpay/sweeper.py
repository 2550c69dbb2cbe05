"""Background sweeps: pause idle chat sessions and expire stale requests."""

import asyncio

from chatpay.escrow import EscrowRequestEngine
from chatpay.logging_config import get_logger
from chatpay.schemas import SweepResult
from chatpay.sessions import SessionEngine

logger = get_logger(__name__)


class ExpirySweeper:
    """
    Periodic housekeeping over sessions and requests.

    Both sweeps are idempotent: anything a user already moved on from is
    skipped, so running a pass twice, or alongside live traffic, is safe.
    """

    def __init__(
        self,
        sessions: SessionEngine,
        escrow: EscrowRequestEngine,
        *,
        inactivity_minutes: int,
        request_expiry_days: int,
    ) -> None:
        self.sessions = sessions
        self.escrow = escrow
        self.inactivity_minutes = inactivity_minutes
        self.request_expiry_days = request_expiry_days

    async def auto_pause_inactive(self, inactivity_minutes: int | None = None) -> int:
        if inactivity_minutes is None:
            inactivity_minutes = self.inactivity_minutes
        return await self.sessions.auto_pause_inactive(inactivity_minutes)

    async def auto_expire_stale(self, threshold_days: int | None = None) -> int:
        if threshold_days is None:
            threshold_days = self.request_expiry_days
        return await self.escrow.auto_expire_stale(threshold_days)

    async def run_once(self) -> SweepResult:
        result = SweepResult(
            paused_sessions=await self.auto_pause_inactive(),
            expired_requests=await self.auto_expire_stale(),
        )
        logger.debug("Sweep finished", **result.model_dump())
        return result


async def sweep_loop(sweeper: ExpirySweeper, interval_seconds: float) -> None:
    """
    Background task that runs the sweeper every ``interval_seconds``.

    Started from the application lifespan and stopped by cancelling it.
    """
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            await sweeper.run_once()
        except asyncio.CancelledError:
            logger.info("Sweep loop cancelled")
            break
        except Exception:
            logger.exception("Error in sweep loop")
            await asyncio.sleep(1.0)

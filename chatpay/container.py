"""Wires the engines together over one session factory and one clock."""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatpay.clock import Clock, SystemClock
from chatpay.config import Settings, settings as app_settings
from chatpay.content import ContentBilling
from chatpay.escrow import EscrowRequestEngine
from chatpay.ledger import BalanceLedger
from chatpay.notifications import Notifications
from chatpay.pricing import PricingCatalog
from chatpay.sessions import SessionEngine
from chatpay.sweeper import ExpirySweeper
from chatpay.uow import UnitOfWork


class Services:
    clock: Clock
    uow: UnitOfWork

    ledger: BalanceLedger
    pricing: PricingCatalog
    notifications: Notifications

    sessions: SessionEngine
    content: ContentBilling
    escrow: EscrowRequestEngine
    sweeper: ExpirySweeper

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        clock: Clock | None = None,
        config: Settings | None = None,
    ) -> None:
        config = config or app_settings
        self.clock = clock or SystemClock()
        self.uow = UnitOfWork(session_factory)

        self.ledger = BalanceLedger(self.uow, self.clock)
        self.pricing = PricingCatalog(self.uow, self.clock)
        self.notifications = Notifications(self.uow, self.clock)

        self.sessions = SessionEngine(self.uow, self.ledger, self.pricing, self.clock)
        self.content = ContentBilling(self.uow, self.ledger, self.pricing, self.sessions, self.clock)
        self.escrow = EscrowRequestEngine(
            self.uow,
            self.ledger,
            self.pricing,
            self.notifications,
            self.clock,
            expiry_days=config.request_expiry_days,
        )
        self.sweeper = ExpirySweeper(
            self.sessions,
            self.escrow,
            inactivity_minutes=config.inactivity_pause_minutes,
            request_expiry_days=config.request_expiry_days,
        )

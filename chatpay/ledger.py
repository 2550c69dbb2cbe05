"""Balance ledger: the only code allowed to touch a user's available or pending funds."""

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from chatpay.clock import Clock
from chatpay.config import settings
from chatpay.errors import HoldNotLocked, InsufficientFunds, InvalidAmount
from chatpay.logging_config import get_logger
from chatpay.models import Balance, DepositReceipt, HoldStatus, LedgerEntry, LedgerEntryKind, PendingBalanceHold
from chatpay.uow import UnitOfWork

logger = get_logger(__name__)


def require_positive(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmount(amount=amount)


class BalanceLedger:
    """
    Atomic balance mutations, each paired with one ledger entry per user.

    Mutating methods take the caller's open session so several of them can be
    composed into a single unit of work. Funds move in two ways:

    * instant transfer (``debit``/``credit``/``transfer``): the price was agreed
      up front, money changes hands immediately;
    * escrow (``lock`` then ``release`` or ``refund``): money waits in the
      payer's pending pool until the counterparty answers.
    """

    def __init__(self, uow: UnitOfWork, clock: Clock) -> None:
        self.uow = uow
        self.clock = clock

    # ------------------------------------------------------------------
    # Rows
    # ------------------------------------------------------------------

    async def _balance(self, db: AsyncSession, user_id: str) -> Balance | None:
        result = await db.execute(
            select(Balance).where(Balance.user_id == user_id).with_for_update()
        )
        return result.scalar_one_or_none()

    async def _balance_or_create(self, db: AsyncSession, user_id: str) -> Balance:
        """Locked balance row, created empty the first time we see the user."""
        balance = await self._balance(db, user_id)
        if balance is not None:
            return balance

        balance = Balance(
            user_id=user_id,
            available=0,
            pending=0,
            total_earned=0,
            total_spent=0,
            currency=settings.default_currency,
            updated_at=self.clock.now(),
        )
        db.add(balance)
        await db.flush()
        return balance

    def _record(
        self,
        db: AsyncSession,
        balance: Balance,
        kind: LedgerEntryKind,
        amount: int,
        previous: int,
        reason: str,
        related_entity_id: str | None,
    ) -> LedgerEntry:
        now = self.clock.now()
        balance.updated_at = now
        entry = LedgerEntry(
            user_id=balance.user_id,
            kind=kind,
            amount=amount,
            delta=balance.holdings - previous,
            previous_balance=previous,
            new_balance=balance.holdings,
            reason=reason,
            related_entity_id=related_entity_id,
            created_at=now,
        )
        db.add(entry)
        return entry

    # ------------------------------------------------------------------
    # Instant transfer
    # ------------------------------------------------------------------

    async def debit(
        self,
        db: AsyncSession,
        user_id: str,
        amount: int,
        reason: str,
        *,
        related_entity_id: str | None = None,
        kind: LedgerEntryKind = LedgerEntryKind.SPEND,
    ) -> LedgerEntry:
        """
        Take ``amount`` out of a user's available funds.

        ``kind=REFUND`` claws back an earlier earning instead of recording a
        spend, so the seller's ``total_earned`` goes down.
        """
        require_positive(amount)
        if kind not in (LedgerEntryKind.SPEND, LedgerEntryKind.REFUND):
            raise ValueError(f"debit cannot record {kind}")

        balance = await self._balance(db, user_id)
        available = balance.available if balance else 0
        if balance is None or available < amount:
            raise InsufficientFunds(
                f"Insufficient balance. Required: {amount}, Available: {available}",
                user_id=user_id,
                required=amount,
                available=available,
            )

        previous = balance.holdings
        balance.available -= amount
        if kind == LedgerEntryKind.REFUND:
            balance.total_earned -= amount
        else:
            balance.total_spent += amount

        entry = self._record(db, balance, kind, amount, previous, reason, related_entity_id)
        await db.flush()
        return entry

    async def credit(
        self,
        db: AsyncSession,
        user_id: str,
        amount: int,
        reason: str,
        *,
        related_entity_id: str | None = None,
        kind: LedgerEntryKind = LedgerEntryKind.EARN,
    ) -> LedgerEntry:
        """
        Add ``amount`` to a user's available funds, creating the balance row
        if this is the first time we see the user.

        ``kind=REFUND`` returns an earlier spend, so ``total_spent`` goes down.
        """
        require_positive(amount)
        if kind not in (LedgerEntryKind.EARN, LedgerEntryKind.REFUND):
            raise ValueError(f"credit cannot record {kind}")

        balance = await self._balance_or_create(db, user_id)

        previous = balance.holdings
        balance.available += amount
        if kind == LedgerEntryKind.REFUND:
            balance.total_spent -= amount
        else:
            balance.total_earned += amount

        entry = self._record(db, balance, kind, amount, previous, reason, related_entity_id)
        await db.flush()
        return entry

    async def transfer(
        self,
        db: AsyncSession,
        payer_id: str,
        payee_id: str,
        amount: int,
        reason: str,
        *,
        related_entity_id: str | None = None,
    ) -> None:
        """Move funds straight from one user's available balance to another's."""
        await self.debit(db, payer_id, amount, reason, related_entity_id=related_entity_id)
        await self.credit(db, payee_id, amount, reason, related_entity_id=related_entity_id)
        logger.info(
            "Funds transferred",
            payer_id=payer_id,
            payee_id=payee_id,
            amount=amount,
            related_entity_id=related_entity_id,
        )

    # ------------------------------------------------------------------
    # Escrow
    # ------------------------------------------------------------------

    async def lock(
        self,
        db: AsyncSession,
        user_id: str,
        amount: int,
        *,
        source_type: str,
        source_id: str,
        currency: str | None = None,
        description: str | None = None,
    ) -> PendingBalanceHold:
        """Move funds from available to pending and open a hold for them."""
        require_positive(amount)

        balance = await self._balance(db, user_id)
        available = balance.available if balance else 0
        if balance is None or available < amount:
            raise InsufficientFunds(
                f"Insufficient balance. Required: {amount}, Available: {available}",
                user_id=user_id,
                required=amount,
                available=available,
            )

        previous = balance.holdings
        balance.available -= amount
        balance.pending += amount

        hold = PendingBalanceHold(
            user_id=user_id,
            amount=amount,
            currency=currency or balance.currency,
            status=HoldStatus.LOCKED,
            source_type=source_type,
            source_id=source_id,
            description=description,
            created_at=self.clock.now(),
        )
        db.add(hold)
        self._record(
            db, balance, LedgerEntryKind.LOCK, amount, previous,
            description or f"Locked funds for {source_type}", source_id,
        )
        await db.flush()

        logger.info("Funds locked", user_id=user_id, amount=amount, source_type=source_type, source_id=source_id)
        return hold

    async def find_locked_hold(self, db: AsyncSession, source_id: str, user_id: str) -> PendingBalanceHold | None:
        result = await db.execute(
            select(PendingBalanceHold)
            .where(
                PendingBalanceHold.source_id == source_id,
                PendingBalanceHold.user_id == user_id,
                PendingBalanceHold.status == HoldStatus.LOCKED,
            )
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def release(
        self,
        db: AsyncSession,
        hold: PendingBalanceHold,
        to_user_id: str,
        reason: str,
    ) -> None:
        """Pay a locked hold out to the counterparty."""
        if hold.status != HoldStatus.LOCKED:
            raise HoldNotLocked(hold_id=str(hold.id), status=hold.status)

        locker = await self._balance(db, hold.user_id)
        if locker is None or locker.pending < hold.amount:
            raise HoldNotLocked("Pending balance does not cover the hold", hold_id=str(hold.id))

        hold.status = HoldStatus.RELEASED
        hold.resolved_at = self.clock.now()

        previous = locker.holdings
        locker.pending -= hold.amount
        locker.total_spent += hold.amount
        self._record(db, locker, LedgerEntryKind.RELEASE, hold.amount, previous, reason, hold.source_id)

        payee = await self._balance_or_create(db, to_user_id)
        previous = payee.holdings
        payee.available += hold.amount
        payee.total_earned += hold.amount
        self._record(db, payee, LedgerEntryKind.EARN, hold.amount, previous, reason, hold.source_id)

        await db.flush()
        logger.info(
            "Hold released",
            hold_id=str(hold.id),
            from_user_id=hold.user_id,
            to_user_id=to_user_id,
            amount=hold.amount,
        )

    async def refund(
        self,
        db: AsyncSession,
        hold: PendingBalanceHold,
        reason: str,
        *,
        expired: bool = False,
    ) -> None:
        """Return a locked hold to the user who locked it."""
        if hold.status != HoldStatus.LOCKED:
            raise HoldNotLocked(hold_id=str(hold.id), status=hold.status)

        locker = await self._balance(db, hold.user_id)
        if locker is None or locker.pending < hold.amount:
            raise HoldNotLocked("Pending balance does not cover the hold", hold_id=str(hold.id))

        hold.status = HoldStatus.EXPIRED if expired else HoldStatus.REFUNDED
        hold.resolved_at = self.clock.now()

        previous = locker.holdings
        locker.pending -= hold.amount
        locker.available += hold.amount
        self._record(db, locker, LedgerEntryKind.REFUND, hold.amount, previous, reason, hold.source_id)

        await db.flush()
        logger.info("Hold refunded", hold_id=str(hold.id), user_id=hold.user_id, amount=hold.amount, status=hold.status)

    # ------------------------------------------------------------------
    # Gateway
    # ------------------------------------------------------------------

    async def credit_deposit(self, user_id: str, amount: int, reference: str) -> bool:
        """
        Credit a confirmed external deposit exactly once per gateway reference.

        Returns False when the reference was already credited.
        """
        require_positive(amount)
        try:
            async with self.uow(user_id) as db:
                existing = await db.scalar(select(DepositReceipt).where(DepositReceipt.reference == reference))
                if existing is not None:
                    logger.info("Duplicate deposit ignored", user_id=user_id, reference=reference)
                    return False

                db.add(DepositReceipt(reference=reference, user_id=user_id, amount=amount, created_at=self.clock.now()))
                await db.flush()
                await self.credit(db, user_id, amount, f"Deposit {reference}", related_entity_id=reference)
        except IntegrityError:
            # Lost a race with a concurrent delivery of the same notification
            async with self.uow.read() as db:
                existing = await db.scalar(select(DepositReceipt).where(DepositReceipt.reference == reference))
            if existing is None:
                raise
            logger.info("Duplicate deposit ignored", user_id=user_id, reference=reference)
            return False

        logger.info("Deposit credited", user_id=user_id, amount=amount, reference=reference)
        return True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_balance(self, user_id: str) -> Balance:
        """Balance for display; a zero balance when the user has none yet."""
        async with self.uow.read() as db:
            balance = await db.scalar(select(Balance).where(Balance.user_id == user_id))

        if balance is None:
            return Balance(
                user_id=user_id,
                available=0,
                pending=0,
                total_earned=0,
                total_spent=0,
                currency=settings.default_currency,
            )
        return balance

    async def history(self, user_id: str, page: int = 1, limit: int = 20) -> tuple[list[LedgerEntry], int]:
        """Ledger entries for a user, newest first, with the total count."""
        async with self.uow.read() as db:
            total = await db.scalar(select(func.count()).select_from(LedgerEntry).where(LedgerEntry.user_id == user_id))
            result = await db.execute(
                select(LedgerEntry)
                .where(LedgerEntry.user_id == user_id)
                .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id)
                .offset((page - 1) * limit)
                .limit(limit)
            )
            entries = list(result.scalars().all())

        return entries, total or 0

    async def locked_holds(self, user_id: str) -> list[PendingBalanceHold]:
        async with self.uow.read() as db:
            result = await db.execute(
                select(PendingBalanceHold)
                .where(PendingBalanceHold.user_id == user_id, PendingBalanceHold.status == HoldStatus.LOCKED)
                .order_by(PendingBalanceHold.created_at.desc())
            )
            return list(result.scalars().all())

"""The single transactional seam every money-moving operation goes through."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatpay.models import Balance


async def lock_balances(db: AsyncSession, *user_ids: str) -> None:
    """Take row locks on the users' balances in a fixed order."""
    keys = sorted({user_id for user_id in user_ids if user_id})
    if not keys:
        return
    await db.execute(
        select(Balance.id)
        .where(Balance.user_id.in_(keys))
        .order_by(Balance.user_id)
        .with_for_update()
    )


class UnitOfWork:
    """Run a block of work in one atomic transaction.

    Balance rows for the given user ids are locked up front, in sorted order,
    so two units touching the same pair of users cannot deadlock. Leaving the
    block normally commits; any exception rolls everything back.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def __call__(self, *user_ids: str) -> AsyncIterator[AsyncSession]:
        async with self._session_factory() as db:
            async with db.begin():
                await lock_balances(db, *user_ids)
                yield db

    @asynccontextmanager
    async def read(self) -> AsyncIterator[AsyncSession]:
        """Short-lived session for queries; nothing is committed."""
        async with self._session_factory() as db:
            yield db

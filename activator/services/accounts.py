"""Account store: lookup, insert and activation-status updates keyed by login.

Every operation runs in its own session and commits independently, so
concurrent message tasks can share one session factory (engine pool).
"""

import logging
import uuid
from datetime import UTC, datetime

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from activator.errors import StoreError
from activator.models.account import Account, ActivationStatus

logger = logging.getLogger(__name__)


class AccountStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def find_by_login(self, login: str) -> Account | None:
        try:
            async with self._session_factory() as db:
                result = await db.execute(select(Account).where(Account.login == login))
                return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("Failed to query the database. Error: %s", e)
            raise StoreError(f"Lookup of account {login!r} failed") from e

    async def insert(self, login: str, password: str, email: str) -> uuid.UUID:
        """Insert a pending account. Raises IntegrityError if the login exists."""
        logger.info('Inserting account "%s" into database.', login)
        account = Account(
            account_id=uuid.uuid4(),
            login=login,
            password=password,
            email=email,
            activated=ActivationStatus.PENDING,
        )
        try:
            async with self._session_factory() as db:
                db.add(account)
                await db.commit()
        except IntegrityError:
            raise
        except SQLAlchemyError as e:
            logger.error("Failed to query the database. Error: %s", e)
            raise StoreError(f"Insert of account {login!r} failed") from e
        return account.account_id

    async def ensure_account(self, login: str, email: str, default_password: str) -> Account:
        """Return the account for ``login``, inserting it first if it is new.

        Two messages for the same login may race within one batch; the loser of
        the unique-constraint race re-reads the winner's row.
        """
        account = await self.find_by_login(login)
        if account is not None:
            return account

        try:
            await self.insert(login, default_password, email)
        except IntegrityError:
            logger.debug("Account %s was inserted concurrently, re-reading", login)

        account = await self.find_by_login(login)
        if account is None:
            raise StoreError(f"Account {login!r} missing right after insert")
        return account

    async def update_activation(
        self,
        account_id: uuid.UUID,
        status: ActivationStatus,
        timestamp: datetime | None = None,
    ) -> None:
        updated_at = timestamp or datetime.now(UTC)
        try:
            async with self._session_factory() as db:
                result = await db.execute(
                    update(Account)
                    .where(Account.account_id == account_id)
                    .values(activated=status, updated_at=updated_at)
                )
                updated = result.rowcount
                await db.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to query the database. Error: %s", e)
            raise StoreError(f"Activation update for account {account_id} failed") from e

        if updated == 0:
            raise StoreError(f"Account {account_id} does not exist")
        logger.debug("Account %s marked %s", account_id, status.value)

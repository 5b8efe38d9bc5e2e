"""Shared plumbing for the store-backed ledgers."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from discovery_engine.errors import StoreUnavailableError

logger = logging.getLogger(__name__)


class LedgerBase:
    """Holds the session factory and maps driver failures to StoreUnavailableError."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """
        Open a session; connectivity and driver errors become StoreUnavailableError.

        IntegrityError propagates unchanged so callers can tell a uniqueness
        conflict apart from an unavailable store.
        """
        try:
            async with self.session_factory() as session:
                yield session
        except IntegrityError:
            raise
        except (OperationalError, DBAPIError, ConnectionError, OSError) as e:
            logger.warning("Store operation failed: %s", e.__class__.__name__)
            raise StoreUnavailableError(f"Store unavailable: {e.__class__.__name__}") from e

"""
Base class for the persistence operation classes.

Provides session handling that maps connection failures to
StorageUnavailable, and a retry helper for idempotent reads.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from arena.utils.exceptions import StorageUnavailable
from arena.utils.logger import setup_logger

logger = setup_logger(__name__)


class BaseOperations:
    """Base class for operations with async database session management."""
    
    def __init__(self, database):
        """
        Args:
            database: Initialized Database instance
        """
        self.db = database
        self.logger = logger
    
    @asynccontextmanager
    async def _get_session_context(self, operation: str, session: Optional[AsyncSession] = None):
        """
        Provides a session context. Uses the provided session if available,
        otherwise creates and manages a new session. Connection failures
        surface as StorageUnavailable.
        """
        if session:
            # If a session is provided, we do not manage its lifecycle
            yield session
            return
        try:
            async with self.db.get_session() as new_session:
                yield new_session
        except IntegrityError:
            raise
        except DBAPIError as e:
            self.logger.error(f"Storage failure during {operation}: {e}")
            raise StorageUnavailable(operation, str(e))
    
    async def execute_with_retry(self, func: Callable[[], Awaitable[Any]], max_retries: int = 3) -> Any:
        """Execute an idempotent call, retrying on StorageUnavailable."""
        for attempt in range(max_retries):
            try:
                return await func()
            except StorageUnavailable as e:
                if attempt == max_retries - 1:
                    raise
                self.logger.warning(f"Retry attempt {attempt + 1} for {getattr(func, '__name__', func)}: {e}")
                await asyncio.sleep(0.1 * (2 ** attempt))  # Exponential backoff

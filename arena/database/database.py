from typing import Optional
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.exc import DBAPIError
from contextlib import asynccontextmanager

from arena.config import Config
from arena.database.models import Base
from arena.utils.exceptions import StorageUnavailable
from arena.utils.logger import setup_logger

class Database:
    def __init__(self, database_url: Optional[str] = None):
        self.logger = setup_logger(__name__)
        self.database_url = Config.get_async_database_url(database_url)
        self.engine = None
        self.async_session = None
        
    async def initialize(self):
        """Initialize the database connection and create tables"""
        self.logger.info("Initializing database...")
        
        connect_args = {}
        if self.database_url.startswith('sqlite'):
            # Concurrent writers wait for the lock instead of failing at once
            connect_args['timeout'] = 30
        
        self.engine = create_async_engine(
            self.database_url,
            echo=Config.DEBUG,
            connect_args=connect_args
        )
        
        self.async_session = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )
        
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except DBAPIError as e:
            self.logger.error(f"Failed to initialize database: {e}")
            raise StorageUnavailable("initialize", str(e))
            
        self.logger.info("Database initialized successfully")
    
    @asynccontextmanager
    async def get_session(self):
        """Get a database session"""
        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()
    
    @asynccontextmanager
    async def transaction(self):
        """
        Create a transaction boundary for atomic operations.
        
        All operations within the context will be committed together on success,
        or rolled back together on failure.
        
        Usage:
            async with db.transaction() as session:
                await ranking_ops.award_bonus(winner_id, winner_name, 50, session=session)
                await ranking_ops.award_bonus(runner_up_id, runner_up_name, 25, session=session)
                # Both bonuses commit together here
        
        Exceptions must be allowed to propagate out of the context for
        rollback to occur.
        """
        async with self.async_session() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()
    
    async def close(self):
        """Close the database connection"""
        if self.engine:
            await self.engine.dispose()
            self.logger.info("Database connection closed")

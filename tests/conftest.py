"""Shared fixtures: a fresh sqlite file database per test and the operation objects on top of it."""

import os

import pytest
import pytest_asyncio

# Keep test runs from writing log files
os.environ.setdefault('LOG_DIR', '')

from arena.data_models.player import PlayerContext
from arena.database.database import Database
from arena.database.match_operations import MatchOperations
from arena.database.ranking_operations import RankingOperations
from arena.database.tournament_operations import TournamentOperations
from arena.services.change_feed import ChangeFeed, ChangeFeedSubscriber
from arena.services.match_client import MatchClient


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(f"sqlite:///{tmp_path / 'arena_test.db'}")
    await database.initialize()
    yield database
    await database.close()


@pytest.fixture
def feed():
    change_feed = ChangeFeed()
    yield change_feed
    change_feed.close()


@pytest.fixture
def match_ops(db, feed):
    return MatchOperations(db, feed)


@pytest.fixture
def ranking_ops(db):
    return RankingOperations(db)


@pytest.fixture
def tournament_ops(db):
    return TournamentOperations(db)


@pytest_asyncio.fixture
async def make_client(match_ops, ranking_ops, feed):
    """Factory for independent clients sharing one database and feed"""
    clients = []
    
    def _make(name: str) -> MatchClient:
        client = MatchClient(PlayerContext.new(name), match_ops, ranking_ops, ChangeFeedSubscriber(feed))
        clients.append(client)
        return client
    
    yield _make
    for client in clients:
        await client.subscriber.close()

import asyncio
from datetime import timedelta

import pytest

from arena.database.models import utcnow
from arena.services.change_feed import ChangeFeedSubscriber
from arena.services.housekeeping import MatchHousekeeper
from arena.services.lobby import LobbyList


async def wait_for_ids(updates: asyncio.Queue, expected):
    """Drain lobby updates until the listed match ids equal `expected`"""
    async def _wait():
        while True:
            entries = await updates.get()
            if [m.id for m in entries] == expected:
                return entries
    return await asyncio.wait_for(_wait(), timeout=2)


@pytest.mark.asyncio
async def test_lobby_follows_match_collection(match_ops, feed):
    own = await match_ops.create_match('alice', 'Alice')
    lobby = LobbyList('alice', match_ops, ChangeFeedSubscriber(feed))
    updates = asyncio.Queue()
    lobby.add_listener(updates.put_nowait)
    
    await lobby.start()
    await wait_for_ids(updates, [])
    
    bob_match = await match_ops.create_match('bob', 'Bob')
    await wait_for_ids(updates, [bob_match.id])
    assert own.id not in [m.id for m in lobby.entries]
    
    carol_match = await match_ops.create_match('carol', 'Carol')
    await wait_for_ids(updates, [carol_match.id, bob_match.id])
    
    await match_ops.join_match(bob_match.id, 'dave', 'Dave')
    await wait_for_ids(updates, [carol_match.id])
    
    await match_ops.delete_waiting_match(carol_match.id, 'carol')
    await wait_for_ids(updates, [])
    
    await lobby.stop()
    assert feed.subscriber_count(None) == 0


@pytest.mark.asyncio
async def test_lobby_respects_limit(match_ops, feed):
    for i in range(5):
        await match_ops.create_match(f'host{i}', f'Host {i}')
    lobby = LobbyList('viewer', match_ops, ChangeFeedSubscriber(feed), limit=3)
    entries = await lobby.refresh()
    assert len(entries) == 3
    assert entries[0].player_x_id == 'host4'


@pytest.mark.asyncio
async def test_housekeeper_sweeps_in_background(match_ops, monkeypatch):
    match = await match_ops.create_match('alice', 'Alice')
    
    original = match_ops.expire_stale_matches
    
    async def expire_later(now=None):
        return await original(now=utcnow() + timedelta(hours=1))
    
    monkeypatch.setattr(match_ops, 'expire_stale_matches', expire_later)
    housekeeper = MatchHousekeeper(match_ops, interval_seconds=0.01)
    housekeeper.start()
    assert housekeeper.is_running
    
    async def _gone():
        while await match_ops.get_match(match.id) is not None:
            await asyncio.sleep(0.01)
    
    await asyncio.wait_for(_gone(), timeout=2)
    await housekeeper.stop()
    assert not housekeeper.is_running

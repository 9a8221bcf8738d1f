import pytest

from arena.config import Config


def test_sync_sqlite_url_gets_async_driver():
    assert Config.get_async_database_url('sqlite:///arena.db') == 'sqlite+aiosqlite:///arena.db'
    assert Config.get_async_database_url('sqlite+aiosqlite:///x.db') == 'sqlite+aiosqlite:///x.db'


def test_rating_defaults():
    assert Config.STARTING_ELO == 1000
    assert Config.K_FACTOR == 32
    assert Config.MIN_ELO == 100
    assert Config.TOURNAMENT_SIZES == (4, 8)


def test_list_limit_defaults():
    assert Config.LOBBY_LIMIT == 10
    assert Config.LEADERBOARD_LIMIT == 50
    assert Config.REPLAY_LIMIT == 20


def test_defaults_are_valid():
    Config.validate()


@pytest.mark.parametrize("attribute,value", [
    ('K_FACTOR', 0),
    ('MIN_ELO', 2000),
    ('LOBBY_LIMIT', 0),
    ('REPLAY_LIMIT', 0),
    ('TOURNAMENT_SIZES', (4, 6)),
])
def test_inconsistent_values_rejected(monkeypatch, attribute, value):
    monkeypatch.setattr(Config, attribute, value)
    with pytest.raises(ValueError):
        Config.validate()

import asyncio
import random

import pytest

from arena.data_models.results import TournamentRejected, TournamentRejection
from arena.database.models import (
    BracketMatchStatus, MatchStatus, Outcome, Seat, Tournament, TournamentStatus
)
from arena.operations.tournament_driver import TournamentDriver
from arena.services.change_feed import ChangeFeedSubscriber

X_WINS = (0, 3, 1, 4, 2)
O_WINS = (0, 3, 1, 4, 8, 5)
DRAW = (0, 1, 2, 4, 3, 5, 7, 6, 8)


@pytest.fixture
def driver(db, match_ops, ranking_ops):
    return TournamentDriver(db, match_ops, ranking_ops, rng=random.Random(7))


@pytest.fixture
def full_tournament(tournament_ops):
    async def _create(size: int) -> Tournament:
        tournament = await tournament_ops.create_tournament('p0', 'P0', 'Friday Cup', size)
        for i in range(1, size):
            await tournament_ops.join_tournament(tournament.id, f'p{i}', f'P{i}')
        return tournament
    return _create


async def finish_game(match_ops, game_id, cells):
    game = await match_ops.get_match(game_id)
    for cell in cells:
        game = await match_ops.apply_move(game.id, game.turn, cell, game.turn)
    assert game.is_finished
    return game


def by_round(bracket, round_number):
    return [slot for slot in bracket if slot.round == round_number]


class TestTournamentLobby:
    @pytest.mark.asyncio
    async def test_create_seats_creator(self, tournament_ops):
        tournament = await tournament_ops.create_tournament('p0', 'P0', ' Cup ', 4)
        assert tournament.name == 'Cup'
        assert tournament.status == TournamentStatus.WAITING
        participants = await tournament_ops.get_participants(tournament.id)
        assert [(p.player_id, p.seed) for p in participants] == [('p0', 1)]
    
    @pytest.mark.asyncio
    async def test_invalid_size(self, tournament_ops):
        result = await tournament_ops.create_tournament('p0', 'P0', 'Cup', 6)
        assert result == TournamentRejected(None, TournamentRejection.INVALID_SIZE)
    
    @pytest.mark.asyncio
    async def test_join_rules(self, tournament_ops):
        tournament = await tournament_ops.create_tournament('p0', 'P0', 'Cup', 4)
        joined = await tournament_ops.join_tournament(tournament.id, 'p1', 'P1')
        assert joined.seed == 2
        
        again = await tournament_ops.join_tournament(tournament.id, 'p1', 'P1')
        assert again.reason == TournamentRejection.ALREADY_JOINED
        
        for player in ('p2', 'p3'):
            await tournament_ops.join_tournament(tournament.id, player, player.upper())
        full = await tournament_ops.join_tournament(tournament.id, 'p4', 'P4')
        assert full.reason == TournamentRejection.FULL
        
        missing = await tournament_ops.join_tournament('missing', 'p4', 'P4')
        assert missing.reason == TournamentRejection.NOT_FOUND
    
    @pytest.mark.asyncio
    async def test_concurrent_joins_respect_capacity(self, tournament_ops):
        tournament = await tournament_ops.create_tournament('p0', 'P0', 'Cup', 4)
        results = await asyncio.gather(*[
            tournament_ops.join_tournament(tournament.id, f'p{i}', f'P{i}') for i in range(1, 6)
        ])
        accepted = [r for r in results if not isinstance(r, TournamentRejected)]
        assert len(accepted) == 3
        assert len(await tournament_ops.get_participants(tournament.id)) == 4
    
    @pytest.mark.asyncio
    async def test_leave_only_before_start(self, tournament_ops, driver, full_tournament):
        tournament = await tournament_ops.create_tournament('p0', 'P0', 'Cup', 4)
        await tournament_ops.join_tournament(tournament.id, 'p1', 'P1')
        assert await tournament_ops.leave_tournament(tournament.id, 'p1')
        assert not await tournament_ops.leave_tournament(tournament.id, 'p1')
        
        started = await full_tournament(4)
        await driver.start_tournament(started.id, 'p0')
        assert not await tournament_ops.leave_tournament(started.id, 'p1')
    
    @pytest.mark.asyncio
    async def test_open_tournament_list(self, tournament_ops):
        first = await tournament_ops.create_tournament('p0', 'P0', 'First', 4)
        second = await tournament_ops.create_tournament('p1', 'P1', 'Second', 8)
        listed = await tournament_ops.list_open_tournaments()
        assert [t.id for t in listed] == [second.id, first.id]


class TestStart:
    @pytest.mark.asyncio
    async def test_only_creator_starts(self, driver, full_tournament):
        tournament = await full_tournament(4)
        result = await driver.start_tournament(tournament.id, 'p1')
        assert result.reason == TournamentRejection.NOT_CREATOR
    
    @pytest.mark.asyncio
    async def test_needs_full_tournament(self, driver, tournament_ops):
        tournament = await tournament_ops.create_tournament('p0', 'P0', 'Cup', 4)
        await tournament_ops.join_tournament(tournament.id, 'p1', 'P1')
        result = await driver.start_tournament(tournament.id, 'p0')
        assert result.reason == TournamentRejection.NOT_ENOUGH_PLAYERS
        assert (await tournament_ops.get_tournament(tournament.id)).status == TournamentStatus.WAITING
    
    @pytest.mark.asyncio
    async def test_starts_once(self, driver, full_tournament):
        tournament = await full_tournament(4)
        await driver.start_tournament(tournament.id, 'p0')
        again = await driver.start_tournament(tournament.id, 'p0')
        assert again.reason == TournamentRejection.NOT_WAITING
    
    @pytest.mark.asyncio
    async def test_bracket_shape(self, driver, full_tournament, match_ops, tournament_ops):
        tournament = await full_tournament(8)
        bracket = await driver.start_tournament(tournament.id, 'p0')
        
        assert [len(by_round(bracket, r)) for r in (1, 2, 3)] == [4, 2, 1]
        first_round = by_round(bracket, 1)
        seated = [p for slot in first_round for p in (slot.player1_id, slot.player2_id)]
        assert sorted(seated) == sorted(f'p{i}' for i in range(8))
        
        for slot in first_round:
            assert slot.status == BracketMatchStatus.PLAYING
            game = await match_ops.get_match(slot.game_id)
            assert game.status == MatchStatus.PLAYING
            assert (game.player_x_id, game.player_o_id) == (slot.player1_id, slot.player2_id)
        for slot in by_round(bracket, 2) + by_round(bracket, 3):
            assert slot.player1_id is None and slot.game_id is None
        
        stored = await tournament_ops.get_tournament(tournament.id)
        assert stored.status == TournamentStatus.IN_PROGRESS
        assert stored.current_round == 1


class TestAdvancement:
    @pytest.mark.asyncio
    async def test_eight_player_bracket_to_the_end(self, driver, full_tournament, match_ops,
                                                   tournament_ops, ranking_ops):
        tournament = await full_tournament(8)
        bracket = await driver.start_tournament(tournament.id, 'p0')
        first_round = by_round(bracket, 1)
        
        # Player1 (X) wins every first round game
        for slot in first_round:
            await finish_game(match_ops, slot.game_id, X_WINS)
            updated = await driver.record_game_result(slot.game_id)
            assert updated.status == BracketMatchStatus.FINISHED
            assert updated.winner_id == slot.player1_id
        assert await driver.record_game_result(first_round[0].game_id) is None
        
        bracket = await tournament_ops.get_bracket(tournament.id)
        second_round = by_round(bracket, 2)
        assert (second_round[0].player1_id, second_round[0].player2_id) == \
            (first_round[0].player1_id, first_round[1].player1_id)
        assert (second_round[1].player1_id, second_round[1].player2_id) == \
            (first_round[2].player1_id, first_round[3].player1_id)
        assert all(slot.status == BracketMatchStatus.PLAYING for slot in second_round)
        assert (await tournament_ops.get_tournament(tournament.id)).current_round == 2
        
        participants = await tournament_ops.get_participants(tournament.id)
        assert sum(p.eliminated for p in participants) == 4
        
        # Player2 (O) wins the first semi-final, player1 the second
        await finish_game(match_ops, second_round[0].game_id, O_WINS)
        await driver.record_game_result(second_round[0].game_id)
        await finish_game(match_ops, second_round[1].game_id, X_WINS)
        await driver.record_game_result(second_round[1].game_id)
        
        final = by_round(await tournament_ops.get_bracket(tournament.id), 3)[0]
        assert (final.player1_id, final.player2_id) == \
            (second_round[0].player2_id, second_round[1].player1_id)
        
        game = await finish_game(match_ops, final.game_id, X_WINS)
        assert game.outcome == Outcome.WIN_X
        await driver.record_game_result(final.game_id)
        
        stored = await tournament_ops.get_tournament(tournament.id)
        assert stored.status == TournamentStatus.FINISHED
        assert stored.winner_id == final.player1_id
        
        participants = await tournament_ops.get_participants(tournament.id)
        remaining = [p.player_id for p in participants if not p.eliminated]
        assert remaining == [final.player1_id]
        
        # Games were not rated here, so rankings hold only the placement bonuses
        ratings = {p.player_id: (await ranking_ops.get_ranking(p.player_id)).elo_rating
                   for p in participants}
        assert ratings.pop(final.player1_id) == 1050
        assert ratings.pop(final.player2_id) == 1025
        assert set(ratings.values()) == {1010}
    
    @pytest.mark.asyncio
    async def test_draw_is_replayed_with_seats_swapped(self, driver, full_tournament, match_ops):
        tournament = await full_tournament(4)
        slot = by_round(await driver.start_tournament(tournament.id, 'p0'), 1)[0]
        
        await finish_game(match_ops, slot.game_id, DRAW)
        replayed = await driver.record_game_result(slot.game_id)
        assert replayed.status == BracketMatchStatus.PLAYING
        assert replayed.game_id != slot.game_id
        
        replay = await match_ops.get_match(replayed.game_id)
        assert (replay.player_x_id, replay.player_o_id) == (slot.player2_id, slot.player1_id)
        
        await finish_game(match_ops, replay.id, X_WINS)
        decided = await driver.record_game_result(replay.id)
        assert decided.status == BracketMatchStatus.FINISHED
        assert decided.winner_id == slot.player2_id
    
    @pytest.mark.asyncio
    async def test_sibling_results_recorded_concurrently(self, driver, full_tournament, match_ops,
                                                         tournament_ops):
        tournament = await full_tournament(4)
        first_round = by_round(await driver.start_tournament(tournament.id, 'p0'), 1)
        for slot in first_round:
            await finish_game(match_ops, slot.game_id, X_WINS)
        
        # Both clients of each game report it, and the two siblings race each other
        game_ids = [slot.game_id for slot in first_round] * 2
        results = await asyncio.gather(*[driver.record_game_result(game_id) for game_id in game_ids])
        assert sum(result is not None for result in results) == 2
        
        final = by_round(await tournament_ops.get_bracket(tournament.id), 2)[0]
        assert (final.player1_id, final.player2_id) == \
            (first_round[0].player1_id, first_round[1].player1_id)
        assert final.status == BracketMatchStatus.PLAYING
        
        live = await match_ops.list_live_matches()
        assert [game.id for game in live] == [final.game_id]
        assert (live[0].player_x_id, live[0].player_o_id) == (final.player1_id, final.player2_id)
        assert (await tournament_ops.get_tournament(tournament.id)).current_round == 2
    
    @pytest.mark.asyncio
    async def test_unfinished_or_unrelated_game_ignored(self, driver, full_tournament, match_ops):
        tournament = await full_tournament(4)
        slot = by_round(await driver.start_tournament(tournament.id, 'p0'), 1)[0]
        assert await driver.record_game_result(slot.game_id) is None
        
        casual = await match_ops.create_seated_match('a', 'A', 'b', 'B')
        await finish_game(match_ops, casual.id, X_WINS)
        assert await driver.record_game_result(casual.id) is None
    
    @pytest.mark.asyncio
    async def test_bracket_follows_change_feed(self, driver, full_tournament, match_ops,
                                               tournament_ops, feed):
        subscriber = ChangeFeedSubscriber(feed)
        await driver.attach(subscriber)
        tournament = await full_tournament(4)
        slot = by_round(await driver.start_tournament(tournament.id, 'p0'), 1)[0]
        
        await finish_game(match_ops, slot.game_id, O_WINS)
        
        async def _advanced():
            while True:
                bracket = await tournament_ops.get_bracket(tournament.id)
                if by_round(bracket, 1)[0].status == BracketMatchStatus.FINISHED:
                    return bracket
                await asyncio.sleep(0.01)
        
        bracket = await asyncio.wait_for(_advanced(), timeout=2)
        assert by_round(bracket, 1)[0].winner_id == slot.player2_id
        assert by_round(bracket, 2)[0].player1_id == slot.player2_id
        await subscriber.close()

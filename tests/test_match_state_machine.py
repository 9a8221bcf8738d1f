from datetime import datetime

import pytest

from arena.constants import FinishReason
from arena.data_models.match import MatchSnapshot, decode_board
from arena.data_models.results import MoveRejection
from arena.database.models import MatchStatus, Outcome, Seat
from arena.operations.match_state_machine import MatchStateMachine
from arena.utils.exceptions import MatchStateError

NOW = datetime(2025, 1, 1, 12, 0, 0)


def playing_match(**overrides) -> MatchSnapshot:
    fields = dict(
        id='m1',
        player_x_id='alice', player_x_name='Alice',
        player_o_id='bob', player_o_name='Bob',
        board=(None,) * 9,
        turn=Seat.X,
        status=MatchStatus.PLAYING,
        outcome=Outcome.NONE,
        version=2,
        created_at=NOW,
        updated_at=NOW,
    )
    fields.update(overrides)
    return MatchSnapshot(**fields)


def play(snapshot: MatchSnapshot, *cells: int) -> MatchSnapshot:
    for cell in cells:
        seat = snapshot.turn
        assert MatchStateMachine.validate_move(snapshot, seat, cell, seat) is None
        snapshot = MatchStateMachine.apply_move(snapshot, seat, cell, NOW)
    return snapshot


class TestTransitions:
    def test_allowed(self):
        assert MatchStateMachine.can_transition(MatchStatus.WAITING, MatchStatus.PLAYING)
        assert MatchStateMachine.can_transition(MatchStatus.PLAYING, MatchStatus.FINISHED)
    
    def test_finished_is_terminal(self):
        assert not MatchStateMachine.can_transition(MatchStatus.FINISHED, MatchStatus.PLAYING)
        assert not MatchStateMachine.can_transition(MatchStatus.WAITING, MatchStatus.FINISHED)
    
    def test_move_on_finished_match_raises(self):
        finished = play(playing_match(), 0, 3, 1, 4, 2)
        with pytest.raises(MatchStateError):
            MatchStateMachine.apply_move(finished, Seat.O, 5, NOW)
    
    def test_move_on_waiting_match_raises(self):
        waiting = playing_match(player_o_id=None, player_o_name=None, status=MatchStatus.WAITING)
        with pytest.raises(MatchStateError):
            MatchStateMachine.apply_move(waiting, Seat.X, 0, NOW)
    
    def test_forfeit_requires_playing(self):
        waiting = playing_match(player_o_id=None, player_o_name=None, status=MatchStatus.WAITING)
        finished = play(playing_match(), 0, 3, 1, 4, 2)
        for snapshot in (waiting, finished):
            with pytest.raises(MatchStateError):
                MatchStateMachine.forfeit(snapshot, NOW)


class TestValidateMove:
    def test_legal_first_move(self):
        assert MatchStateMachine.validate_move(playing_match(), Seat.X, 4, Seat.X) is None
    
    def test_wrong_turn(self):
        assert MatchStateMachine.validate_move(playing_match(), Seat.O, 4, Seat.O) == MoveRejection.WRONG_TURN
    
    def test_stale_expected_turn(self):
        assert MatchStateMachine.validate_move(playing_match(), Seat.X, 4, Seat.O) == MoveRejection.WRONG_TURN
    
    def test_occupied_cell(self):
        snapshot = play(playing_match(), 4)
        assert MatchStateMachine.validate_move(snapshot, Seat.O, 4, Seat.O) == MoveRejection.CELL_OCCUPIED
    
    @pytest.mark.parametrize("cell", [-1, 9, 42])
    def test_out_of_range(self, cell):
        assert MatchStateMachine.validate_move(playing_match(), Seat.X, cell, Seat.X) == MoveRejection.CELL_OUT_OF_RANGE
    
    def test_not_playing(self):
        waiting = playing_match(player_o_id=None, player_o_name=None, status=MatchStatus.WAITING)
        assert MatchStateMachine.validate_move(waiting, Seat.X, 0, Seat.X) == MoveRejection.NOT_PLAYING
    
    def test_spectator_cannot_move(self):
        assert MatchStateMachine.validate_player_move(playing_match(), 'carol', 0) == MoveRejection.NOT_SEATED


class TestApplyMove:
    def test_turn_alternates_and_version_bumps(self):
        snapshot = play(playing_match(), 0)
        assert snapshot.turn == Seat.O
        assert snapshot.version == 3
        assert snapshot.board[0] == Seat.X
        assert len(snapshot.move_history) == 1
    
    def test_row_win(self):
        # X: 0 1 2, O: 3 4
        snapshot = play(playing_match(), 0, 3, 1, 4, 2)
        assert snapshot.status == MatchStatus.FINISHED
        assert snapshot.outcome == Outcome.WIN_X
        assert snapshot.winning_line == (0, 1, 2)
        assert snapshot.finish_reason == FinishReason.LINE
        assert snapshot.winner_id == 'alice'
        assert snapshot.loser_id == 'bob'
    
    def test_diagonal_win_for_o(self):
        # X: 1 3 5, O: 2 4 6
        snapshot = play(playing_match(), 1, 2, 3, 4, 5, 6)
        assert snapshot.outcome == Outcome.WIN_O
        assert snapshot.winning_line == (2, 4, 6)
    
    def test_full_board_draw(self):
        # X O X / X O O / O X X
        snapshot = play(playing_match(), 0, 1, 2, 4, 3, 5, 7, 6, 8)
        assert snapshot.status == MatchStatus.FINISHED
        assert snapshot.outcome == Outcome.DRAW
        assert snapshot.winning_line is None
        assert snapshot.finish_reason == FinishReason.DRAW
    
    def test_win_on_last_cell_is_not_a_draw(self):
        # X O X / O X O / O X X : X completes 0-4-8 with the ninth mark
        snapshot = play(playing_match(), 0, 1, 2, 3, 4, 5, 7, 6, 8)
        assert snapshot.outcome == Outcome.WIN_X
        assert snapshot.winning_line == (0, 4, 8)
    
    def test_no_moves_after_finish(self):
        snapshot = play(playing_match(), 0, 3, 1, 4, 2)
        assert MatchStateMachine.validate_move(snapshot, Seat.O, 5, Seat.O) == MoveRejection.NOT_PLAYING
    
    def test_original_snapshot_untouched(self):
        original = playing_match()
        play(original, 4)
        assert original.board == (None,) * 9
        assert original.version == 2


class TestGameTree:
    """Walks every position reachable from the empty board through legal moves."""
    
    def test_every_reachable_position_is_consistent(self):
        seen = set()
        terminal = {'win': 0, 'draw': 0}
        lines = set()
        
        def walk(snapshot):
            if snapshot.board in seen:
                return
            seen.add(snapshot.board)
            
            marks_x = snapshot.board.count(Seat.X)
            marks_o = snapshot.board.count(Seat.O)
            assert marks_x - marks_o in (0, 1)
            assert marks_x + marks_o == len(snapshot.move_history)
            
            line = MatchStateMachine.find_winning_line(snapshot.board)
            if line is not None:
                assert snapshot.status == MatchStatus.FINISHED
                assert snapshot.outcome == Outcome.win_for(snapshot.board[line[0]])
                assert snapshot.winning_line == line
                lines.add((line, snapshot.board[line[0]]))
                terminal['win'] += 1
            elif MatchStateMachine.is_board_full(snapshot.board):
                assert snapshot.status == MatchStatus.FINISHED
                assert snapshot.outcome == Outcome.DRAW
                terminal['draw'] += 1
            else:
                assert snapshot.status == MatchStatus.PLAYING
                assert snapshot.outcome == Outcome.NONE
            
            for cell in range(9):
                for seat in (Seat.X, Seat.O):
                    rejection = MatchStateMachine.validate_move(snapshot, seat, cell, seat)
                    if snapshot.is_finished:
                        assert rejection == MoveRejection.NOT_PLAYING
                    elif seat != snapshot.turn:
                        assert rejection == MoveRejection.WRONG_TURN
                    elif snapshot.board[cell] is not None:
                        assert rejection == MoveRejection.CELL_OCCUPIED
                    else:
                        assert rejection is None
                        child = MatchStateMachine.apply_move(snapshot, seat, cell, NOW)
                        assert child.turn == seat.opponent
                        assert child.version == snapshot.version + 1
                        walk(child)
        
        walk(playing_match())
        
        assert len(seen) == 5478
        assert terminal == {'win': 942, 'draw': 16}
        # Each of the 8 lines is reachable as a win for both seats
        assert len(lines) == 16


def test_forfeit_loses_for_seat_on_turn():
    snapshot = MatchStateMachine.forfeit(play(playing_match(), 0), NOW)
    assert snapshot.status == MatchStatus.FINISHED
    assert snapshot.outcome == Outcome.WIN_X
    assert snapshot.finish_reason == FinishReason.FORFEIT


def test_replay_frames():
    snapshot = play(playing_match(), 4, 0, 8)
    frames = MatchStateMachine.replay_frames(snapshot)
    assert len(frames) == 4
    assert frames[0] == (None,) * 9
    assert frames[1] == decode_board('m1', '----X----')
    assert frames[3] == snapshot.board

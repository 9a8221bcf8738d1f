"""
Match State Machine

Legal transitions and turn legality for a single online match.
All checks here are synchronous and side-effect free; the repository runs
the same checks again against the authoritative row before writing.

State Flow:
waiting -> playing -> finished   (a rematch continues in a new match)
"""

from dataclasses import dataclass, replace
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from arena.constants import BoardConstants, FinishReason
from arena.data_models.match import Board, MatchSnapshot, MoveRecord
from arena.data_models.results import MoveRejection
from arena.database.models import MatchStatus, Outcome, Seat
from arena.utils.exceptions import MatchStateError


@dataclass(frozen=True)
class MoveResolution:
    """Board and status after applying one mark."""
    board: Board
    status: MatchStatus
    outcome: Outcome
    turn: Seat
    winning_line: Optional[Tuple[int, int, int]]
    finish_reason: Optional[str]


class MatchStateMachine:
    """Validates intents and computes the resulting match state."""
    
    TRANSITIONS = {
        MatchStatus.WAITING: [MatchStatus.PLAYING],
        MatchStatus.PLAYING: [MatchStatus.PLAYING, MatchStatus.FINISHED],
        MatchStatus.FINISHED: [],
    }
    
    @staticmethod
    def can_transition(current: MatchStatus, new_status: MatchStatus) -> bool:
        return new_status in MatchStateMachine.TRANSITIONS.get(current, [])
    
    @staticmethod
    def require_transition(snapshot: MatchSnapshot, new_status: MatchStatus):
        if not MatchStateMachine.can_transition(snapshot.status, new_status):
            raise MatchStateError(snapshot.id, snapshot.status, new_status)
    
    @staticmethod
    def find_winning_line(board: Sequence[Optional[Seat]]) -> Optional[Tuple[int, int, int]]:
        """Return the first complete line of identical marks, if any"""
        for a, b, c in BoardConstants.WINNING_LINES:
            if board[a] is not None and board[a] == board[b] == board[c]:
                return (a, b, c)
        return None
    
    @staticmethod
    def is_board_full(board: Sequence[Optional[Seat]]) -> bool:
        return all(cell is not None for cell in board)
    
    @staticmethod
    def validate_move(snapshot: MatchSnapshot, seat: Optional[Seat], cell_index: int,
                      expected_turn: Seat) -> Optional[MoveRejection]:
        """
        Check a move against a known match state.
        
        Args:
            snapshot: Match state the caller believes is current
            seat: Seat placing the mark
            cell_index: Target cell, 0-8
            expected_turn: Turn the caller observed when deciding to move
            
        Returns:
            None if the move is legal, otherwise the rejection reason
        """
        if snapshot.status != MatchStatus.PLAYING:
            return MoveRejection.NOT_PLAYING
        if seat is None:
            return MoveRejection.NOT_SEATED
        if isinstance(cell_index, bool) or not isinstance(cell_index, int) \
                or not 0 <= cell_index < BoardConstants.CELL_COUNT:
            return MoveRejection.CELL_OUT_OF_RANGE
        if seat != expected_turn or snapshot.turn != expected_turn:
            return MoveRejection.WRONG_TURN
        if snapshot.board[cell_index] is not None:
            return MoveRejection.CELL_OCCUPIED
        if MatchStateMachine.find_winning_line(snapshot.board) is not None:
            return MoveRejection.NOT_PLAYING
        return None
    
    @staticmethod
    def validate_player_move(snapshot: MatchSnapshot, player_id: str,
                             cell_index: int) -> Optional[MoveRejection]:
        """Local pre-check for a player clicking a cell"""
        seat = snapshot.seat_of(player_id)
        if seat is None:
            return MoveRejection.NOT_SEATED
        return MatchStateMachine.validate_move(snapshot, seat, cell_index, snapshot.turn)
    
    @staticmethod
    def resolve_move(board: Sequence[Optional[Seat]], seat: Seat, cell_index: int) -> MoveResolution:
        """Place a mark and decide whether the match continues"""
        cells = list(board)
        cells[cell_index] = seat
        new_board = tuple(cells)
        
        line = MatchStateMachine.find_winning_line(new_board)
        if line is not None:
            return MoveResolution(new_board, MatchStatus.FINISHED, Outcome.win_for(seat),
                                  seat.opponent, line, FinishReason.LINE)
        if MatchStateMachine.is_board_full(new_board):
            return MoveResolution(new_board, MatchStatus.FINISHED, Outcome.DRAW,
                                  seat.opponent, None, FinishReason.DRAW)
        return MoveResolution(new_board, MatchStatus.PLAYING, Outcome.NONE,
                              seat.opponent, None, None)
    
    @staticmethod
    def apply_move(snapshot: MatchSnapshot, seat: Seat, cell_index: int,
                   timestamp: datetime) -> MatchSnapshot:
        """Return the snapshot that results from a validated move"""
        resolution = MatchStateMachine.resolve_move(snapshot.board, seat, cell_index)
        if snapshot.status != MatchStatus.PLAYING:
            raise MatchStateError(snapshot.id, snapshot.status, resolution.status)
        MatchStateMachine.require_transition(snapshot, resolution.status)
        return replace(
            snapshot,
            board=resolution.board,
            status=resolution.status,
            outcome=resolution.outcome,
            turn=resolution.turn,
            winning_line=resolution.winning_line,
            finish_reason=resolution.finish_reason,
            move_history=snapshot.move_history + (MoveRecord(seat, cell_index, timestamp),),
            version=snapshot.version + 1,
            updated_at=timestamp,
        )
    
    @staticmethod
    def forfeit(snapshot: MatchSnapshot, timestamp: datetime) -> MatchSnapshot:
        """Finish a stalled match; the seat whose turn it is loses"""
        MatchStateMachine.require_transition(snapshot, MatchStatus.FINISHED)
        return replace(
            snapshot,
            status=MatchStatus.FINISHED,
            outcome=Outcome.win_for(snapshot.turn.opponent),
            finish_reason=FinishReason.FORFEIT,
            version=snapshot.version + 1,
            updated_at=timestamp,
        )
    
    @staticmethod
    def replay_frames(snapshot: MatchSnapshot) -> List[Board]:
        """Boards after each move of the history, starting from the empty board"""
        board: Board = (None,) * BoardConstants.CELL_COUNT
        frames = [board]
        for move in snapshot.move_history:
            cells = list(board)
            cells[move.cell_index] = move.seat
            board = tuple(cells)
            frames.append(board)
        return frames

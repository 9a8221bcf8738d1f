"""
Match data models.

Immutable snapshots of persisted match rows. Every component outside the
repository works on these copies and treats them as possibly stale.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Sequence, Tuple

from arena.constants import BoardConstants
from arena.database.models import MatchStatus, Outcome, Seat
from arena.utils.exceptions import MatchDataCorrupted

Board = Tuple[Optional[Seat], ...]


def encode_board(board: Sequence[Optional[Seat]]) -> str:
    return ''.join(cell.value if cell else BoardConstants.EMPTY_CELL_CHAR for cell in board)


def decode_board(match_id: str, raw: str) -> Board:
    if raw is None or len(raw) != BoardConstants.CELL_COUNT:
        raise MatchDataCorrupted(match_id, f"board must have {BoardConstants.CELL_COUNT} cells, got {raw!r}")
    cells = []
    for char in raw:
        if char == BoardConstants.EMPTY_CELL_CHAR:
            cells.append(None)
        elif char in ('X', 'O'):
            cells.append(Seat(char))
        else:
            raise MatchDataCorrupted(match_id, f"unknown board character {char!r}")
    return tuple(cells)


def encode_line(line: Optional[Tuple[int, int, int]]) -> Optional[str]:
    if line is None:
        return None
    return ','.join(str(i) for i in line)


@dataclass(frozen=True)
class MoveRecord:
    """Single accepted move."""
    seat: Seat
    cell_index: int
    timestamp: datetime
    
    def to_dict(self) -> dict:
        return {
            'seat': self.seat.value,
            'cell_index': self.cell_index,
            'timestamp': self.timestamp.isoformat(),
        }
    
    @classmethod
    def from_dict(cls, data: dict) -> 'MoveRecord':
        return cls(
            seat=Seat(data['seat']),
            cell_index=int(data['cell_index']),
            timestamp=datetime.fromisoformat(data['timestamp']),
        )


def encode_history(history: Sequence[MoveRecord]) -> str:
    return json.dumps([move.to_dict() for move in history])


def decode_history(match_id: str, raw: str) -> Tuple[MoveRecord, ...]:
    try:
        return tuple(MoveRecord.from_dict(item) for item in json.loads(raw or '[]'))
    except (ValueError, KeyError, TypeError) as e:
        raise MatchDataCorrupted(match_id, f"unreadable move history: {e}")


@dataclass(frozen=True)
class MatchSnapshot:
    """Point-in-time copy of one match row."""
    id: str
    player_x_id: str
    player_x_name: str
    player_o_id: Optional[str]
    player_o_name: Optional[str]
    board: Board
    turn: Seat
    status: MatchStatus
    outcome: Outcome
    version: int
    created_at: datetime
    updated_at: datetime
    move_history: Tuple[MoveRecord, ...] = ()
    finish_reason: Optional[str] = None
    winning_line: Optional[Tuple[int, int, int]] = None
    rematch_requested_by: Optional[str] = None
    rematch_match_id: Optional[str] = None
    rated: bool = field(default=False, compare=False)
    
    @classmethod
    def from_row(cls, row) -> 'MatchSnapshot':
        """Decode an OnlineMatch row, validating the persisted invariants"""
        board = decode_board(row.id, row.board)
        history = decode_history(row.id, row.move_history)
        winning_line = None
        if row.winning_line:
            try:
                winning_line = tuple(int(i) for i in row.winning_line.split(','))
            except ValueError:
                raise MatchDataCorrupted(row.id, f"unreadable winning line {row.winning_line!r}")
        
        snapshot = cls(
            id=row.id,
            player_x_id=row.player_x_id,
            player_x_name=row.player_x_name,
            player_o_id=row.player_o_id,
            player_o_name=row.player_o_name,
            board=board,
            turn=row.turn,
            status=row.status,
            outcome=row.outcome,
            version=row.version,
            created_at=row.created_at,
            updated_at=row.updated_at,
            move_history=history,
            finish_reason=row.finish_reason,
            winning_line=winning_line,
            rematch_requested_by=row.rematch_requested_by,
            rematch_match_id=row.rematch_match_id,
            rated=bool(row.rated),
        )
        snapshot.check_invariants()
        return snapshot
    
    def check_invariants(self):
        """Raise MatchDataCorrupted if the snapshot breaks a match invariant"""
        if not isinstance(self.status, MatchStatus) or not isinstance(self.outcome, Outcome):
            raise MatchDataCorrupted(self.id, "unknown status or outcome")
        if (self.status == MatchStatus.WAITING) != (self.player_o_id is None):
            raise MatchDataCorrupted(self.id, f"seat O does not match status {self.status.value}")
        if (self.outcome != Outcome.NONE) != (self.status == MatchStatus.FINISHED):
            raise MatchDataCorrupted(self.id, f"outcome {self.outcome.value} does not match status {self.status.value}")
        x_count = self.board.count(Seat.X)
        o_count = self.board.count(Seat.O)
        if x_count + o_count != len(self.move_history):
            raise MatchDataCorrupted(self.id, "board marks do not match move history")
        if x_count - o_count not in (0, 1):
            raise MatchDataCorrupted(self.id, f"impossible mark counts X={x_count} O={o_count}")
    
    # Seat helpers
    
    def seat_of(self, player_id: str) -> Optional[Seat]:
        if player_id == self.player_x_id:
            return Seat.X
        if self.player_o_id is not None and player_id == self.player_o_id:
            return Seat.O
        return None
    
    def player_id_for(self, seat: Seat) -> Optional[str]:
        return self.player_x_id if seat == Seat.X else self.player_o_id
    
    def player_name_for(self, seat: Seat) -> Optional[str]:
        return self.player_x_name if seat == Seat.X else self.player_o_name
    
    def opponent_of(self, player_id: str) -> Optional[str]:
        seat = self.seat_of(player_id)
        if seat is None:
            return None
        return self.player_id_for(seat.opponent)
    
    def is_turn_of(self, player_id: str) -> bool:
        return self.status == MatchStatus.PLAYING and self.seat_of(player_id) == self.turn
    
    @property
    def winner_seat(self) -> Optional[Seat]:
        if self.outcome == Outcome.WIN_X:
            return Seat.X
        if self.outcome == Outcome.WIN_O:
            return Seat.O
        return None
    
    @property
    def winner_id(self) -> Optional[str]:
        seat = self.winner_seat
        return self.player_id_for(seat) if seat else None
    
    @property
    def loser_id(self) -> Optional[str]:
        seat = self.winner_seat
        return self.player_id_for(seat.opponent) if seat else None
    
    @property
    def is_finished(self) -> bool:
        return self.status == MatchStatus.FINISHED
    
    def is_newer_than(self, other: Optional['MatchSnapshot']) -> bool:
        if other is None or other.id != self.id:
            return True
        return self.version > other.version

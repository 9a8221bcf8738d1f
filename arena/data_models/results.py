"""
Result values for match operations.

Lost races and rule violations are normal outcomes and are returned as
these values instead of being raised.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from arena.data_models.match import MatchSnapshot


class JoinFailureReason(Enum):
    NOT_FOUND = "not_found"
    ALREADY_TAKEN = "already_taken"   # Another player won the race, or match started
    OWN_MATCH = "own_match"


class MoveRejection(Enum):
    NOT_FOUND = "not_found"
    NOT_PLAYING = "not_playing"
    NOT_SEATED = "not_seated"
    WRONG_TURN = "wrong_turn"
    CELL_OUT_OF_RANGE = "cell_out_of_range"
    CELL_OCCUPIED = "cell_occupied"
    STALE = "stale"                    # Record changed between read and write


class RematchRejection(Enum):
    NOT_FOUND = "not_found"
    NOT_FINISHED = "not_finished"
    NOT_SEATED = "not_seated"


class TournamentRejection(Enum):
    NOT_FOUND = "not_found"
    NOT_WAITING = "not_waiting"
    FULL = "full"
    ALREADY_JOINED = "already_joined"
    NOT_CREATOR = "not_creator"
    NOT_ENOUGH_PLAYERS = "not_enough_players"
    INVALID_SIZE = "invalid_size"


@dataclass(frozen=True)
class JoinFailed:
    match_id: str
    reason: JoinFailureReason
    current: Optional[MatchSnapshot] = None


@dataclass(frozen=True)
class MoveRejected:
    match_id: str
    reason: MoveRejection
    current: Optional[MatchSnapshot] = None


@dataclass(frozen=True)
class RematchRejected:
    match_id: str
    reason: RematchRejection
    current: Optional[MatchSnapshot] = None


@dataclass(frozen=True)
class TournamentRejected:
    tournament_id: Optional[str]
    reason: TournamentRejection


class ErrorKind(Enum):
    VALIDATION = "validation"
    JOIN_FAILED = "join_failed"
    MOVE_REJECTED = "move_rejected"
    REMATCH_REJECTED = "rematch_rejected"
    STORAGE_UNAVAILABLE = "storage_unavailable"


@dataclass(frozen=True)
class ActionResult:
    """Outcome of one client intent, for the UI layer."""
    ok: bool
    match: Optional[MatchSnapshot] = None
    error: Optional[ErrorKind] = None
    message: str = ""
    retryable: bool = False
    
    @classmethod
    def success(cls, match: Optional[MatchSnapshot], message: str = "") -> 'ActionResult':
        return cls(ok=True, match=match, message=message)
    
    @classmethod
    def failure(cls, error: ErrorKind, message: str, match: Optional[MatchSnapshot] = None,
                retryable: bool = False) -> 'ActionResult':
        return cls(ok=False, match=match, error=error, message=message, retryable=retryable)

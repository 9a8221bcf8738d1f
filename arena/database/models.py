import uuid
from sqlalchemy import (
    Column, Integer, String, DateTime, Boolean, Text,
    ForeignKey, Enum as SQLEnum, UniqueConstraint, CheckConstraint
)
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime, timezone
from enum import Enum

from arena.constants import BoardConstants

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the form sqlite round-trips unchanged"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class Seat(Enum):
    X = "X"
    O = "O"
    
    @property
    def opponent(self) -> 'Seat':
        return Seat.O if self == Seat.X else Seat.X

class MatchStatus(Enum):
    """Status of an online match from creation to completion"""
    WAITING = "waiting"      # Host seated, waiting for a second player
    PLAYING = "playing"      # Both seats filled, moves being accepted
    FINISHED = "finished"    # Decided; board and outcome are frozen

class Outcome(Enum):
    NONE = "none"
    WIN_X = "win_x"
    WIN_O = "win_o"
    DRAW = "draw"
    
    @classmethod
    def win_for(cls, seat: Seat) -> 'Outcome':
        return cls.WIN_X if seat == Seat.X else cls.WIN_O

class MatchResult(Enum):
    WIN = "win"
    LOSS = "loss"
    DRAW = "draw"

class TournamentStatus(Enum):
    WAITING = "waiting"
    IN_PROGRESS = "in_progress"
    FINISHED = "finished"

class BracketMatchStatus(Enum):
    PENDING = "pending"
    PLAYING = "playing"
    FINISHED = "finished"

class OnlineMatch(Base):
    """
    One online game instance between two seats.
    
    Rows are only ever mutated through conditional UPDATE statements in
    MatchOperations; `version` is bumped on every accepted change so that
    subscribers can discard duplicate or out-of-order notifications.
    """
    __tablename__ = 'matches'
    
    id = Column(String(36), primary_key=True, default=new_id)
    
    # Seats
    player_x_id = Column(String(64), nullable=False, index=True)
    player_x_name = Column(String(100), nullable=False)
    player_o_id = Column(String(64), nullable=True)
    player_o_name = Column(String(100), nullable=True)
    
    # Game state
    board = Column(String(9), nullable=False, default=BoardConstants.EMPTY_BOARD)
    turn = Column(SQLEnum(Seat), nullable=False, default=Seat.X)
    status = Column(SQLEnum(MatchStatus), nullable=False, default=MatchStatus.WAITING, index=True)
    outcome = Column(SQLEnum(Outcome), nullable=False, default=Outcome.NONE)
    finish_reason = Column(String(20), nullable=True)   # line, draw, forfeit
    winning_line = Column(String(20), nullable=True)    # e.g. "0,4,8"
    move_history = Column(Text, nullable=False, default='[]')  # JSON list of moves
    
    # Rematch and rating bookkeeping
    rematch_requested_by = Column(String(64), nullable=True)
    rematch_match_id = Column(String(36), nullable=True)
    rated = Column(Boolean, nullable=False, default=False)
    
    # Row version for compare-and-swap updates
    version = Column(Integer, nullable=False, default=1)
    
    # Metadata
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    
    __table_args__ = (
        CheckConstraint('length(board) = 9', name='ck_matches_board_length'),
    )
    
    def __repr__(self):
        return f"<OnlineMatch(id={self.id}, status={self.status.value}, board='{self.board}', version={self.version})>"

class PlayerRanking(Base):
    __tablename__ = 'player_rankings'
    
    id = Column(Integer, primary_key=True)
    player_id = Column(String(64), unique=True, nullable=False, index=True)
    player_name = Column(String(100), nullable=False)
    
    elo_rating = Column(Integer, nullable=False, default=1000, index=True)
    highest_elo = Column(Integer, nullable=False, default=1000)
    wins = Column(Integer, nullable=False, default=0)
    losses = Column(Integer, nullable=False, default=0)
    draws = Column(Integer, nullable=False, default=0)
    games_played = Column(Integer, nullable=False, default=0)
    win_streak = Column(Integer, nullable=False, default=0)
    best_streak = Column(Integer, nullable=False, default=0)
    
    # Metadata
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    
    @property
    def win_rate(self) -> float:
        if self.games_played == 0:
            return 0.0
        return (self.wins / self.games_played) * 100
    
    def __repr__(self):
        return f"<PlayerRanking(player_id='{self.player_id}', elo={self.elo_rating}, games={self.games_played})>"

class Tournament(Base):
    __tablename__ = 'tournaments'
    
    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(200), nullable=False)
    created_by = Column(String(64), nullable=False)
    status = Column(SQLEnum(TournamentStatus), nullable=False, default=TournamentStatus.WAITING, index=True)
    max_players = Column(Integer, nullable=False)
    current_round = Column(Integer, nullable=False, default=0)
    winner_id = Column(String(64), nullable=True)
    winner_name = Column(String(100), nullable=True)
    
    # Metadata
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    
    # Relationships
    participants = relationship("TournamentParticipant", back_populates="tournament", cascade="all, delete-orphan")
    matches = relationship("TournamentMatch", back_populates="tournament", cascade="all, delete-orphan")
    
    @property
    def total_rounds(self) -> int:
        return self.max_players.bit_length() - 1
    
    def __repr__(self):
        return f"<Tournament(id={self.id}, name='{self.name}', status={self.status.value}, round={self.current_round})>"

class TournamentParticipant(Base):
    __tablename__ = 'tournament_participants'
    
    id = Column(Integer, primary_key=True)
    tournament_id = Column(String(36), ForeignKey('tournaments.id'), nullable=False)
    player_id = Column(String(64), nullable=False)
    player_name = Column(String(100), nullable=False)
    seed = Column(Integer, nullable=True)
    eliminated = Column(Boolean, nullable=False, default=False)
    
    joined_at = Column(DateTime, nullable=False, default=utcnow)
    
    tournament = relationship("Tournament", back_populates="participants")
    
    __table_args__ = (UniqueConstraint('tournament_id', 'player_id'),)
    
    def __repr__(self):
        return f"<TournamentParticipant(player_id='{self.player_id}', seed={self.seed}, eliminated={self.eliminated})>"

class TournamentMatch(Base):
    """
    One slot in a single-elimination bracket.
    
    Later-round slots are created empty and filled as winners advance;
    `game_id` links the OnlineMatch that decides the slot.
    """
    __tablename__ = 'tournament_matches'
    
    id = Column(Integer, primary_key=True)
    tournament_id = Column(String(36), ForeignKey('tournaments.id'), nullable=False)
    round = Column(Integer, nullable=False)
    match_number = Column(Integer, nullable=False)
    
    player1_id = Column(String(64), nullable=True)
    player1_name = Column(String(100), nullable=True)
    player2_id = Column(String(64), nullable=True)
    player2_name = Column(String(100), nullable=True)
    winner_id = Column(String(64), nullable=True)
    
    game_id = Column(String(36), nullable=True, index=True)
    status = Column(SQLEnum(BracketMatchStatus), nullable=False, default=BracketMatchStatus.PENDING)
    
    tournament = relationship("Tournament", back_populates="matches")
    
    __table_args__ = (UniqueConstraint('tournament_id', 'round', 'match_number'),)
    
    @property
    def is_seeded(self) -> bool:
        return self.player1_id is not None and self.player2_id is not None
    
    @property
    def loser_id(self):
        if self.winner_id is None:
            return None
        return self.player2_id if self.winner_id == self.player1_id else self.player1_id
    
    def __repr__(self):
        return f"<TournamentMatch(round={self.round}, number={self.match_number}, status={self.status.value})>"

"""
Rating data models.

Immutable results produced by the rating engine and by ranking operations.
"""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class RatingUpdate:
    """Output of one rating computation."""
    new_rating: int
    delta: int


@dataclass(frozen=True)
class PlayerRatingChange:
    """Rating change applied to one player's ranking."""
    player_id: str
    old_rating: int
    new_rating: int
    delta: int
    result: str  # 'win', 'loss', 'draw' or 'bonus'


@dataclass(frozen=True)
class MatchRatingOutcome:
    """Both seats' rating changes for one finished match."""
    match_id: str
    player_x: PlayerRatingChange
    player_o: PlayerRatingChange
    
    def change_for(self, player_id: str) -> Optional[PlayerRatingChange]:
        if self.player_x.player_id == player_id:
            return self.player_x
        if self.player_o.player_id == player_id:
            return self.player_o
        return None

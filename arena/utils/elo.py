import math
from typing import Union

from arena.config import Config
from arena.data_models.ratings import RatingUpdate
from arena.database.models import MatchResult, Outcome, Seat

ResultLike = Union[MatchResult, str]

class EloCalculator:
    """Handles Elo rating calculations for online matches"""
    
    @staticmethod
    def calculate_expected_score(rating_a: int, rating_b: int) -> float:
        """
        Calculate the expected score for player A against player B
        
        Args:
            rating_a: Player A's current Elo rating
            rating_b: Player B's current Elo rating
            
        Returns:
            Expected score (0.0 to 1.0) for player A
        """
        return 1 / (1 + math.pow(10, (rating_b - rating_a) / 400))
    
    @staticmethod
    def actual_score(result: ResultLike) -> float:
        """Score for a result: 1.0 win, 0.5 draw, 0.0 loss"""
        result = MatchResult(result)
        if result == MatchResult.WIN:
            return 1.0
        if result == MatchResult.DRAW:
            return 0.5
        return 0.0
    
    @staticmethod
    def compute_rating_update(self_rating: int, opponent_rating: int,
                              result: ResultLike) -> RatingUpdate:
        """
        Calculate a player's new rating after a single game
        
        Args:
            self_rating: Player's pre-match rating
            opponent_rating: Opponent's pre-match rating
            result: 'win', 'loss' or 'draw' from the player's point of view
            
        Returns:
            RatingUpdate with the new rating (floored at MIN_ELO) and the delta
        """
        expected = EloCalculator.calculate_expected_score(self_rating, opponent_rating)
        raw_change = Config.K_FACTOR * (EloCalculator.actual_score(result) - expected)
        # Half-up rounding, so +x.5 and -x.5 are not rounded to even
        delta = math.floor(raw_change + 0.5)
        return RatingUpdate(
            new_rating=max(Config.MIN_ELO, self_rating + delta),
            delta=delta
        )
    
    @staticmethod
    def compute_match_updates(x_rating: int, o_rating: int, outcome: Outcome):
        """
        Calculate both seats' updates from the same pre-match snapshot
        
        Args:
            x_rating: Pre-match rating of the X seat
            o_rating: Pre-match rating of the O seat
            outcome: Final outcome of the match
            
        Returns:
            Tuple of (x_update, o_update)
        """
        x_result = EloCalculator.result_for_seat(outcome, Seat.X)
        o_result = EloCalculator.result_for_seat(outcome, Seat.O)
        return (
            EloCalculator.compute_rating_update(x_rating, o_rating, x_result),
            EloCalculator.compute_rating_update(o_rating, x_rating, o_result),
        )
    
    @staticmethod
    def result_for_seat(outcome: Outcome, seat: Seat) -> MatchResult:
        """Translate a match outcome into a win/loss/draw for one seat"""
        if outcome == Outcome.DRAW:
            return MatchResult.DRAW
        if outcome == Outcome.NONE:
            raise ValueError("Match has no outcome yet")
        winner = Seat.X if outcome == Outcome.WIN_X else Seat.O
        return MatchResult.WIN if winner == seat else MatchResult.LOSS
    
    @staticmethod
    def apply_bonus(rating: int, bonus: int) -> RatingUpdate:
        """
        Additive bonus mode used for tournament placements
        
        Args:
            rating: Current rating
            bonus: Flat amount to add
            
        Returns:
            RatingUpdate with the new rating (floored at MIN_ELO)
        """
        new_rating = max(Config.MIN_ELO, rating + bonus)
        return RatingUpdate(new_rating=new_rating, delta=new_rating - rating)
    
    @staticmethod
    def calculate_win_probability(rating_a: int, rating_b: int) -> float:
        """Win probability as percentage (0.0 to 100.0) for player A"""
        return EloCalculator.calculate_expected_score(rating_a, rating_b) * 100
    
    @staticmethod
    def format_elo_change(elo_change: int) -> str:
        """Format Elo change for display"""
        if elo_change > 0:
            return f"+{elo_change}"
        elif elo_change < 0:
            return str(elo_change)
        else:
            return "±0"

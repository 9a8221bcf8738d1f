"""
Ranking Operations Module

Persistence for PlayerRanking rows. Rankings are created lazily the first
time a player finishes a game, and are only changed by applying the
rating engine's output here.
"""

from typing import List, Optional

from sqlalchemy import select, update, func, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession

from arena.config import Config
from arena.data_models.match import MatchSnapshot
from arena.data_models.ratings import MatchRatingOutcome, PlayerRatingChange, RatingUpdate
from arena.database.base import BaseOperations
from arena.database.models import OnlineMatch, PlayerRanking, MatchStatus, MatchResult, Seat, utcnow
from arena.utils.elo import EloCalculator
from arena.utils.logger import setup_logger

logger = setup_logger(__name__)


class RankingOperations(BaseOperations):
    """Reads and updates player rankings."""
    
    def __init__(self, database):
        super().__init__(database)
        self.logger = logger
    
    async def get_ranking(self, player_id: str) -> Optional[PlayerRanking]:
        async with self._get_session_context("get_ranking") as session:
            result = await session.execute(
                select(PlayerRanking).where(PlayerRanking.player_id == player_id)
            )
            return result.scalar_one_or_none()
    
    async def get_or_create_ranking(self, player_id: str, player_name: str,
                                    session: Optional[AsyncSession] = None) -> PlayerRanking:
        """
        Fetch a player's ranking, creating it at the starting rating if missing.
        
        The display name is refreshed when it changed. When a session is
        passed in, the caller owns the commit.
        """
        async with self._get_session_context("get_or_create_ranking", session) as active:
            result = await active.execute(
                select(PlayerRanking).where(PlayerRanking.player_id == player_id)
            )
            ranking = result.scalar_one_or_none()
            
            if ranking is None:
                ranking = PlayerRanking(
                    player_id=player_id,
                    player_name=player_name,
                    elo_rating=Config.STARTING_ELO,
                    highest_elo=Config.STARTING_ELO,
                    wins=0,
                    losses=0,
                    draws=0,
                    games_played=0,
                    win_streak=0,
                    best_streak=0
                )
                active.add(ranking)
                self.logger.info(f"Created ranking for {player_id} at {Config.STARTING_ELO}")
            elif player_name and ranking.player_name != player_name:
                ranking.player_name = player_name
            
            if session is None:
                await active.commit()
            else:
                await active.flush()
            return ranking
    
    def _apply_result(self, ranking: PlayerRanking, rating: RatingUpdate,
                      result: MatchResult) -> PlayerRatingChange:
        old_rating = ranking.elo_rating
        ranking.elo_rating = rating.new_rating
        ranking.highest_elo = max(ranking.highest_elo, rating.new_rating)
        ranking.games_played += 1
        if result == MatchResult.WIN:
            ranking.wins += 1
            ranking.win_streak += 1
        else:
            if result == MatchResult.LOSS:
                ranking.losses += 1
            else:
                ranking.draws += 1
            ranking.win_streak = 0
        ranking.best_streak = max(ranking.best_streak, ranking.win_streak)
        ranking.updated_at = utcnow()
        return PlayerRatingChange(
            player_id=ranking.player_id,
            old_rating=old_rating,
            new_rating=rating.new_rating,
            delta=rating.delta,
            result=result.value
        )
    
    async def record_match_result(self, match_id: str) -> Optional[MatchRatingOutcome]:
        """
        Apply the rating update for a finished match exactly once.
        
        The match's `rated` flag is claimed with a conditional UPDATE in the
        same transaction that writes both rankings; whoever loses that race
        gets None. Both updates are computed from the pre-match ratings.
        
        Args:
            match_id: Finished match to rate
            
        Returns:
            MatchRatingOutcome, or None if the match is not finished or was
            already rated
        """
        async with self._get_session_context("record_match_result") as session:
            claim = await session.execute(
                update(OnlineMatch)
                .where(
                    OnlineMatch.id == match_id,
                    OnlineMatch.status == MatchStatus.FINISHED,
                    OnlineMatch.rated == False
                )
                .values(rated=True)
                .execution_options(synchronize_session=False)
            )
            if claim.rowcount == 0:
                await session.rollback()
                return None
            
            result = await session.execute(
                select(OnlineMatch)
                .where(OnlineMatch.id == match_id)
                .execution_options(populate_existing=True)
            )
            match = MatchSnapshot.from_row(result.scalar_one())
            
            x_ranking = await self.get_or_create_ranking(match.player_x_id, match.player_x_name, session=session)
            o_ranking = await self.get_or_create_ranking(match.player_o_id, match.player_o_name, session=session)
            
            x_update, o_update = EloCalculator.compute_match_updates(
                x_ranking.elo_rating, o_ranking.elo_rating, match.outcome
            )
            x_change = self._apply_result(x_ranking, x_update, EloCalculator.result_for_seat(match.outcome, Seat.X))
            o_change = self._apply_result(o_ranking, o_update, EloCalculator.result_for_seat(match.outcome, Seat.O))
            
            await session.commit()
        
        self.logger.info(
            f"Rated match {match_id}: {x_change.player_id} {EloCalculator.format_elo_change(x_change.delta)}, "
            f"{o_change.player_id} {EloCalculator.format_elo_change(o_change.delta)}"
        )
        return MatchRatingOutcome(match_id=match_id, player_x=x_change, player_o=o_change)
    
    async def award_bonus(self, player_id: str, player_name: str, bonus: int,
                          session: Optional[AsyncSession] = None) -> PlayerRatingChange:
        """
        Add a flat rating bonus (tournament placements).
        
        Does not count as a game played.
        """
        async with self._get_session_context("award_bonus", session) as active:
            ranking = await self.get_or_create_ranking(player_id, player_name, session=active)
            rating = EloCalculator.apply_bonus(ranking.elo_rating, bonus)
            old_rating = ranking.elo_rating
            ranking.elo_rating = rating.new_rating
            ranking.highest_elo = max(ranking.highest_elo, rating.new_rating)
            ranking.updated_at = utcnow()
            
            if session is None:
                await active.commit()
            else:
                await active.flush()
        
        self.logger.info(f"Awarded {EloCalculator.format_elo_change(rating.delta)} bonus to {player_id}")
        return PlayerRatingChange(
            player_id=player_id,
            old_rating=old_rating,
            new_rating=rating.new_rating,
            delta=rating.delta,
            result='bonus'
        )
    
    async def get_leaderboard(self, limit: int = None) -> List[PlayerRanking]:
        """Get the top players by rating"""
        async with self._get_session_context("get_leaderboard") as session:
            result = await session.execute(
                select(PlayerRanking)
                .order_by(PlayerRanking.elo_rating.desc(), PlayerRanking.id)
                .limit(limit or Config.LEADERBOARD_LIMIT)
            )
            return list(result.scalars().all())
    
    async def get_rank_position(self, player_id: str) -> int:
        """1-based leaderboard position, 0 when the player has no ranking"""
        async with self._get_session_context("get_rank_position") as session:
            result = await session.execute(
                select(PlayerRanking).where(PlayerRanking.player_id == player_id)
            )
            ranking = result.scalar_one_or_none()
            if ranking is None:
                return 0
            
            ahead = await session.execute(
                select(func.count(PlayerRanking.id)).where(
                    or_(
                        PlayerRanking.elo_rating > ranking.elo_rating,
                        and_(
                            PlayerRanking.elo_rating == ranking.elo_rating,
                            PlayerRanking.id < ranking.id
                        )
                    )
                )
            )
            return ahead.scalar() + 1

"""
Tournament Operations Module

Persistence for tournaments, their participants and bracket slots, plus
the pre-start lobby actions (create, join, leave). Bracket seeding and
advancement live in arena.operations.tournament_driver.
"""

from typing import List, Optional, Union

from sqlalchemy import select, update, delete as sql_delete, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload

from arena.config import Config
from arena.data_models.results import TournamentRejected, TournamentRejection
from arena.database.base import BaseOperations
from arena.database.models import (
    Tournament, TournamentParticipant, TournamentMatch, TournamentStatus, utcnow
)
from arena.utils.logger import setup_logger

logger = setup_logger(__name__)


class TournamentOperations(BaseOperations):
    """CRUD for tournaments and the waiting-room participant list."""
    
    def __init__(self, database):
        super().__init__(database)
        self.logger = logger
    
    async def create_tournament(self, creator_id: str, creator_name: str, name: str,
                                max_players: int) -> Union[Tournament, TournamentRejected]:
        """
        Create a tournament and seat its creator as seed 1.
        
        Args:
            creator_id: Player creating the tournament
            creator_name: Creator display name
            name: Tournament name
            max_players: Capacity, one of Config.TOURNAMENT_SIZES
            
        Returns:
            The new Tournament, or TournamentRejected(INVALID_SIZE)
        """
        if max_players not in Config.TOURNAMENT_SIZES:
            return TournamentRejected(None, TournamentRejection.INVALID_SIZE)
        
        async with self._get_session_context("create_tournament") as session:
            tournament = Tournament(
                name=name.strip(),
                created_by=creator_id,
                status=TournamentStatus.WAITING,
                max_players=max_players,
                current_round=0
            )
            session.add(tournament)
            await session.flush()
            session.add(TournamentParticipant(
                tournament_id=tournament.id,
                player_id=creator_id,
                player_name=creator_name,
                seed=1,
                eliminated=False
            ))
            await session.commit()
        
        self.logger.info(f"Tournament {tournament.id} '{tournament.name}' created by {creator_id} for {max_players} players")
        return tournament
    
    async def join_tournament(self, tournament_id: str, player_id: str,
                              player_name: str) -> Union[TournamentParticipant, TournamentRejected]:
        """
        Add a participant while the tournament is waiting and not full.
        
        The tournament row is touched with a conditional UPDATE first, so the
        capacity count and the insert run inside one write transaction.
        """
        async with self._get_session_context("join_tournament") as session:
            claim = await session.execute(
                update(Tournament)
                .where(
                    Tournament.id == tournament_id,
                    Tournament.status == TournamentStatus.WAITING
                )
                .values(updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if claim.rowcount == 0:
                await session.rollback()
                exists = await session.get(Tournament, tournament_id)
                reason = TournamentRejection.NOT_WAITING if exists else TournamentRejection.NOT_FOUND
                return TournamentRejected(tournament_id, reason)
            
            tournament = await session.get(Tournament, tournament_id)
            count_result = await session.execute(
                select(func.count(TournamentParticipant.id))
                .where(TournamentParticipant.tournament_id == tournament_id)
            )
            count = count_result.scalar()
            if count >= tournament.max_players:
                await session.rollback()
                return TournamentRejected(tournament_id, TournamentRejection.FULL)
            
            participant = TournamentParticipant(
                tournament_id=tournament_id,
                player_id=player_id,
                player_name=player_name,
                seed=count + 1,
                eliminated=False
            )
            session.add(participant)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return TournamentRejected(tournament_id, TournamentRejection.ALREADY_JOINED)
        
        self.logger.info(f"Player {player_id} joined tournament {tournament_id} as seed {participant.seed}")
        return participant
    
    async def leave_tournament(self, tournament_id: str, player_id: str) -> bool:
        """Remove a participant; only allowed before the tournament starts"""
        async with self._get_session_context("leave_tournament") as session:
            waiting = select(Tournament.id).where(
                Tournament.id == tournament_id,
                Tournament.status == TournamentStatus.WAITING
            )
            result = await session.execute(
                sql_delete(TournamentParticipant)
                .where(
                    TournamentParticipant.tournament_id.in_(waiting),
                    TournamentParticipant.player_id == player_id
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        
        if result.rowcount:
            self.logger.info(f"Player {player_id} left tournament {tournament_id}")
        return bool(result.rowcount)
    
    async def get_tournament(self, tournament_id: str) -> Optional[Tournament]:
        async with self._get_session_context("get_tournament") as session:
            result = await session.execute(
                select(Tournament)
                .options(
                    selectinload(Tournament.participants),
                    selectinload(Tournament.matches)
                )
                .where(Tournament.id == tournament_id)
            )
            return result.scalar_one_or_none()
    
    async def list_open_tournaments(self, limit: int = 20) -> List[Tournament]:
        """Tournaments that are waiting for players or in progress, newest first"""
        async with self._get_session_context("list_open_tournaments") as session:
            result = await session.execute(
                select(Tournament)
                .where(Tournament.status.in_([TournamentStatus.WAITING, TournamentStatus.IN_PROGRESS]))
                .order_by(Tournament.created_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())
    
    async def get_participants(self, tournament_id: str) -> List[TournamentParticipant]:
        async with self._get_session_context("get_participants") as session:
            result = await session.execute(
                select(TournamentParticipant)
                .where(TournamentParticipant.tournament_id == tournament_id)
                .order_by(TournamentParticipant.seed)
            )
            return list(result.scalars().all())
    
    async def get_bracket(self, tournament_id: str) -> List[TournamentMatch]:
        """All bracket slots ordered by round then match number"""
        async with self._get_session_context("get_bracket") as session:
            result = await session.execute(
                select(TournamentMatch)
                .where(TournamentMatch.tournament_id == tournament_id)
                .order_by(TournamentMatch.round, TournamentMatch.match_number)
            )
            return list(result.scalars().all())

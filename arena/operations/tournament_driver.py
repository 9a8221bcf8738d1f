"""
Tournament Bracket Driver

Builds a single-elimination bracket out of ordinary online matches and
advances it as those matches finish.

Seeding: round 1 pairs participants uniformly at random; every later round
is created up front as empty slots. The winner of round r, match n moves
to round r+1, match ceil(n/2), as player1 when n is odd and player2 when
n is even. A slot's game is created as soon as both of its seats are known.

Advancement is idempotent: a bracket slot is closed with a conditional
UPDATE on its status, so a result observed by several clients is applied
once.
"""

import random
from typing import List, Optional, Union

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from arena.config import Config
from arena.constants import SubscriptionSlots
from arena.data_models.match import MatchSnapshot
from arena.data_models.results import TournamentRejected, TournamentRejection
from arena.database.base import BaseOperations
from arena.database.match_operations import MatchOperations
from arena.database.models import (
    OnlineMatch, Outcome, Tournament, TournamentParticipant, TournamentMatch,
    TournamentStatus, BracketMatchStatus, utcnow
)
from arena.database.ranking_operations import RankingOperations
from arena.services.change_feed import ChangeEvent, ChangeFeedSubscriber, MatchInserted, MatchUpdated
from arena.utils.logger import setup_logger

logger = setup_logger(__name__)


class TournamentDriver(BaseOperations):
    """Seeds and advances single-elimination brackets."""
    
    def __init__(self, database, matches: MatchOperations, rankings: RankingOperations,
                 rng: Optional[random.Random] = None):
        super().__init__(database)
        self.matches = matches
        self.rankings = rankings
        self.rng = rng or random.Random()
        self.logger = logger
    
    async def _load_tournament(self, session: AsyncSession, tournament_id: str) -> Optional[Tournament]:
        result = await session.execute(
            select(Tournament)
            .where(Tournament.id == tournament_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()
    
    def _start_game(self, session: AsyncSession, slot: TournamentMatch) -> OnlineMatch:
        """Create the playing match for a fully seeded slot (player1 is X)"""
        game = self.matches.new_seated_match(
            slot.player1_id, slot.player1_name,
            slot.player2_id, slot.player2_name
        )
        session.add(game)
        slot.game_id = game.id
        slot.status = BracketMatchStatus.PLAYING
        return game
    
    def _publish_games(self, games: List[OnlineMatch]):
        for game in games:
            self.matches.publish(MatchInserted(MatchSnapshot.from_row(game)))
    
    async def start_tournament(self, tournament_id: str,
                               requester_id: str) -> Union[List[TournamentMatch], TournamentRejected]:
        """
        Seed the bracket and start round 1.
        
        Only the creator may start, and only once the tournament is full.
        
        Args:
            tournament_id: Tournament to start
            requester_id: Player asking to start it
            
        Returns:
            All bracket slots ordered by round and match number, or
            TournamentRejected
        """
        async with self._get_session_context("start_tournament") as session:
            tournament = await self._load_tournament(session, tournament_id)
            if tournament is None:
                return TournamentRejected(tournament_id, TournamentRejection.NOT_FOUND)
            if tournament.created_by != requester_id:
                return TournamentRejected(tournament_id, TournamentRejection.NOT_CREATOR)
            if tournament.status != TournamentStatus.WAITING:
                return TournamentRejected(tournament_id, TournamentRejection.NOT_WAITING)
            
            claim = await session.execute(
                update(Tournament)
                .where(
                    Tournament.id == tournament_id,
                    Tournament.status == TournamentStatus.WAITING
                )
                .values(status=TournamentStatus.IN_PROGRESS, current_round=1, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if claim.rowcount == 0:
                await session.rollback()
                return TournamentRejected(tournament_id, TournamentRejection.NOT_WAITING)
            
            result = await session.execute(
                select(TournamentParticipant)
                .where(TournamentParticipant.tournament_id == tournament_id)
                .order_by(TournamentParticipant.seed)
            )
            participants = list(result.scalars().all())
            if len(participants) < tournament.max_players:
                await session.rollback()
                return TournamentRejected(tournament_id, TournamentRejection.NOT_ENOUGH_PLAYERS)
            
            self.rng.shuffle(participants)
            slots = []
            for i in range(0, len(participants), 2):
                slots.append(TournamentMatch(
                    tournament_id=tournament_id,
                    round=1,
                    match_number=i // 2 + 1,
                    player1_id=participants[i].player_id,
                    player1_name=participants[i].player_name,
                    player2_id=participants[i + 1].player_id,
                    player2_name=participants[i + 1].player_name,
                    status=BracketMatchStatus.PENDING
                ))
            
            # Empty placeholders for every later round
            for round_number in range(2, tournament.total_rounds + 1):
                for match_number in range(1, tournament.max_players // (2 ** round_number) + 1):
                    slots.append(TournamentMatch(
                        tournament_id=tournament_id,
                        round=round_number,
                        match_number=match_number,
                        status=BracketMatchStatus.PENDING
                    ))
            session.add_all(slots)
            
            games = [self._start_game(session, slot) for slot in slots if slot.round == 1]
            await session.commit()
        
        self.logger.info(f"Tournament {tournament_id} started: {len(games)} round 1 matches, "
                         f"{tournament.total_rounds} rounds")
        self._publish_games(games)
        return sorted(slots, key=lambda s: (s.round, s.match_number))
    
    async def record_game_result(self, game_id: str) -> Optional[TournamentMatch]:
        """
        Advance the bracket after one of its games finished.
        
        Marks the loser eliminated, moves the winner into the next round,
        starts the next game when both of its seats are filled and advances
        `current_round` once every slot of the round is finished. After the
        final, sets the tournament winner and hands out placement bonuses.
        A drawn game is replayed with seats swapped.
        
        Args:
            game_id: OnlineMatch id that finished
            
        Returns:
            The updated bracket slot, or None if the game is not a bracket
            game, is not finished, or was already applied
        """
        new_games = []
        async with self._get_session_context("record_game_result") as session:
            result = await session.execute(
                select(TournamentMatch).where(TournamentMatch.game_id == game_id)
            )
            slot = result.scalar_one_or_none()
            if slot is None:
                return None
            
            game_result = await session.execute(select(OnlineMatch).where(OnlineMatch.id == game_id))
            game = MatchSnapshot.from_row(game_result.scalar_one())
            if not game.is_finished:
                return None
            
            if game.outcome == Outcome.DRAW:
                replay = self.matches.new_seated_match(
                    game.player_o_id, game.player_o_name,
                    game.player_x_id, game.player_x_name
                )
                session.add(replay)
                relink = await session.execute(
                    update(TournamentMatch)
                    .where(
                        TournamentMatch.id == slot.id,
                        TournamentMatch.game_id == game_id,
                        TournamentMatch.status == BracketMatchStatus.PLAYING
                    )
                    .values(game_id=replay.id)
                    .execution_options(synchronize_session=False)
                )
                if relink.rowcount == 0:
                    await session.rollback()
                    return None
                await session.commit()
                self.logger.info(f"Bracket game {game_id} drawn, replaying as {replay.id}")
                self._publish_games([replay])
                return await self._reload_slot(slot.id)
            
            winner_id = game.winner_id
            winner_name = game.player_name_for(game.winner_seat)
            loser_id = game.loser_id
            
            claim = await session.execute(
                update(TournamentMatch)
                .where(
                    TournamentMatch.id == slot.id,
                    TournamentMatch.game_id == game_id,
                    TournamentMatch.status != BracketMatchStatus.FINISHED
                )
                .values(status=BracketMatchStatus.FINISHED, winner_id=winner_id)
                .execution_options(synchronize_session=False)
            )
            if claim.rowcount == 0:
                await session.rollback()
                return None
            
            await session.execute(
                update(TournamentParticipant)
                .where(
                    TournamentParticipant.tournament_id == slot.tournament_id,
                    TournamentParticipant.player_id == loser_id
                )
                .values(eliminated=True)
                .execution_options(synchronize_session=False)
            )
            
            tournament = await self._load_tournament(session, slot.tournament_id)
            if slot.round < tournament.total_rounds:
                new_games.extend(await self._advance_winner(session, slot, winner_id, winner_name))
                await self._maybe_complete_round(session, tournament, slot.round)
            else:
                await self._finish_tournament(session, tournament, winner_id, winner_name, loser_id)
            
            await session.commit()
        
        self.logger.info(f"Bracket slot R{slot.round}M{slot.match_number} of tournament "
                         f"{slot.tournament_id} won by {winner_id}")
        self._publish_games(new_games)
        return await self._reload_slot(slot.id)
    
    async def _advance_winner(self, session: AsyncSession, slot: TournamentMatch,
                              winner_id: str, winner_name: str) -> List[OnlineMatch]:
        """
        Seat the winner in the next round and start that slot's game once
        both seats are known.
        
        Both writes are conditional, so two sibling results committing at
        the same time fill one seat each and start exactly one game.
        """
        next_slot_filter = (
            TournamentMatch.tournament_id == slot.tournament_id,
            TournamentMatch.round == slot.round + 1,
            TournamentMatch.match_number == (slot.match_number + 1) // 2
        )
        if slot.match_number % 2 == 1:
            seat_column = TournamentMatch.player1_id
            seat_values = {'player1_id': winner_id, 'player1_name': winner_name}
        else:
            seat_column = TournamentMatch.player2_id
            seat_values = {'player2_id': winner_id, 'player2_name': winner_name}
        
        seated = await session.execute(
            update(TournamentMatch)
            .where(*next_slot_filter, seat_column.is_(None))
            .values(**seat_values)
            .execution_options(synchronize_session=False)
        )
        if seated.rowcount == 0:
            self.logger.warning(f"Next slot for R{slot.round}M{slot.match_number} of tournament "
                                f"{slot.tournament_id} already has that seat filled")
            return []
        
        result = await session.execute(
            select(TournamentMatch)
            .where(*next_slot_filter)
            .execution_options(populate_existing=True)
        )
        next_slot = result.scalar_one()
        if not next_slot.is_seeded or next_slot.game_id is not None:
            return []
        
        game = self.matches.new_seated_match(
            next_slot.player1_id, next_slot.player1_name,
            next_slot.player2_id, next_slot.player2_name
        )
        started = await session.execute(
            update(TournamentMatch)
            .where(
                TournamentMatch.id == next_slot.id,
                TournamentMatch.game_id.is_(None),
                TournamentMatch.player1_id.isnot(None),
                TournamentMatch.player2_id.isnot(None)
            )
            .values(game_id=game.id, status=BracketMatchStatus.PLAYING)
            .execution_options(synchronize_session=False)
        )
        if started.rowcount == 0:
            return []
        session.add(game)
        return [game]
    
    async def _maybe_complete_round(self, session: AsyncSession, tournament: Tournament, round_number: int):
        """Move current_round forward once every slot of the round is finished"""
        await session.flush()
        result = await session.execute(
            select(func.count(TournamentMatch.id))
            .where(
                TournamentMatch.tournament_id == tournament.id,
                TournamentMatch.round == round_number,
                TournamentMatch.status != BracketMatchStatus.FINISHED
            )
        )
        if result.scalar() > 0:
            return
        await session.execute(
            update(Tournament)
            .where(
                Tournament.id == tournament.id,
                Tournament.current_round == round_number
            )
            .values(current_round=round_number + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        self.logger.info(f"Tournament {tournament.id} advanced to round {round_number + 1}")
    
    async def _finish_tournament(self, session: AsyncSession, tournament: Tournament,
                                 winner_id: str, winner_name: str, runner_up_id: str):
        tournament.status = TournamentStatus.FINISHED
        tournament.winner_id = winner_id
        tournament.winner_name = winner_name
        tournament.updated_at = utcnow()
        
        result = await session.execute(
            select(TournamentParticipant)
            .where(TournamentParticipant.tournament_id == tournament.id)
            .order_by(TournamentParticipant.seed)
        )
        for participant in result.scalars().all():
            if participant.player_id == winner_id:
                bonus = Config.TOURNAMENT_WINNER_BONUS
            elif participant.player_id == runner_up_id:
                bonus = Config.TOURNAMENT_RUNNER_UP_BONUS
            else:
                bonus = Config.TOURNAMENT_PARTICIPANT_BONUS
            await self.rankings.award_bonus(participant.player_id, participant.player_name, bonus, session=session)
        
        self.logger.info(f"Tournament {tournament.id} won by {winner_id}")
    
    async def _reload_slot(self, slot_id: int) -> Optional[TournamentMatch]:
        async with self._get_session_context("reload_slot") as session:
            return await session.get(TournamentMatch, slot_id)
    
    # ============================================================================
    # Change feed wiring
    # ============================================================================
    
    async def handle_event(self, event: ChangeEvent):
        """Advance brackets whenever a match is reported finished"""
        if isinstance(event, MatchUpdated) and event.match.is_finished:
            await self.record_game_result(event.match.id)
    
    async def attach(self, subscriber: ChangeFeedSubscriber):
        """Follow every match change through the given subscriber"""
        await subscriber.watch(SubscriptionSlots.BRACKET, None, self.handle_event)

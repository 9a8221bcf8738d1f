"""
Match Operations Module

The match repository: the only component that mutates persisted match rows.

Every state-changing write is a conditional UPDATE (or DELETE) that carries
the preconditions the caller observed in its WHERE clause; `rowcount == 0`
means another writer got there first and the call reports a lost race
instead of overwriting. This gives at-most-one-winner semantics for
concurrent joins, moves and rematch acceptance without locking rows.

Committed changes are published to the ChangeFeed after commit.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional, Union

from sqlalchemy import select, update, delete as sql_delete
from sqlalchemy.ext.asyncio import AsyncSession

from arena.config import Config
from arena.constants import BoardConstants
from arena.data_models.match import (
    MatchSnapshot, encode_board, encode_history, encode_line
)
from arena.data_models.results import (
    JoinFailed, JoinFailureReason, MoveRejected, MoveRejection,
    RematchRejected, RematchRejection
)
from arena.database.base import BaseOperations
from arena.database.models import OnlineMatch, MatchStatus, Outcome, Seat, new_id, utcnow
from arena.operations.match_state_machine import MatchStateMachine
from arena.services.change_feed import ChangeFeed, MatchDeleted, MatchInserted, MatchUpdated
from arena.utils.exceptions import MatchDataCorrupted
from arena.utils.logger import setup_logger

logger = setup_logger(__name__)


@dataclass
class ExpiryReport:
    """Matches removed or forfeited by one expiry sweep"""
    deleted_waiting: List[str] = field(default_factory=list)
    forfeited: List[str] = field(default_factory=list)
    
    @property
    def total(self) -> int:
        return len(self.deleted_waiting) + len(self.forfeited)


class MatchOperations(BaseOperations):
    """
    Core service class for online match persistence.
    
    Returns MatchSnapshot copies; never hands out live ORM rows.
    """
    
    def __init__(self, database, feed: Optional[ChangeFeed] = None):
        """Initialize with database instance and optional change feed"""
        super().__init__(database)
        self.feed = feed
        self.logger = logger
    
    async def _load(self, session: AsyncSession, match_id: str) -> Optional[OnlineMatch]:
        result = await session.execute(
            select(OnlineMatch)
            .where(OnlineMatch.id == match_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()
    
    def _snapshot(self, row: OnlineMatch) -> MatchSnapshot:
        try:
            return MatchSnapshot.from_row(row)
        except MatchDataCorrupted as e:
            self.logger.error(str(e))
            raise
    
    def publish(self, event):
        if self.feed is not None:
            self.feed.publish(event)
    
    # ============================================================================
    # Creation
    # ============================================================================
    
    def new_seated_match(self, x_id: str, x_name: str, o_id: str, o_name: str) -> OnlineMatch:
        """Build an unsaved match that starts directly in the playing state"""
        now = utcnow()
        return OnlineMatch(
            id=new_id(),
            player_x_id=x_id,
            player_x_name=x_name,
            player_o_id=o_id,
            player_o_name=o_name,
            board=BoardConstants.EMPTY_BOARD,
            turn=Seat.X,
            status=MatchStatus.PLAYING,
            outcome=Outcome.NONE,
            move_history='[]',
            rated=False,
            version=1,
            created_at=now,
            updated_at=now
        )
    
    async def create_match(self, host_id: str, host_name: str) -> MatchSnapshot:
        """
        Insert a new waiting match with the host in seat X.
        
        Args:
            host_id: Player creating the match
            host_name: Display name for seat X
            
        Returns:
            MatchSnapshot of the new match
            
        Raises:
            StorageUnavailable: If the database cannot be reached
        """
        now = utcnow()
        async with self._get_session_context("create_match") as session:
            match = OnlineMatch(
                id=new_id(),
                player_x_id=host_id,
                player_x_name=host_name.strip(),
                board=BoardConstants.EMPTY_BOARD,
                turn=Seat.X,
                status=MatchStatus.WAITING,
                outcome=Outcome.NONE,
                move_history='[]',
                rated=False,
                version=1,
                created_at=now,
                updated_at=now
            )
            session.add(match)
            await session.commit()
            snapshot = self._snapshot(match)
        
        self.logger.info(f"Match {snapshot.id} created by {host_id}, waiting for opponent")
        self.publish(MatchInserted(snapshot))
        return snapshot
    
    async def create_seated_match(self, x_id: str, x_name: str, o_id: str, o_name: str) -> MatchSnapshot:
        """Insert a match with both seats filled, already playing"""
        async with self._get_session_context("create_seated_match") as session:
            match = self.new_seated_match(x_id, x_name, o_id, o_name)
            session.add(match)
            await session.commit()
            snapshot = self._snapshot(match)
        
        self.logger.info(f"Match {snapshot.id} created for {x_id} (X) vs {o_id} (O)")
        self.publish(MatchInserted(snapshot))
        return snapshot
    
    # ============================================================================
    # Conditional state changes
    # ============================================================================
    
    async def join_match(self, match_id: str, joiner_id: str,
                         joiner_name: str) -> Union[MatchSnapshot, JoinFailed]:
        """
        Take seat O of a waiting match.
        
        Succeeds only if the match is still waiting, seat O is empty and the
        joiner is not the host, all checked in the UPDATE's WHERE clause so
        two simultaneous joiners cannot both win.
        
        Args:
            match_id: Match to join
            joiner_id: Player taking seat O
            joiner_name: Display name for seat O
            
        Returns:
            MatchSnapshot in the playing state, or JoinFailed if the race was lost
        """
        now = utcnow()
        async with self._get_session_context("join_match") as session:
            stmt = (
                update(OnlineMatch)
                .where(
                    OnlineMatch.id == match_id,
                    OnlineMatch.status == MatchStatus.WAITING,
                    OnlineMatch.player_o_id.is_(None),
                    OnlineMatch.player_x_id != joiner_id
                )
                .values(
                    player_o_id=joiner_id,
                    player_o_name=joiner_name.strip(),
                    status=MatchStatus.PLAYING,
                    version=OnlineMatch.version + 1,
                    updated_at=now
                )
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            await session.commit()
            
            row = await self._load(session, match_id)
            if result.rowcount == 0:
                if row is None:
                    self.logger.warning(f"Join failed: match {match_id} not found")
                    return JoinFailed(match_id, JoinFailureReason.NOT_FOUND)
                current = self._snapshot(row)
                if current.player_x_id == joiner_id and current.status == MatchStatus.WAITING:
                    reason = JoinFailureReason.OWN_MATCH
                else:
                    reason = JoinFailureReason.ALREADY_TAKEN
                self.logger.warning(f"Join failed for {joiner_id} on match {match_id}: {reason.value}")
                return JoinFailed(match_id, reason, current)
            
            snapshot = self._snapshot(row)
        
        self.logger.info(f"Player {joiner_id} joined match {match_id} as O")
        self.publish(MatchUpdated(snapshot))
        return snapshot
    
    async def apply_move(self, match_id: str, seat: Seat, cell_index: int,
                         expected_turn: Seat) -> Union[MatchSnapshot, MoveRejected]:
        """
        Place a mark for a seat.
        
        The move is validated against the stored row, then written with an
        UPDATE conditioned on the row version, status and turn that were
        read. If another write landed in between, nothing is written and the
        caller gets MoveRejected(STALE) with the latest snapshot to resync
        from. Callers must not blindly retry.
        
        Args:
            match_id: Match being played
            seat: Seat placing the mark
            cell_index: Target cell, 0-8
            expected_turn: Turn the caller observed
            
        Returns:
            The new MatchSnapshot, or MoveRejected
        """
        async with self._get_session_context("apply_move") as session:
            row = await self._load(session, match_id)
            if row is None:
                return MoveRejected(match_id, MoveRejection.NOT_FOUND)
            current = self._snapshot(row)
            
            rejection = MatchStateMachine.validate_move(current, seat, cell_index, expected_turn)
            if rejection is not None:
                self.logger.warning(f"Move {seat.value}@{cell_index} rejected on match {match_id}: {rejection.value}")
                return MoveRejected(match_id, rejection, current)
            
            updated = MatchStateMachine.apply_move(current, seat, cell_index, utcnow())
            stmt = (
                update(OnlineMatch)
                .where(
                    OnlineMatch.id == match_id,
                    OnlineMatch.version == current.version,
                    OnlineMatch.status == MatchStatus.PLAYING,
                    OnlineMatch.turn == expected_turn
                )
                .values(
                    board=encode_board(updated.board),
                    turn=updated.turn,
                    status=updated.status,
                    outcome=updated.outcome,
                    winning_line=encode_line(updated.winning_line),
                    finish_reason=updated.finish_reason,
                    move_history=encode_history(updated.move_history),
                    version=updated.version,
                    updated_at=updated.updated_at
                )
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            await session.commit()
            
            if result.rowcount == 0:
                row = await self._load(session, match_id)
                latest = self._snapshot(row) if row is not None else None
                self.logger.warning(f"Move {seat.value}@{cell_index} lost the race on match {match_id}")
                return MoveRejected(match_id, MoveRejection.STALE, latest)
        
        if updated.is_finished:
            self.logger.info(f"Match {match_id} finished: {updated.outcome.value} ({updated.finish_reason})")
        self.publish(MatchUpdated(updated))
        return updated
    
    async def request_rematch(self, match_id: str,
                              player_id: str) -> Union[MatchSnapshot, RematchRejected]:
        """
        Ask for a rematch of a finished match.
        
        The first request is recorded with a write conditioned on no request
        being present. When the opponent has already asked, acceptance is a
        write conditioned on the match not having been rematched yet, done in
        the same transaction that inserts the new match with seats swapped.
        The old match keeps its board and outcome and links the new match
        through `rematch_match_id`.
        
        Args:
            match_id: Finished match
            player_id: Seated player asking for the rematch
            
        Returns:
            The old match with the request recorded, or the new match once
            both players asked, or RematchRejected
        """
        now = utcnow()
        async with self._get_session_context("request_rematch") as session:
            row = await self._load(session, match_id)
            if row is None:
                return RematchRejected(match_id, RematchRejection.NOT_FOUND)
            current = self._snapshot(row)
            
            if current.status != MatchStatus.FINISHED:
                return RematchRejected(match_id, RematchRejection.NOT_FINISHED, current)
            if current.seat_of(player_id) is None:
                return RematchRejected(match_id, RematchRejection.NOT_SEATED, current)
            if current.rematch_match_id:
                return await self._linked_rematch(session, current)
            
            if current.rematch_requested_by is None:
                stmt = (
                    update(OnlineMatch)
                    .where(
                        OnlineMatch.id == match_id,
                        OnlineMatch.status == MatchStatus.FINISHED,
                        OnlineMatch.rematch_requested_by.is_(None),
                        OnlineMatch.rematch_match_id.is_(None)
                    )
                    .values(
                        rematch_requested_by=player_id,
                        version=OnlineMatch.version + 1,
                        updated_at=now
                    )
                    .execution_options(synchronize_session=False)
                )
                result = await session.execute(stmt)
                await session.commit()
                
                current = self._snapshot(await self._load(session, match_id))
                if result.rowcount == 1:
                    self.logger.info(f"Player {player_id} requested a rematch of match {match_id}")
                    self.publish(MatchUpdated(current))
                    return current
                # The opponent asked first; fall through to acceptance
                if current.rematch_match_id:
                    return await self._linked_rematch(session, current)
            
            if current.rematch_requested_by == player_id:
                return current
            
            opponent_id = current.rematch_requested_by
            new_match = self.new_seated_match(
                current.player_o_id, current.player_o_name,
                current.player_x_id, current.player_x_name
            )
            session.add(new_match)
            stmt = (
                update(OnlineMatch)
                .where(
                    OnlineMatch.id == match_id,
                    OnlineMatch.rematch_requested_by == opponent_id,
                    OnlineMatch.rematch_match_id.is_(None)
                )
                .values(
                    rematch_match_id=new_match.id,
                    version=OnlineMatch.version + 1,
                    updated_at=now
                )
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            if result.rowcount == 0:
                await session.rollback()
                current = self._snapshot(await self._load(session, match_id))
                self.logger.warning(f"Rematch acceptance lost the race on match {match_id}")
                if current.rematch_match_id:
                    return await self._linked_rematch(session, current)
                return current
            await session.commit()
            
            rematch = self._snapshot(new_match)
            archived = self._snapshot(await self._load(session, match_id))
        
        self.logger.info(f"Rematch of {match_id} started as {rematch.id} with seats swapped")
        self.publish(MatchInserted(rematch))
        self.publish(MatchUpdated(archived))
        return rematch
    
    async def _linked_rematch(self, session: AsyncSession, current: MatchSnapshot) -> MatchSnapshot:
        row = await self._load(session, current.rematch_match_id)
        if row is None:
            raise MatchDataCorrupted(current.id, f"rematch {current.rematch_match_id} does not exist")
        return self._snapshot(row)
    
    async def delete_waiting_match(self, match_id: str, host_id: str) -> bool:
        """
        Delete a match nobody joined. Only the host may do this.
        
        Returns:
            True if the match was deleted
        """
        async with self._get_session_context("delete_waiting_match") as session:
            result = await session.execute(
                sql_delete(OnlineMatch)
                .where(
                    OnlineMatch.id == match_id,
                    OnlineMatch.status == MatchStatus.WAITING,
                    OnlineMatch.player_x_id == host_id
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        
        if result.rowcount == 0:
            self.logger.warning(f"Match {match_id} not deleted for {host_id}: not a waiting match they host")
            return False
        
        self.logger.info(f"Waiting match {match_id} deleted by host {host_id}")
        self.publish(MatchDeleted(match_id))
        return True
    
    # ============================================================================
    # Queries
    # ============================================================================
    
    async def get_match(self, match_id: str) -> Optional[MatchSnapshot]:
        async with self._get_session_context("get_match") as session:
            row = await self._load(session, match_id)
            return self._snapshot(row) if row is not None else None
    
    async def list_waiting_matches(self, excluding_player_id: Optional[str] = None,
                                   limit: int = None) -> List[MatchSnapshot]:
        """Most recent joinable matches, newest first"""
        query = select(OnlineMatch).where(OnlineMatch.status == MatchStatus.WAITING)
        if excluding_player_id is not None:
            query = query.where(OnlineMatch.player_x_id != excluding_player_id)
        query = query.order_by(OnlineMatch.created_at.desc()).limit(limit or Config.LOBBY_LIMIT)
        
        async with self._get_session_context("list_waiting_matches") as session:
            result = await session.execute(query)
            return [self._snapshot(row) for row in result.scalars().all()]
    
    async def list_live_matches(self, limit: int = 20) -> List[MatchSnapshot]:
        """Matches currently being played, for spectators"""
        async with self._get_session_context("list_live_matches") as session:
            result = await session.execute(
                select(OnlineMatch)
                .where(OnlineMatch.status == MatchStatus.PLAYING)
                .order_by(OnlineMatch.created_at.desc())
                .limit(limit)
            )
            return [self._snapshot(row) for row in result.scalars().all()]
    
    async def list_replayable_matches(self, limit: int = None) -> List[MatchSnapshot]:
        """Finished matches with at least one recorded move, newest first"""
        async with self._get_session_context("list_replayable_matches") as session:
            result = await session.execute(
                select(OnlineMatch)
                .where(
                    OnlineMatch.status == MatchStatus.FINISHED,
                    OnlineMatch.move_history != '[]'
                )
                .order_by(OnlineMatch.created_at.desc())
                .limit(limit or Config.REPLAY_LIMIT)
            )
            return [self._snapshot(row) for row in result.scalars().all()]
    
    # ============================================================================
    # Housekeeping
    # ============================================================================
    
    async def expire_stale_matches(self, now: Optional[datetime] = None) -> ExpiryReport:
        """
        Remove abandoned waiting matches and forfeit stalled playing matches.
        
        A waiting match older than WAITING_MATCH_TTL_MINUTES is deleted. A
        playing match with no accepted move for PLAYING_MATCH_TTL_MINUTES is
        finished in favour of the seat that is not on turn. Both writes are
        conditional, so a join or move that lands first wins.
        """
        now = now or utcnow()
        waiting_cutoff = now - timedelta(minutes=Config.WAITING_MATCH_TTL_MINUTES)
        playing_cutoff = now - timedelta(minutes=Config.PLAYING_MATCH_TTL_MINUTES)
        report = ExpiryReport()
        forfeited_snapshots = []
        
        async with self._get_session_context("expire_stale_matches") as session:
            result = await session.execute(
                select(OnlineMatch.id)
                .where(
                    OnlineMatch.status == MatchStatus.WAITING,
                    OnlineMatch.created_at < waiting_cutoff
                )
            )
            for match_id in result.scalars().all():
                deleted = await session.execute(
                    sql_delete(OnlineMatch)
                    .where(
                        OnlineMatch.id == match_id,
                        OnlineMatch.status == MatchStatus.WAITING
                    )
                    .execution_options(synchronize_session=False)
                )
                if deleted.rowcount:
                    report.deleted_waiting.append(match_id)
            await session.commit()
            
            result = await session.execute(
                select(OnlineMatch)
                .where(
                    OnlineMatch.status == MatchStatus.PLAYING,
                    OnlineMatch.updated_at < playing_cutoff
                )
            )
            stalled = [self._snapshot(row) for row in result.scalars().all()]
            for current in stalled:
                forfeited = MatchStateMachine.forfeit(current, now)
                updated = await session.execute(
                    update(OnlineMatch)
                    .where(
                        OnlineMatch.id == current.id,
                        OnlineMatch.version == current.version,
                        OnlineMatch.status == MatchStatus.PLAYING
                    )
                    .values(
                        status=forfeited.status,
                        outcome=forfeited.outcome,
                        finish_reason=forfeited.finish_reason,
                        version=forfeited.version,
                        updated_at=forfeited.updated_at
                    )
                    .execution_options(synchronize_session=False)
                )
                if updated.rowcount:
                    report.forfeited.append(current.id)
                    forfeited_snapshots.append(forfeited)
            await session.commit()
        
        for match_id in report.deleted_waiting:
            self.publish(MatchDeleted(match_id))
        for snapshot in forfeited_snapshots:
            self.publish(MatchUpdated(snapshot))
        if report.total:
            self.logger.info(
                f"Expired {len(report.deleted_waiting)} waiting and "
                f"forfeited {len(report.forfeited)} stalled matches"
            )
        return report

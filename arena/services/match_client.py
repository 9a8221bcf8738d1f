"""
Match client - the per-player application facade.

Exposes create / join / move / request_rematch / leave for the match the
player is currently in, and a stream of snapshots of that match.

Local state is two snapshots: the last authoritative one (`confirmed`) and
what the UI should show (`current`), which may carry one optimistic move.
Authoritative snapshots from the repository or the change feed are only
adopted when their version is newer; a rejected move rolls `current` back
to `confirmed` and resyncs. Every continuation after an await checks that
the response is still about the match the client is in.
"""

import asyncio
from typing import AsyncIterator, Callable, List, Optional

from arena.constants import SubscriptionSlots
from arena.data_models.match import MatchSnapshot
from arena.data_models.player import PlayerContext
from arena.data_models.ratings import MatchRatingOutcome
from arena.data_models.results import (
    ActionResult, ErrorKind, JoinFailed, MoveRejected, RematchRejected
)
from arena.database.match_operations import MatchOperations
from arena.database.models import MatchStatus, Seat, utcnow
from arena.database.ranking_operations import RankingOperations
from arena.operations.match_state_machine import MatchStateMachine
from arena.services.change_feed import ChangeEvent, ChangeFeedSubscriber, MatchDeleted
from arena.utils.exceptions import StorageUnavailable
from arena.utils.logger import setup_logger

logger = setup_logger(__name__)

SnapshotListener = Callable[[Optional[MatchSnapshot]], None]


class MatchClient:
    """One player's view of, and actions on, their current online match."""
    
    STALE_NOTICE = "Connection problem, showing the last known state. Refresh to retry."
    
    def __init__(self, context: PlayerContext, matches: MatchOperations,
                 rankings: RankingOperations, subscriber: ChangeFeedSubscriber):
        self.context = context
        self.matches = matches
        self.rankings = rankings
        self.subscriber = subscriber
        self._confirmed: Optional[MatchSnapshot] = None
        self._current: Optional[MatchSnapshot] = None
        self._pending_move: Optional[int] = None
        self._listeners: List[SnapshotListener] = []
        self.last_rating: Optional[MatchRatingOutcome] = None
        self.last_notice: str = ""
    
    # ============================================================================
    # State accessors
    # ============================================================================
    
    @property
    def player_id(self) -> str:
        return self.context.player_id
    
    @property
    def current(self) -> Optional[MatchSnapshot]:
        return self._current
    
    @property
    def confirmed(self) -> Optional[MatchSnapshot]:
        return self._confirmed
    
    @property
    def match_id(self) -> Optional[str]:
        return self._confirmed.id if self._confirmed else None
    
    @property
    def has_pending_move(self) -> bool:
        return self._pending_move is not None
    
    def my_seat(self) -> Optional[Seat]:
        return self._current.seat_of(self.player_id) if self._current else None
    
    def is_my_turn(self) -> bool:
        return self._current is not None and self._current.is_turn_of(self.player_id)
    
    def has_requested_rematch(self) -> bool:
        return self._current is not None and self._current.rematch_requested_by == self.player_id
    
    def opponent_requested_rematch(self) -> bool:
        if self._current is None or not self._current.rematch_requested_by:
            return False
        return self._current.rematch_requested_by != self.player_id
    
    # ============================================================================
    # Snapshot stream
    # ============================================================================
    
    def add_listener(self, listener: SnapshotListener):
        self._listeners.append(listener)
    
    def remove_listener(self, listener: SnapshotListener):
        if listener in self._listeners:
            self._listeners.remove(listener)
    
    async def snapshots(self) -> AsyncIterator[Optional[MatchSnapshot]]:
        """Yield the current snapshot, then every change to it (None when left)"""
        queue: asyncio.Queue = asyncio.Queue()
        self.add_listener(queue.put_nowait)
        try:
            yield self._current
            while True:
                yield await queue.get()
        finally:
            self.remove_listener(queue.put_nowait)
    
    def _notify(self):
        for listener in list(self._listeners):
            try:
                listener(self._current)
            except Exception:
                logger.exception("Snapshot listener failed")
    
    # ============================================================================
    # Local state transitions
    # ============================================================================
    
    async def _set_match(self, snapshot: Optional[MatchSnapshot]) -> bool:
        """
        Switch to another match (or none), moving the subscription with it.
        
        Returns False when the follow-up reload could not reach storage. The
        snapshot passed in is kept and `last_notice` says it may be stale.
        """
        previous_id = self.match_id
        self._confirmed = snapshot
        self._current = snapshot
        self._pending_move = None
        
        if snapshot is None:
            await self.subscriber.unwatch(SubscriptionSlots.CURRENT_MATCH)
            self._notify()
            return True
        
        if snapshot.id != previous_id or not self.subscriber.is_watching(SubscriptionSlots.CURRENT_MATCH):
            await self.subscriber.watch(SubscriptionSlots.CURRENT_MATCH, snapshot.id, self._on_match_event)
        self._notify()
        
        # Changes committed before the subscription existed are picked up here
        try:
            await self.resync()
        except StorageUnavailable as e:
            logger.warning(f"Could not reload match {snapshot.id}: {e}")
            self.last_notice = self.STALE_NOTICE
            return False
        if self._confirmed is not None and self._confirmed.is_finished:
            await self._rate(self._confirmed)
        return True
    
    def _adopt(self, snapshot: MatchSnapshot) -> bool:
        """Take an authoritative snapshot if it is newer than what we hold"""
        if snapshot.id != self.match_id or not snapshot.is_newer_than(self._confirmed):
            return False
        self._confirmed = snapshot
        self._current = snapshot
        self._pending_move = None
        self._notify()
        return True
    
    def _rollback(self):
        self._current = self._confirmed
        self._pending_move = None
        self._notify()
    
    async def resync(self):
        """
        Reload the current match from the repository.
        
        Follows the rematch link if one appeared. Raises StorageUnavailable
        once the retries are used up.
        """
        match_id = self.match_id
        if match_id is None:
            return
        latest = await self.matches.execute_with_retry(lambda: self.matches.get_match(match_id))
        if self.match_id != match_id:
            return
        if latest is None:
            self.last_notice = "Match was cancelled"
            await self._set_match(None)
            return
        self._adopt(latest)
        await self._follow_rematch(self._confirmed)
    
    async def _follow_rematch(self, snapshot: MatchSnapshot) -> bool:
        """Move to the rematch linked from `snapshot` when we hold a seat in it"""
        if not snapshot.rematch_match_id or snapshot.seat_of(self.player_id) is None:
            return False
        rematch_id = snapshot.rematch_match_id
        rematch = await self.matches.execute_with_retry(lambda: self.matches.get_match(rematch_id))
        if rematch is None or self.match_id != snapshot.id:
            return False
        self.last_notice = "Rematch started! Roles swapped."
        await self._set_match(rematch)
        return True
    
    async def _rate(self, snapshot: MatchSnapshot):
        """Apply the rating update; only the first observer's call takes effect"""
        if snapshot.rated:
            return
        try:
            outcome = await self.rankings.record_match_result(snapshot.id)
        except StorageUnavailable as e:
            logger.warning(f"Could not rate match {snapshot.id} yet: {e}")
            return
        if outcome is not None:
            self.last_rating = outcome
    
    # ============================================================================
    # Intents
    # ============================================================================
    
    def _storage_failure(self, e: StorageUnavailable) -> ActionResult:
        return ActionResult.failure(ErrorKind.STORAGE_UNAVAILABLE, e.user_message,
                                    match=self._current, retryable=True)
    
    def _entered(self, synced: bool, message: str = "") -> ActionResult:
        """Result of an intent that committed and then moved us to a match"""
        if synced:
            return ActionResult.success(self._current, message)
        return ActionResult(ok=True, match=self._current,
                            message=f"{message} {self.STALE_NOTICE}".strip(), retryable=True)
    
    def _check_can_start(self) -> Optional[ActionResult]:
        if not self.context.player_name.strip():
            return ActionResult.failure(ErrorKind.VALIDATION, "Please enter your name first")
        if self._confirmed is not None and not self._confirmed.is_finished:
            return ActionResult.failure(ErrorKind.VALIDATION, "Leave your current match first",
                                        match=self._current)
        return None
    
    async def create(self) -> ActionResult:
        """Host a new match and wait for an opponent"""
        invalid = self._check_can_start()
        if invalid:
            return invalid
        try:
            snapshot = await self.matches.create_match(self.player_id, self.context.player_name)
        except StorageUnavailable as e:
            return self._storage_failure(e)
        
        synced = await self._set_match(snapshot)
        return self._entered(synced, "Match created! Waiting for opponent...")
    
    async def join(self, match_id: str) -> ActionResult:
        """Take seat O of a waiting match"""
        invalid = self._check_can_start()
        if invalid:
            return invalid
        try:
            result = await self.matches.join_match(match_id, self.player_id, self.context.player_name)
        except StorageUnavailable as e:
            return self._storage_failure(e)
        
        if isinstance(result, JoinFailed):
            return ActionResult.failure(
                ErrorKind.JOIN_FAILED,
                "Failed to join match. It may have been taken, pick another match.",
                match=result.current
            )
        synced = await self._set_match(result)
        return self._entered(synced, "Joined match! You are O")
    
    async def move(self, cell_index: int) -> ActionResult:
        """
        Place a mark in a cell.
        
        Illegal moves are rejected locally without touching the repository.
        A legal move is shown optimistically, then reconciled with the
        authoritative result.
        """
        snapshot = self._current
        if snapshot is None:
            return ActionResult.failure(ErrorKind.VALIDATION, "You are not in a match")
        if self._pending_move is not None:
            return ActionResult.failure(ErrorKind.VALIDATION, "Previous move is still being sent",
                                        match=snapshot)
        rejection = MatchStateMachine.validate_player_move(snapshot, self.player_id, cell_index)
        if rejection is not None:
            return ActionResult.failure(ErrorKind.VALIDATION, f"Illegal move: {rejection.value}",
                                        match=snapshot)
        
        match_id = snapshot.id
        seat = snapshot.seat_of(self.player_id)
        expected_turn = snapshot.turn
        self._current = MatchStateMachine.apply_move(snapshot, seat, cell_index, utcnow())
        self._pending_move = cell_index
        self._notify()
        
        try:
            result = await self.matches.apply_move(match_id, seat, cell_index, expected_turn)
        except StorageUnavailable as e:
            if self.match_id == match_id:
                self._rollback()
            return self._storage_failure(e)
        
        if self.match_id != match_id:
            # Response is about a match we no longer show
            ok = not isinstance(result, MoveRejected)
            return ActionResult(ok=ok, match=self._current)
        
        if isinstance(result, MoveRejected):
            logger.warning(f"Move {cell_index} by {self.player_id} rejected: {result.reason.value}")
            self._rollback()
            if result.current is not None:
                self._adopt(result.current)
            else:
                try:
                    await self.resync()
                except StorageUnavailable as e:
                    logger.warning(f"Could not reload match {match_id}: {e}")
                    self.last_notice = self.STALE_NOTICE
            return ActionResult.failure(ErrorKind.MOVE_REJECTED,
                                        f"Move rejected: {result.reason.value}",
                                        match=self._current)
        
        if not self._adopt(result):
            # A newer version already arrived through the feed
            self._rollback()
        if result.is_finished:
            await self._rate(result)
        return ActionResult.success(self._current)
    
    async def request_rematch(self) -> ActionResult:
        """Ask for a rematch; once both players asked, a new match starts with seats swapped"""
        snapshot = self._confirmed
        if snapshot is None or snapshot.status != MatchStatus.FINISHED:
            return ActionResult.failure(ErrorKind.VALIDATION, "Match is not finished",
                                        match=self._current)
        if snapshot.seat_of(self.player_id) is None:
            return ActionResult.failure(ErrorKind.VALIDATION, "Spectators cannot request a rematch",
                                        match=self._current)
        
        match_id = snapshot.id
        try:
            result = await self.matches.request_rematch(match_id, self.player_id)
        except StorageUnavailable as e:
            return self._storage_failure(e)
        
        if self.match_id != match_id:
            return ActionResult(ok=not isinstance(result, RematchRejected), match=self._current)
        if isinstance(result, RematchRejected):
            return ActionResult.failure(ErrorKind.REMATCH_REJECTED,
                                        f"Rematch not possible: {result.reason.value}",
                                        match=self._current)
        
        if result.id != match_id:
            synced = await self._set_match(result)
            return self._entered(synced, "Rematch started! Roles swapped.")
        self._adopt(result)
        return ActionResult.success(self._current, "Rematch requested! Waiting for opponent...")
    
    async def leave(self) -> ActionResult:
        """Stop following the current match, deleting it if we host it and nobody joined"""
        snapshot = self._confirmed
        if snapshot is None:
            return ActionResult.success(None)
        
        if snapshot.status == MatchStatus.WAITING and snapshot.player_x_id == self.player_id:
            try:
                await self.matches.delete_waiting_match(snapshot.id, self.player_id)
            except StorageUnavailable as e:
                return self._storage_failure(e)
        
        if self.match_id == snapshot.id:
            await self._set_match(None)
        return ActionResult.success(None, "Left match")
    
    async def spectate(self, match_id: str) -> ActionResult:
        """Follow a match without holding a seat"""
        try:
            snapshot = await self.matches.get_match(match_id)
        except StorageUnavailable as e:
            return self._storage_failure(e)
        if snapshot is None:
            return ActionResult.failure(ErrorKind.VALIDATION, "Match not found")
        synced = await self._set_match(snapshot)
        return self._entered(synced)
    
    async def close(self):
        await self.subscriber.unwatch(SubscriptionSlots.CURRENT_MATCH)
    
    # ============================================================================
    # Change feed
    # ============================================================================
    
    async def _on_match_event(self, event: ChangeEvent):
        if event.match_id != self.match_id:
            return
        
        if isinstance(event, MatchDeleted):
            logger.info(f"Match {event.match_id} was cancelled")
            self.last_notice = "Match was cancelled"
            await self._set_match(None)
            return
        
        snapshot = event.match
        was_waiting = self._confirmed is not None and self._confirmed.status == MatchStatus.WAITING
        if not self._adopt(snapshot):
            return
        
        if was_waiting and snapshot.status == MatchStatus.PLAYING:
            self.last_notice = f"{snapshot.player_o_name} joined the match!"
        
        if snapshot.rematch_match_id and snapshot.seat_of(self.player_id) is not None:
            try:
                await self._follow_rematch(snapshot)
            except StorageUnavailable as e:
                logger.warning(f"Could not load rematch {snapshot.rematch_match_id}: {e}")
                self.last_notice = "Rematch started but could not be loaded. Refresh to retry."
            return
        
        if snapshot.is_finished:
            await self._rate(snapshot)

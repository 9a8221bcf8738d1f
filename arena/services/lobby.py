"""
Lobby list of joinable matches.

Eventually consistent: the list is re-fetched on demand and whenever the
change feed reports any insert, update or delete in the match collection.
"""

from typing import Callable, List, Optional

from arena.config import Config
from arena.constants import SubscriptionSlots
from arena.data_models.match import MatchSnapshot
from arena.database.match_operations import MatchOperations
from arena.services.change_feed import ChangeEvent, ChangeFeedSubscriber
from arena.utils.logger import setup_logger

logger = setup_logger(__name__)

LobbyListener = Callable[[List[MatchSnapshot]], None]


class LobbyList:
    """Most recent waiting matches, excluding the viewer's own."""
    
    def __init__(self, viewer_id: str, matches: MatchOperations,
                 subscriber: ChangeFeedSubscriber, limit: Optional[int] = None):
        self.viewer_id = viewer_id
        self.matches = matches
        self.subscriber = subscriber
        self.limit = limit or Config.LOBBY_LIMIT
        self._entries: List[MatchSnapshot] = []
        self._listeners: List[LobbyListener] = []
    
    @property
    def entries(self) -> List[MatchSnapshot]:
        return list(self._entries)
    
    def add_listener(self, listener: LobbyListener):
        self._listeners.append(listener)
    
    def remove_listener(self, listener: LobbyListener):
        if listener in self._listeners:
            self._listeners.remove(listener)
    
    async def refresh(self) -> List[MatchSnapshot]:
        """Re-fetch the waiting matches"""
        self._entries = await self.matches.execute_with_retry(
            lambda: self.matches.list_waiting_matches(self.viewer_id, self.limit)
        )
        logger.debug(f"Lobby for {self.viewer_id} refreshed: {len(self._entries)} open matches")
        for listener in list(self._listeners):
            try:
                listener(self.entries)
            except Exception:
                logger.exception("Lobby listener failed")
        return self.entries
    
    async def start(self):
        """Follow the match collection and load the first page"""
        await self.subscriber.watch(SubscriptionSlots.LOBBY, None, self._on_event)
        await self.refresh()
    
    async def stop(self):
        await self.subscriber.unwatch(SubscriptionSlots.LOBBY)
    
    async def _on_event(self, event: ChangeEvent):
        await self.refresh()

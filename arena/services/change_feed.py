"""
Change feed for match rows.

ChangeFeed is the row-level notification hub: the repository publishes an
event after every committed insert, update or delete, and each subscription
receives events for one match id (or for the whole collection) in the order
they were published.

ChangeFeedSubscriber is the client side: it owns at most one subscription
per named slot and pumps its events into an async handler. Watching a new
match in a slot tears the previous subscription down first.

Delivery is at-least-once and may be reordered across concurrent commits,
so consumers compare `MatchSnapshot.version` and ignore anything not newer
than what they hold.
"""

import asyncio
from collections import defaultdict
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, Set, Tuple, Union

from arena.data_models.match import MatchSnapshot
from arena.utils.logger import setup_logger

logger = setup_logger(__name__)


@dataclass(frozen=True)
class MatchInserted:
    match: MatchSnapshot
    
    @property
    def match_id(self) -> str:
        return self.match.id


@dataclass(frozen=True)
class MatchUpdated:
    match: MatchSnapshot
    
    @property
    def match_id(self) -> str:
        return self.match.id


@dataclass(frozen=True)
class MatchDeleted:
    match_id: str


ChangeEvent = Union[MatchInserted, MatchUpdated, MatchDeleted]
EventHandler = Callable[[ChangeEvent], Awaitable[None]]

_CLOSED = object()


class Subscription:
    """Async iterator over the events of one topic."""
    
    def __init__(self, feed: 'ChangeFeed', match_id: Optional[str]):
        self.feed = feed
        self.match_id = match_id
        self._queue: asyncio.Queue = asyncio.Queue()
        self.closed = False
    
    def _deliver(self, event: ChangeEvent):
        if not self.closed:
            self._queue.put_nowait(event)
    
    def close(self):
        if self.closed:
            return
        self.closed = True
        self.feed._remove(self)
        self._queue.put_nowait(_CLOSED)
    
    def __aiter__(self):
        return self
    
    async def __anext__(self) -> ChangeEvent:
        if self.closed:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED or self.closed:
            raise StopAsyncIteration
        return item


class ChangeFeed:
    """In-process fan-out of committed match changes."""
    
    def __init__(self):
        # None is the unfiltered collection topic
        self._subscriptions: Dict[Optional[str], Set[Subscription]] = defaultdict(set)
    
    def publish(self, event: ChangeEvent):
        """Deliver an event to the match topic and the collection topic"""
        targets = list(self._subscriptions.get(event.match_id, ())) + list(self._subscriptions.get(None, ()))
        logger.debug(f"Publishing {type(event).__name__} for match {event.match_id} to {len(targets)} subscribers")
        for subscription in targets:
            subscription._deliver(event)
    
    def subscribe(self, match_id: Optional[str] = None) -> Subscription:
        subscription = Subscription(self, match_id)
        self._subscriptions[match_id].add(subscription)
        return subscription
    
    def subscriber_count(self, match_id: Optional[str] = None) -> int:
        return len(self._subscriptions.get(match_id, ()))
    
    def _remove(self, subscription: Subscription):
        subscribers = self._subscriptions.get(subscription.match_id)
        if subscribers is not None:
            subscribers.discard(subscription)
            if not subscribers:
                del self._subscriptions[subscription.match_id]
    
    def close(self):
        """Close all subscriptions"""
        for subscribers in list(self._subscriptions.values()):
            for subscription in list(subscribers):
                subscription.close()
        self._subscriptions.clear()


class ChangeFeedSubscriber:
    """Keeps exactly one live subscription per slot for one client."""
    
    def __init__(self, feed: ChangeFeed):
        self.feed = feed
        self._active: Dict[str, Tuple[Subscription, asyncio.Task]] = {}
    
    def watched_id(self, slot: str) -> Optional[str]:
        entry = self._active.get(slot)
        return entry[0].match_id if entry else None
    
    def is_watching(self, slot: str) -> bool:
        return slot in self._active
    
    async def watch(self, slot: str, match_id: Optional[str], handler: EventHandler):
        """
        Subscribe a slot to a match id (None for the whole collection).
        
        Any previous subscription held by the slot is released first.
        """
        await self.unwatch(slot)
        subscription = self.feed.subscribe(match_id)
        task = asyncio.create_task(self._pump(slot, subscription, handler))
        self._active[slot] = (subscription, task)
        logger.debug(f"Slot '{slot}' now watching {match_id or 'all matches'}")
    
    async def unwatch(self, slot: str):
        entry = self._active.pop(slot, None)
        if entry is None:
            return
        subscription, task = entry
        subscription.close()
        if task is asyncio.current_task():
            # Called from inside the handler; the pump ends after it returns
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
    
    async def close(self):
        for slot in list(self._active):
            await self.unwatch(slot)
    
    async def _pump(self, slot: str, subscription: Subscription, handler: EventHandler):
        async for event in subscription:
            try:
                await handler(event)
            except Exception:
                logger.exception(f"Handler for slot '{slot}' failed on {type(event).__name__} "
                                 f"for match {event.match_id}")

"""
Event Broadcaster
Fans committed events out to the live streams attached to a session
"""
import asyncio
from typing import Dict, Set

from models.events import BaseEvent


class EventBroadcaster:
    """
    Per-session live subscriber registry

    Each subscriber owns an unbounded queue. publish() never blocks the
    driver; a None item tells subscribers the current turn has ended.
    """

    def __init__(self):
        self._subscribers: Dict[str, Set[asyncio.Queue]] = {}

    def subscribe(self, session_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.setdefault(session_id, set()).add(queue)
        return queue

    def unsubscribe(self, session_id: str, queue: asyncio.Queue) -> int:
        """
        Detach a subscriber

        Returns:
            Number of subscribers still attached to the session
        """
        queues = self._subscribers.get(session_id)
        if not queues:
            return 0
        queues.discard(queue)
        if not queues:
            del self._subscribers[session_id]
            return 0
        return len(queues)

    def subscriber_count(self, session_id: str) -> int:
        return len(self._subscribers.get(session_id, ()))

    def publish(self, event: BaseEvent):
        for queue in list(self._subscribers.get(event.session_id, ())):
            queue.put_nowait(event)

    def end_turn(self, session_id: str):
        """Wake every subscriber of the session with the end-of-turn marker"""
        for queue in list(self._subscribers.get(session_id, ())):
            queue.put_nowait(None)

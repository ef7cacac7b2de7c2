from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Set

from models import GameEvent

logger = logging.getLogger(__name__)

# System
CONNECTED = "CONNECTED"
HEARTBEAT = "HEARTBEAT"
ROOM_UPDATED = "ROOM_UPDATED"
# Players
PLAYER_JOINED = "PLAYER_JOINED"
PLAYER_LEFT = "PLAYER_LEFT"
PLAYER_READY_CHANGED = "PLAYER_READY_CHANGED"
# Teams
TEAM_SELECTED = "TEAM_SELECTED"
BETTING_PHASE_STARTED = "BETTING_PHASE_STARTED"
# Betting
BET_PLACED = "BET_PLACED"
BETTING_COMPLETE = "BETTING_COMPLETE"
# Cards
CARD_PLAYED = "CARD_PLAYED"
TRICK_COMPLETE = "TRICK_COMPLETE"
# Rounds
ROUND_COMPLETE = "ROUND_COMPLETE"
ROUND_SCORING_COMPLETE = "ROUND_SCORING_COMPLETE"
# Game state
GAME_STATE_UPDATED = "GAME_STATE_UPDATED"


class EventBus:
    """Per-room fan-out to connected listeners.

    Delivery is best effort: a listener whose queue is full misses the event
    and is expected to re-fetch the room state.
    """

    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self.listeners: Dict[str, Set[asyncio.Queue]] = {}

    def subscribe(self, room_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self.listeners.setdefault(room_id, set()).add(queue)
        logger.info("Listener subscribed to room %s (total=%s)", room_id, self.listener_count(room_id))
        return queue

    def unsubscribe(self, room_id: str, queue: asyncio.Queue) -> None:
        room_listeners = self.listeners.get(room_id)
        if not room_listeners:
            return
        room_listeners.discard(queue)
        if not room_listeners:
            self.listeners.pop(room_id, None)
        logger.info("Listener left room %s (total=%s)", room_id, self.listener_count(room_id))

    def listener_count(self, room_id: str) -> int:
        return len(self.listeners.get(room_id, ()))

    def publish(self, room_id: str, event: GameEvent) -> int:
        delivered = 0
        for queue in list(self.listeners.get(room_id, ())):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("Dropping %s for a slow listener in room %s", event.type, room_id)
                continue
            delivered += 1
        logger.debug("Published %s to room %s (%s listeners)", event.type, room_id, delivered)
        return delivered

    def emit(self, room_id: str, event_type: str, data: Optional[Dict[str, Any]] = None) -> int:
        return self.publish(room_id, GameEvent(type=event_type, room_id=room_id, data=data or {}))

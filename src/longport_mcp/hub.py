"""
Event Fan-out Hub
=================
Routes backend push events to every protocol session subscribed to the
event's channel. publish() only enqueues onto per-session bounded queues,
so a slow or dead session never holds up delivery to the others.
"""

import logging
from typing import Any, Dict, Optional

from .models import PushEvent
from .session import ProtocolSession
from .subscriptions import SubscriptionRegistry

logger = logging.getLogger("longport-mcp.hub")


class EventHub:

    def __init__(self, registry: SubscriptionRegistry):
        self.registry = registry
        self._sessions: Dict[str, ProtocolSession] = {}
        self.published = 0
        self.delivered = 0
        self.unrouted = 0

    def attach(self, session: ProtocolSession) -> None:
        self._sessions[session.id] = session

    def detach(self, session_id: str) -> Optional[ProtocolSession]:
        return self._sessions.pop(session_id, None)

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    def publish(self, event: PushEvent) -> int:
        """Fan an event out; returns the number of sessions it was queued for."""
        self.published += 1
        notification = event.to_notification()
        queued = 0
        for session_id in self.registry.subscribers(event.channel):
            session = self._sessions.get(session_id)
            if session is None or session.closed:
                continue
            if not session.enqueue(notification):
                logger.debug(f"Session {session_id} queue full; dropped oldest event")
            queued += 1

        if queued:
            self.delivered += queued
        else:
            self.unrouted += 1
        return queued

    def stats(self) -> Dict[str, Any]:
        return {
            "sessions": self.session_count,
            "published": self.published,
            "delivered": self.delivered,
            "unrouted": self.unrouted,
            "dropped": sum(s.dropped_events for s in self._sessions.values()),
        }

"""Protocol sessions and their bounded outbound notification queues."""

import asyncio
import logging
from collections import deque
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Deque, Dict, Optional
import uuid

from .config import DEFAULT_QUEUE_SIZE

logger = logging.getLogger("longport-mcp.session")

NotificationSender = Callable[[Dict[str, Any]], Awaitable[None]]


class ProtocolSession:
    """
    One connected MCP client.

    Notifications are queued and sent by the session's own delivery task.
    The queue is bounded: when full, the oldest pending notification is
    dropped and counted, so producers never block.
    """

    def __init__(self, transport: str = "stdio", max_pending: int = DEFAULT_QUEUE_SIZE,
                 session_id: Optional[str] = None):
        if max_pending < 1:
            raise ValueError("max_pending must be positive")
        self.id = session_id or uuid.uuid4().hex[:12]
        self.transport = transport
        self.max_pending = max_pending
        self.created_at = datetime.now(timezone.utc)
        self.closed = False
        self.dropped_events = 0
        self.sent_events = 0

        self._pending: Deque[Dict[str, Any]] = deque()
        self._wakeup = asyncio.Event()
        self._sender: Optional[NotificationSender] = None
        self._attached = asyncio.Event()

    def __repr__(self):
        return f"ProtocolSession(id={self.id!r}, transport={self.transport!r})"

    @property
    def pending(self) -> int:
        return len(self._pending)

    def attach(self, sender: NotificationSender) -> None:
        """Bind the function that writes a notification to the client."""
        if self._sender is None:
            self._sender = sender
            self._attached.set()

    def enqueue(self, notification: Dict[str, Any]) -> bool:
        """Queue a notification. Returns False if an older one was dropped."""
        if self.closed:
            return False
        kept = True
        if len(self._pending) >= self.max_pending:
            self._pending.popleft()
            self.dropped_events += 1
            kept = False
        self._pending.append(notification)
        self._wakeup.set()
        return kept

    async def run_delivery(self) -> None:
        """Drain the queue in order until the session closes."""
        await self._attached.wait()
        while not self.closed:
            await self._wakeup.wait()
            self._wakeup.clear()
            while self._pending and not self.closed:
                notification = self._pending.popleft()
                try:
                    await self._sender(notification)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.warning(f"Session {self.id}: notification delivery failed: {e}")
                    self.close()
                    return
                self.sent_events += 1

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._pending.clear()
        # Let a waiting delivery loop observe the close
        self._wakeup.set()
        self._attached.set()

    def stats(self) -> Dict[str, Any]:
        return {
            "session_id": self.id,
            "transport": self.transport,
            "created_at": self.created_at.isoformat(),
            "pending": self.pending,
            "sent_events": self.sent_events,
            "dropped_events": self.dropped_events,
            "closed": self.closed,
        }

"""
Backend capability interface.

This is the seam where a vendor SDK plugs in. The gateway core only talks
to a Backend; it never sees vendor types or wire formats. Implementations
must:

- return plain JSON-able data (dicts, lists, str, numbers) from call()
- raise AuthError / TransientBackendError / BackendRejectedError
- deliver push events and disconnect notices on the event loop thread
"""

from typing import Any, Callable, Dict, Hashable, Optional, Protocol

from .config import CredentialContext
from .models import Operation, PushEvent

PushHandler = Callable[[PushEvent], None]
DisconnectHandler = Callable[[Optional[Exception]], None]


class Backend(Protocol):

    def set_push_handler(self, handler: PushHandler) -> None:
        """Install the callback receiving every push event."""

    def set_disconnect_handler(self, handler: DisconnectHandler) -> None:
        """Install the callback fired when the connection drops unexpectedly."""

    async def connect(self, credentials: CredentialContext) -> None:
        """Open and authenticate the backend connection."""

    async def call(self, operation: Operation, params: Dict[str, Any]) -> Any:
        """Run one synchronous backend operation."""

    async def subscribe(self, channel: str) -> Hashable:
        """Start a push subscription and return its handle."""

    async def unsubscribe(self, handle: Hashable) -> None:
        """Stop a push subscription."""

    async def close(self) -> None:
        """Release the connection. Must be safe to call more than once."""

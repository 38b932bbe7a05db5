"""
Backend Client Adapter
======================
Owns the single BackendSession: connects lazily with bounded exponential
backoff, forwards synchronous calls with the read-only retry policy,
re-authenticates after an unexpected disconnect (DEGRADED) and replays
subscriptions through the reconnect hook.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Hashable, List, Optional

from .backend import Backend
from .config import CONNECT_ATTEMPTS, RETRY_FACTOR, RETRY_INITIAL_DELAY, CredentialContext
from .errors import AuthError, BackendError, GatewayError, TransientBackendError
from .models import BackendState, Operation, PushEvent

logger = logging.getLogger("longport-mcp.adapter")

PushListener = Callable[[PushEvent], None]
ReconnectHook = Callable[[], Awaitable[None]]
FatalHandler = Callable[[AuthError], None]


class BackendAdapter:
    """
    Gateway-side owner of the backend connection.

    State machine:
        DISCONNECTED -> CONNECTING -> AUTHENTICATED
        AUTHENTICATED -> DEGRADED (unexpected disconnect) -> AUTHENTICATED
        any -> CLOSED (shutdown or unrecoverable auth failure)
    """

    def __init__(self, backend: Backend, credentials: CredentialContext,
                 max_attempts: int = CONNECT_ATTEMPTS,
                 initial_delay: float = RETRY_INITIAL_DELAY,
                 backoff_factor: float = RETRY_FACTOR):
        self.backend = backend
        self.credentials = credentials
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.backoff_factor = backoff_factor

        self.state = BackendState.DISCONNECTED
        self.connect_attempts = 0
        self.reconnects = 0
        self.last_error: Optional[str] = None
        self.connected_at: Optional[datetime] = None
        self.fatal_error: Optional[AuthError] = None

        self._connect_task: Optional[asyncio.Task] = None
        self._listeners: List[PushListener] = []
        self._reconnect_hook: Optional[ReconnectHook] = None
        self._fatal_handler: Optional[FatalHandler] = None
        self._orphans = set()

        backend.set_push_handler(self._on_push)
        backend.set_disconnect_handler(self._on_disconnect)

    # ==========================================
    # Wiring
    # ==========================================

    def add_listener(self, listener: PushListener) -> None:
        self._listeners.append(listener)

    def set_reconnect_hook(self, hook: ReconnectHook) -> None:
        self._reconnect_hook = hook

    def set_fatal_handler(self, handler: FatalHandler) -> None:
        self._fatal_handler = handler

    def _on_push(self, event: PushEvent) -> None:
        for listener in self._listeners:
            try:
                listener(event)
            except Exception:
                logger.error(f"Push listener failed for {event.channel}", exc_info=True)

    # ==========================================
    # Connection
    # ==========================================

    async def ensure_connected(self) -> None:
        """Wait until AUTHENTICATED, starting a connect if nobody has yet."""
        if self.state is BackendState.AUTHENTICATED:
            return
        if self.state is BackendState.CLOSED:
            raise self.fatal_error or AuthError("Backend session is closed")
        if self._connect_task is None:
            self.state = BackendState.CONNECTING
            self._connect_task = asyncio.create_task(self._connect_loop(reconnect=False))
            self._connect_task.add_done_callback(self._discard_orphan)
        # Shielded: one caller going away must not abort the shared connect
        await asyncio.shield(self._connect_task)

    async def _connect_loop(self, reconnect: bool) -> None:
        delay = self.initial_delay
        try:
            for attempt in range(1, self.max_attempts + 1):
                if self.state is BackendState.CLOSED:
                    raise self.fatal_error or AuthError("Backend session is closed")
                self.connect_attempts += 1
                try:
                    await self.backend.connect(self.credentials)
                except GatewayError as e:
                    self.last_error = str(e)
                    logger.warning(f"Connect attempt {attempt}/{self.max_attempts} failed: {e}")
                    if attempt < self.max_attempts:
                        await asyncio.sleep(delay)
                        delay *= self.backoff_factor
                    continue

                self.state = BackendState.AUTHENTICATED
                self.connected_at = datetime.now(timezone.utc)
                self.last_error = None
                logger.info(f"Backend session authenticated (attempt {attempt})")
                if reconnect:
                    self.reconnects += 1
                    # Replay waits on channel workers that may themselves wait on
                    # this connect, so it must not hold the connect task open
                    replay = asyncio.get_running_loop().create_task(self._replay())
                    self._orphans.add(replay)
                    replay.add_done_callback(self._discard_orphan)
                return

            self._fail(AuthError(
                f"Unable to authenticate with backend after {self.max_attempts} attempts: "
                f"{self.last_error}"
            ))
            raise self.fatal_error
        finally:
            self._connect_task = None

    async def _replay(self) -> None:
        if self._reconnect_hook is None:
            return
        try:
            await self._reconnect_hook()
        except Exception:
            logger.error("Subscription replay after reconnect failed", exc_info=True)

    def _on_disconnect(self, error: Optional[Exception] = None) -> None:
        """Backend reported an unexpected disconnect."""
        if self.state is not BackendState.AUTHENTICATED:
            return
        self.state = BackendState.DEGRADED
        self.last_error = str(error) if error else "connection lost"
        logger.warning(f"Backend session degraded: {self.last_error}; reconnecting")
        self._connect_task = asyncio.get_running_loop().create_task(self._reconnect())
        self._connect_task.add_done_callback(self._discard_orphan)

    async def _reconnect(self) -> None:
        try:
            await self.backend.close()
        except Exception:
            logger.debug("Error while closing dropped backend connection", exc_info=True)
        await self._connect_loop(reconnect=True)

    def _fail(self, error: AuthError) -> None:
        if self.state is BackendState.CLOSED:
            return
        self.state = BackendState.CLOSED
        self.fatal_error = error
        self.last_error = str(error)
        logger.error(f"Backend session closed: {error}")
        if self._fatal_handler is not None:
            self._fatal_handler(error)

    async def close(self) -> None:
        """Shut the backend session down."""
        if self._connect_task is not None:
            self._connect_task.cancel()
        if self.state is not BackendState.CLOSED:
            self.state = BackendState.CLOSED
        await self.backend.close()
        logger.info("Backend session closed")

    # ==========================================
    # Calls
    # ==========================================

    async def _detached(self, awaitable: Awaitable[Any]) -> Any:
        """
        Run a backend request so that cancelling the caller does not cancel it.
        A cancelled caller's result is discarded.
        """
        task = asyncio.ensure_future(awaitable)
        self._orphans.add(task)
        task.add_done_callback(self._discard_orphan)
        return await asyncio.shield(task)

    def _discard_orphan(self, task: asyncio.Task) -> None:
        self._orphans.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"Backend request finished with {task.exception()!r}")

    async def call(self, operation: Operation, params: Optional[Dict[str, Any]] = None) -> Any:
        """
        Forward a synchronous operation to the backend.

        Read-only operations are retried once after a transient error.
        Write operations (orders) are never retried: a transient error is
        re-raised since the backend may or may not have accepted the order.
        """
        params = params or {}
        attempts = 2 if operation.read_only else 1

        for attempt in range(1, attempts + 1):
            await self.ensure_connected()
            try:
                return await self._detached(self.backend.call(operation, params))
            except AuthError as e:
                self._fail(e)
                raise
            except TransientBackendError as e:
                self.last_error = str(e)
                if attempt < attempts:
                    logger.warning(f"{operation.value} failed transiently ({e}); retrying once")
                    continue
                if not operation.read_only:
                    logger.error(f"{operation.value} outcome unknown after transient error: {e}")
                raise

    async def subscribe(self, channel: str) -> Hashable:
        await self.ensure_connected()
        try:
            return await self._detached(self.backend.subscribe(channel))
        except AuthError as e:
            self._fail(e)
            raise

    async def unsubscribe(self, handle: Hashable) -> None:
        if self.state is not BackendState.AUTHENTICATED:
            # The backend dropped every subscription with the connection
            if self.state is BackendState.DEGRADED:
                return
            await self.ensure_connected()
        try:
            await self._detached(self.backend.unsubscribe(handle))
        except AuthError as e:
            self._fail(e)
            raise

    def status(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "connect_attempts": self.connect_attempts,
            "reconnects": self.reconnects,
            "connected_at": self.connected_at.isoformat() if self.connected_at else None,
            "last_error": self.last_error,
        }

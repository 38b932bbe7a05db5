"""
Subscription Registry
=====================
Reference-counted push subscriptions shared by all protocol sessions.

Every channel has one worker task that owns the backend side of the
channel. add/remove calls only touch the in-memory subscriber sets and
wake the worker, so no lock is ever held across network I/O and the
backend subscribe/unsubscribe calls for a channel are strictly serialized.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Hashable, List, Optional, Protocol, Set, Tuple

from .config import CONNECT_ATTEMPTS, RETRY_FACTOR, RETRY_INITIAL_DELAY
from .errors import AuthError, GatewayError, SubscriptionError

logger = logging.getLogger("longport-mcp.subscriptions")


class SubscriptionBackend(Protocol):
    async def subscribe(self, channel: str) -> Hashable: ...

    async def unsubscribe(self, handle: Hashable) -> None: ...


class ChannelState(str, Enum):
    UNSUBSCRIBED = "unsubscribed"
    SUBSCRIBING = "subscribing"
    ACTIVE = "active"
    UNSUBSCRIBING = "unsubscribing"


@dataclass
class Subscription:
    """Backend subscription for one channel and the sessions sharing it."""
    channel: str
    subscribers: Set[str] = field(default_factory=set)
    state: ChannelState = ChannelState.UNSUBSCRIBED
    handle: Optional[Hashable] = None
    waiters: List[Tuple[str, asyncio.Future]] = field(default_factory=list)
    worker: Optional[asyncio.Task] = None
    # Set when the backend lost the subscription (reconnect) mid-transition
    lost: bool = False
    # Consecutive failed re-subscribes for subscribers already on the channel
    failures: int = 0


class SubscriptionRegistry:
    """Tracks which sessions listen to which channels."""

    def __init__(self, backend: SubscriptionBackend,
                 retry_attempts: int = CONNECT_ATTEMPTS,
                 retry_delay: float = RETRY_INITIAL_DELAY,
                 retry_factor: float = RETRY_FACTOR):
        self._backend = backend
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay
        self.retry_factor = retry_factor
        self._subscriptions: Dict[str, Subscription] = {}
        self._sessions: Dict[str, Set[str]] = {}

    # ==========================================
    # Queries
    # ==========================================

    def subscribers(self, channel: str) -> FrozenSet[str]:
        subscription = self._subscriptions.get(channel)
        if subscription is None:
            return frozenset()
        return frozenset(subscription.subscribers)

    def channels_for(self, session_id: str) -> FrozenSet[str]:
        return frozenset(self._sessions.get(session_id, ()))

    def active_channels(self) -> Set[str]:
        """Channels with a live backend subscription."""
        return {
            channel for channel, sub in self._subscriptions.items()
            if sub.state is ChannelState.ACTIVE
        }

    def state(self, channel: str) -> ChannelState:
        subscription = self._subscriptions.get(channel)
        return subscription.state if subscription else ChannelState.UNSUBSCRIBED

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        return {
            channel: {
                "state": sub.state.value,
                "subscribers": len(sub.subscribers),
            }
            for channel, sub in self._subscriptions.items()
        }

    # ==========================================
    # Mutations
    # ==========================================

    async def add_subscriber(self, session_id: str, channel: str) -> Hashable:
        """
        Add a session to a channel, subscribing on the backend if it is the
        first one. Returns once the channel is active.

        Raises:
            SubscriptionError: the backend refused the subscription
        """
        subscription = self._subscriptions.get(channel)
        if subscription is None:
            subscription = self._subscriptions[channel] = Subscription(channel)

        subscription.subscribers.add(session_id)
        self._sessions.setdefault(session_id, set()).add(channel)

        if subscription.state is ChannelState.ACTIVE and subscription.worker is None:
            return subscription.handle

        subscription.failures = 0
        waiter = asyncio.get_running_loop().create_future()
        subscription.waiters.append((session_id, waiter))
        self._wake(subscription)
        return await waiter

    async def remove_subscriber(self, session_id: str, channel: str) -> None:
        """Remove a session from a channel; the last one out unsubscribes."""
        subscription = self._subscriptions.get(channel)
        if subscription is None or session_id not in subscription.subscribers:
            return
        subscription.subscribers.discard(session_id)
        channels = self._sessions.get(session_id)
        if channels is not None:
            channels.discard(channel)
            if not channels:
                del self._sessions[session_id]

        worker = self._wake(subscription)
        if worker is not None:
            await asyncio.shield(worker)

    async def remove_session(self, session_id: str) -> None:
        """
        Remove a session from every channel it joined. Safe to call
        concurrently and repeatedly: the session index is popped once.
        """
        channels = self._sessions.pop(session_id, None)
        if not channels:
            return
        logger.info(f"Removing session {session_id} from {len(channels)} channel(s)")

        workers = []
        for channel in channels:
            subscription = self._subscriptions.get(channel)
            if subscription is None:
                continue
            subscription.subscribers.discard(session_id)
            worker = self._wake(subscription)
            if worker is not None:
                workers.append(worker)

        if workers:
            await asyncio.shield(asyncio.gather(*workers))

    async def resubscribe_all(self) -> None:
        """
        Re-issue every live subscription after the backend reconnected.
        The old backend handles died with the previous connection.
        """
        workers = []
        for subscription in list(self._subscriptions.values()):
            if not subscription.subscribers:
                if subscription.worker is None and subscription.state is not ChannelState.UNSUBSCRIBED:
                    # Nothing to replay; the old subscription is gone anyway
                    subscription.state = ChannelState.UNSUBSCRIBED
                    subscription.handle = None
                    self._discard_if_idle(subscription)
                continue
            subscription.failures = 0
            if subscription.worker is not None:
                subscription.lost = True
            else:
                subscription.state = ChannelState.UNSUBSCRIBED
                subscription.handle = None
            worker = self._wake(subscription)
            if worker is not None:
                workers.append(worker)

        logger.info(f"Replaying {len(workers)} subscription(s) after reconnect")
        if workers:
            await asyncio.gather(*workers)

    # ==========================================
    # Per-channel worker
    # ==========================================

    def _wake(self, subscription: Subscription) -> Optional[asyncio.Task]:
        if subscription.worker is None:
            if self._settled(subscription):
                self._discard_if_idle(subscription)
                return None
            subscription.worker = asyncio.get_running_loop().create_task(
                self._run_channel(subscription)
            )
        return subscription.worker

    @staticmethod
    def _settled(subscription: Subscription) -> bool:
        if subscription.subscribers:
            return subscription.state is ChannelState.ACTIVE and not subscription.waiters
        return subscription.state is ChannelState.UNSUBSCRIBED

    def _discard_if_idle(self, subscription: Subscription) -> None:
        if (not subscription.subscribers and not subscription.waiters
                and subscription.worker is None
                and subscription.state is ChannelState.UNSUBSCRIBED
                and self._subscriptions.get(subscription.channel) is subscription):
            del self._subscriptions[subscription.channel]

    async def _run_channel(self, subscription: Subscription) -> None:
        channel = subscription.channel
        try:
            while True:
                self._settle_transition(subscription)
                if subscription.lost:
                    subscription.lost = False
                    if subscription.state is ChannelState.ACTIVE:
                        subscription.state = ChannelState.UNSUBSCRIBED
                        subscription.handle = None

                if subscription.subscribers and subscription.state is ChannelState.UNSUBSCRIBED:
                    subscription.state = ChannelState.SUBSCRIBING
                    try:
                        handle = await self._backend.subscribe(channel)
                    except Exception as e:
                        subscription.state = ChannelState.UNSUBSCRIBED
                        self._fail_waiters(subscription, e)
                        if subscription.subscribers:
                            # Replayed channel: its subscribers never asked again
                            if not await self._retry_later(subscription, e):
                                break
                        continue
                    subscription.handle = handle
                    subscription.state = ChannelState.ACTIVE
                    subscription.failures = 0
                    logger.info(f"Channel {channel} active")

                elif not subscription.subscribers and subscription.state is ChannelState.ACTIVE:
                    subscription.state = ChannelState.UNSUBSCRIBING
                    try:
                        await self._backend.unsubscribe(subscription.handle)
                    except Exception as e:
                        # Keep it; the next mutation or replay retries
                        subscription.state = ChannelState.ACTIVE
                        logger.warning(f"Backend unsubscribe for {channel} failed: {e}")
                        self._resolve_waiters(subscription)
                        break
                    subscription.handle = None
                    subscription.state = ChannelState.UNSUBSCRIBED
                    logger.info(f"Channel {channel} released")

                else:
                    if subscription.state is ChannelState.ACTIVE:
                        self._resolve_waiters(subscription)
                    # Nothing left to do on the backend
                    if subscription.subscribers and subscription.waiters:
                        self._fail_waiters(subscription, SubscriptionError(channel, "not established"))
                    else:
                        self._resolve_waiters(subscription)
                    break
        finally:
            subscription.worker = None
            self._settle_transition(subscription)
            if subscription.waiters:
                # Worker cancelled mid-call
                self._fail_waiters(subscription, SubscriptionError(channel, "subscription worker stopped"))
            self._discard_if_idle(subscription)

    @staticmethod
    def _settle_transition(subscription: Subscription) -> None:
        """Roll back a transitional state whose backend call never completed."""
        if subscription.state is ChannelState.SUBSCRIBING:
            subscription.state = ChannelState.UNSUBSCRIBED
            subscription.handle = None
        elif subscription.state is ChannelState.UNSUBSCRIBING:
            subscription.state = ChannelState.ACTIVE

    async def _retry_later(self, subscription: Subscription, error: Exception) -> bool:
        """Back off before re-subscribing a lost channel. False once attempts run out."""
        channel = subscription.channel
        subscription.failures += 1
        if isinstance(error, AuthError) or subscription.failures > self.retry_attempts:
            logger.error(f"Could not re-establish {channel} after "
                         f"{subscription.failures} attempt(s): {error}")
            return False
        delay = self.retry_delay * self.retry_factor ** (subscription.failures - 1)
        logger.warning(f"Re-subscribe of {channel} failed ({error}); retrying in {delay:.1f}s")
        await asyncio.sleep(delay)
        return True

    def _resolve_waiters(self, subscription: Subscription) -> None:
        waiters, subscription.waiters = subscription.waiters, []
        for _, waiter in waiters:
            if not waiter.done():
                waiter.set_result(subscription.handle)

    def _fail_waiters(self, subscription: Subscription, error: Exception) -> None:
        """Reject every pending subscriber; other channels are untouched."""
        channel = subscription.channel
        if isinstance(error, (AuthError, SubscriptionError)):
            failure: GatewayError = error
        elif isinstance(error, GatewayError):
            failure = SubscriptionError(channel, str(error))
            logger.warning(f"Backend refused subscription to {channel}: {error}")
        else:
            failure = SubscriptionError(channel, str(error) or type(error).__name__)
            logger.error(f"Unexpected error subscribing to {channel}: {error!r}")

        waiters, subscription.waiters = subscription.waiters, []
        for session_id, waiter in waiters:
            subscription.subscribers.discard(session_id)
            channels = self._sessions.get(session_id)
            if channels is not None:
                channels.discard(channel)
                if not channels:
                    del self._sessions[session_id]
            if not waiter.done():
                waiter.set_exception(failure)

"""
change_feed.py — "Something changed" notifications for alert viewers.

The feed is a wake-up signal, not a diff: listeners learn that alerts or
evidence changed and re-fetch. Stores publish after every committed
mutation; sync subscriptions listen and invalidate their view.

Backends:

    LocalChangeFeed   in-process fan-out (single worker, tests)
    RedisChangeFeed   redis pub/sub, so writes made by one API worker
                      wake subscribers held by every other worker

Listeners are plain callables taking the reason string. They run on the
event loop and must not block.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, List, Optional, Protocol, Sequence

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError

from backend.app.core.config import settings

logger = logging.getLogger(__name__)

Listener = Callable[[str], None]
Unsubscribe = Callable[[], None]

REASON_ALERTS = "alerts"
REASON_EVIDENCE = "evidence"
REASON_IDENTITIES = "identities"

# Seconds to wait before each successive resubscribe attempt
RECONNECT_DELAYS = (0.5, 1.0, 2.0, 5.0, 10.0)


class ChangeFeed(Protocol):
    def subscribe(self, listener: Listener) -> Unsubscribe: ...

    async def publish(self, reason: str = REASON_ALERTS) -> None: ...

    async def close(self) -> None: ...


class _ListenerRegistry:
    """Shared fan-out bookkeeping for both backends."""

    def __init__(self) -> None:
        self._listeners: List[Listener] = []

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def subscribe(self, listener: Listener) -> Unsubscribe:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            # Idempotent: a second call is a no-op
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _dispatch(self, reason: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(reason)
            except Exception:
                logger.exception("Change listener %r failed for reason=%s", listener, reason)


class LocalChangeFeed(_ListenerRegistry):
    """In-process feed: publish() calls every listener directly."""

    def __init__(self) -> None:
        super().__init__()
        self.published: int = 0

    async def publish(self, reason: str = REASON_ALERTS) -> None:
        self.published += 1
        self._dispatch(reason)

    async def close(self) -> None:
        self._listeners.clear()


class RedisChangeFeed(_ListenerRegistry):
    """
    Cross-process feed over a redis pub/sub channel.

    publish() sends the reason to the channel; a reader task receives
    every message (including our own) and fans it out to local listeners.

    Redis being down never fails a write. A failed publish is logged and
    dispatched to local listeners only; other workers catch up on their
    next poll. A dropped subscription is re-established with backoff, and
    listeners get one REASON_ALERTS wake-up after each reconnect because
    messages sent meanwhile are lost.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        channel: Optional[str] = None,
        client: Any = None,
        reconnect_delays: Sequence[float] = RECONNECT_DELAYS,
    ) -> None:
        super().__init__()
        self._url = url or settings.REDIS_URL
        self._channel = channel or settings.CHANGE_FEED_CHANNEL
        self._client = client
        self._reconnect_delays = tuple(reconnect_delays) or (0.0,)
        self._pubsub: Any = None
        self._reader: Optional[asyncio.Task] = None
        self._closing = False

    @property
    def connected(self) -> bool:
        return self._pubsub is not None and self._reader is not None and not self._reader.done()

    async def start(self) -> None:
        if self._reader is not None:
            return
        if self._client is None:
            self._client = aioredis.from_url(
                self._url,
                encoding="utf-8",
                decode_responses=True,
            )
        self._closing = False
        self._reader = asyncio.create_task(self._read_loop())

    async def _connect(self) -> None:
        self._pubsub = self._client.pubsub()
        await self._pubsub.subscribe(self._channel)
        logger.info("Change feed subscribed to redis channel %s", self._channel)

    async def _drop_pubsub(self) -> None:
        pubsub, self._pubsub = self._pubsub, None
        if pubsub is None:
            return
        try:
            await pubsub.aclose()
        except RedisError as exc:
            logger.debug("Ignoring error while closing pub/sub: %s", exc)

    async def _read_loop(self) -> None:
        failures = 0
        while not self._closing:
            try:
                await self._connect()
                if failures:
                    logger.info("Change feed reconnected after %d failure(s)", failures)
                    self._dispatch(REASON_ALERTS)
                failures = 0
                async for message in self._pubsub.listen():
                    if message.get("type") != "message":
                        continue
                    reason = message.get("data") or REASON_ALERTS
                    self._dispatch(str(reason))
                if self._closing:
                    return
                raise RedisConnectionError("pub/sub stream ended")
            except (RedisError, OSError) as exc:
                delay = self._reconnect_delays[min(failures, len(self._reconnect_delays) - 1)]
                failures += 1
                logger.warning(
                    "Change feed lost redis channel %s (%s); retrying in %.1fs",
                    self._channel, exc, delay,
                )
                await self._drop_pubsub()
                await asyncio.sleep(delay)

    async def publish(self, reason: str = REASON_ALERTS) -> None:
        if self._client is None:
            await self.start()
        try:
            await self._client.publish(self._channel, reason)
        except RedisError as exc:
            logger.warning(
                "Change notification '%s' not sent to redis: %s (local listeners only)",
                reason, exc,
            )
            self._dispatch(reason)

    async def close(self) -> None:
        self._closing = True
        self._listeners.clear()
        if self._reader is not None:
            self._reader.cancel()
            await asyncio.wait({self._reader})
            self._reader = None
        await self._drop_pubsub()
        if self._client is not None:
            try:
                await self._client.aclose()
            except RedisError as exc:
                logger.debug("Ignoring error while closing redis client: %s", exc)
            self._client = None
        logger.info("Change feed closed")


def build_change_feed(backend: Optional[str] = None) -> ChangeFeed:
    """Construct the configured feed backend (not yet started)."""
    backend = (backend or settings.CHANGE_FEED_BACKEND).lower()
    if backend == "redis":
        return RedisChangeFeed()
    if backend == "local":
        return LocalChangeFeed()
    raise ValueError(f"Unknown change feed backend: {backend!r}")

import asyncio
from typing import Awaitable, Callable, Dict, List, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError
from loguru import logger

from marketchat.config import get_settings


OnMessage = Callable[[str], Awaitable[None]]


class LocalBus:
    """In-process fanout used when no redis is configured.

    ``publish`` awaits every subscriber before returning, so an inserting
    client sees its own echo before the insert call completes.
    """

    enabled = False

    def __init__(self) -> None:
        self._subscribers: Dict[str, List[OnMessage]] = {}

    async def publish(self, channel: str, message: str) -> None:
        for on_message in list(self._subscribers.get(channel, [])):
            try:
                await on_message(message)
            except Exception:
                logger.exception("Subscriber on {} failed", channel)

    async def subscribe(self, channel: str, on_message: OnMessage):
        subscribers = self._subscribers.setdefault(channel, [])
        subscribers.append(on_message)
        bus = self

        class _Sub:
            def __init__(self_inner) -> None:
                self_inner._stopped = asyncio.Event()

            async def run(self_inner):
                await self_inner._stopped.wait()

            async def cancel(self_inner):
                try:
                    bus._subscribers.get(channel, []).remove(on_message)
                except ValueError:
                    pass
                self_inner._stopped.set()

        return _Sub()

    async def close(self) -> None:
        self._subscribers.clear()


class RedisBus:

    enabled = True

    def __init__(self, url: str) -> None:
        self._redis = redis.from_url(url)

    async def publish(self, channel: str, message: str) -> None:
        await self._redis.publish(channel, message)

    async def subscribe(self, channel: str, on_message: OnMessage):
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(channel)

        class _Sub:
            _running = True

            async def run(self_inner):
                while self_inner._running:
                    try:
                        msg = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                    except RedisError as exc:
                        logger.warning("Redis subscription {} interrupted: {!r}", channel, exc)
                        await asyncio.sleep(0.5)
                        continue
                    if msg and msg.get("type") == "message":
                        data = msg.get("data")
                        if isinstance(data, bytes):
                            data = data.decode("utf-8")
                        try:
                            await on_message(data)
                        except Exception:
                            logger.exception("Subscriber on {} failed", channel)

            async def cancel(self_inner):
                self_inner._running = False
                try:
                    await pubsub.unsubscribe(channel)
                    await pubsub.aclose()
                except RedisError as exc:
                    logger.warning("Could not unsubscribe from {}: {!r}", channel, exc)

        return _Sub()

    async def close(self) -> None:
        await self._redis.aclose()


_bus = None


async def get_bus():
    global _bus
    if _bus is not None:
        return _bus
    url: Optional[str] = get_settings().redis_url
    if url:
        _bus = RedisBus(url)
        logger.info("Realtime feed backed by redis")
    else:
        _bus = LocalBus()
        logger.info("Realtime feed running in-process (REDIS_URL not set)")
    return _bus


async def close_bus() -> None:
    global _bus
    if _bus is not None:
        await _bus.close()
        _bus = None

"""Row-insert change feed on top of the realtime bus.

Each table has a table-wide bus channel plus one channel per value of its
routed columns.  Subscribers register a filter (column -> expected value)
and only receive inserts whose row matches every entry.  A filter on a
routed column listens on that value's channel, so a redis subscriber only
receives the rows it asked for.
Delivery is at-least-once and includes the inserting client itself.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple

from loguru import logger
from pydantic import BaseModel
from redis.exceptions import RedisError

from marketchat.utils.realtime_bus import get_bus


OnInsert = Callable[[Dict[str, Any]], Awaitable[None]]


class InsertEvent(BaseModel):

    table: str
    row: Dict[str, Any]


# columns that get their own channel per value
ROUTED_COLUMNS: Dict[str, Tuple[str, ...]] = {
    "conversations": ("participant_a", "participant_b"),
    "messages": ("conversation_id",),
}


def channel_for(table: str, column: Optional[str] = None, value: Any = None) -> str:
    if column is None:
        return f"feed:{table}"
    return f"feed:{table}:{column}:{value}"


def subscription_channel(table: str, row_filter: Mapping[str, Any]) -> str:
    for column in ROUTED_COLUMNS.get(table, ()):
        if column in row_filter:
            return channel_for(table, column, row_filter[column])
    return channel_for(table)


def row_matches(row: Mapping[str, Any], row_filter: Mapping[str, Any]) -> bool:
    return all(str(row.get(column)) == str(value) for column, value in row_filter.items())


class Subscription:

    def __init__(self, table: str, row_filter: Mapping[str, Any], sub, task: "asyncio.Task[None]") -> None:
        self.table = table
        self.row_filter = dict(row_filter)
        self._sub = sub
        self._task = task
        self.active = True

    async def cancel(self) -> None:
        if not self.active:
            return
        self.active = False
        await self._sub.cancel()
        self._task.cancel()


class ChangeFeed:

    def __init__(self, bus) -> None:
        self._bus = bus

    async def publish_insert(self, table: str, row: Mapping[str, Any]) -> None:
        event = InsertEvent(table=table, row=dict(row))
        payload = event.model_dump_json()
        channels = [channel_for(table)]
        channels += [
            channel_for(table, column, row[column]) for column in ROUTED_COLUMNS.get(table, ()) if row.get(column) is not None
        ]
        try:
            for channel in channels:
                await self._bus.publish(channel, payload)
        except RedisError as exc:
            # the row is already stored; subscribers catch up on their next load
            logger.warning("Could not publish {} insert {}: {!r}", table, row.get("_id"), exc)

    async def subscribe(self, table: str, row_filter: Optional[Mapping[str, Any]], on_insert: OnInsert) -> Subscription:
        row_filter = dict(row_filter or {})
        subscription: Optional[Subscription] = None

        async def _on_message(raw: str) -> None:
            if subscription is not None and not subscription.active:
                return
            event = InsertEvent.model_validate_json(raw)
            if event.table != table or not row_matches(event.row, row_filter):
                return
            await on_insert(event.row)

        sub = await self._bus.subscribe(subscription_channel(table, row_filter), _on_message)
        task = asyncio.create_task(sub.run())
        subscription = Subscription(table, row_filter, sub, task)
        logger.debug("Subscribed to {} inserts with filter {}", table, row_filter)
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        await subscription.cancel()
        logger.debug("Unsubscribed from {} inserts with filter {}", subscription.table, subscription.row_filter)


_feed: Optional[ChangeFeed] = None


async def get_feed() -> ChangeFeed:
    global _feed
    if _feed is None:
        _feed = ChangeFeed(await get_bus())
    return _feed


def reset_feed() -> None:
    global _feed
    _feed = None

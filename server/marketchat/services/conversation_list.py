import asyncio
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from marketchat.repositories.conversation_repository import ConversationRepository
from marketchat.repositories.message_repository import MessageRepository
from marketchat.repositories.profile_repository import ProfileRepository
from marketchat.schemas.conversation import ConversationListEntry, LastMessage, Profile
from marketchat.services.directory import ConversationDirectory
from marketchat.utils.change_feed import ChangeFeed, Subscription
from marketchat.utils.errors import classify_store_errors
from marketchat.utils.timefmt import ensure_utc, time_ago


Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConversationListViewModel:
    """All conversations of one actor with counterpart and last message.

    Any relevant insert on the feed triggers a full reload.  Message inserts
    are followed per listed conversation, so the view model never hears
    about conversations it does not show.  Reloads are numbered so a slow,
    older reload can never overwrite a newer one, and results arriving
    after ``stop`` are dropped.
    """

    def __init__(
        self,
        actor_id: str,
        conversation_repo: ConversationRepository,
        message_repo: MessageRepository,
        profile_repo: ProfileRepository,
        directory: ConversationDirectory,
        feed: Optional[ChangeFeed] = None,
        order: str = "activity",
        clock: Clock = _utcnow,
    ) -> None:
        self.actor_id = actor_id
        self._conversation_repo = conversation_repo
        self._message_repo = message_repo
        self._profile_repo = profile_repo
        self._directory = directory
        self._feed = feed
        self._order = order
        self._clock = clock

        self.entries: List[ConversationListEntry] = []
        self._generation = 0
        self._subscriptions: List[Subscription] = []
        self._message_subscriptions: Dict[str, Subscription] = {}
        self._sync_lock = asyncio.Lock()
        self._active = False

    async def load_conversations(self) -> List[ConversationListEntry]:
        self._generation += 1
        generation = self._generation
        with classify_store_errors("load conversations"):
            docs = await self._conversation_repo.list_for_user(self.actor_id)
            entries = await asyncio.gather(*(self._build_entry(doc) for doc in docs))
        entries = self._sort(list(entries))
        if generation == self._generation:
            self.entries = entries
            if self._active:
                await self._follow_listed_conversations()
        return entries

    async def _build_entry(self, doc: Dict[str, Any]) -> ConversationListEntry:
        counterpart_id = doc["participant_b"] if doc["participant_a"] == self.actor_id else doc["participant_a"]
        profile, latest = await asyncio.gather(
            self._profile_repo.get_profile(counterpart_id),
            self._message_repo.get_latest(doc["_id"]),
        )
        created_at = ensure_utc(doc["created_at"])
        last_message = None
        if latest:
            last_message = LastMessage(
                id=str(latest["_id"]),
                content=latest["content"],
                sent_at=ensure_utc(latest["sent_at"]),
                sender_id=latest["sender_id"],
            )
        return ConversationListEntry(
            id=doc["_id"],
            counterpart=profile or Profile(id=counterpart_id),
            created_at=created_at,
            last_message=last_message,
            last_activity_at=max(created_at, last_message.sent_at) if last_message else created_at,
            time_label=time_ago(last_message.sent_at, self._clock()) if last_message else None,
            is_own_last_message=bool(last_message and last_message.sender_id == self.actor_id),
        )

    def _sort(self, entries: List[ConversationListEntry]) -> List[ConversationListEntry]:
        if self._order == "created":
            return sorted(entries, key=lambda e: e.created_at, reverse=True)
        return sorted(entries, key=lambda e: e.last_activity_at, reverse=True)

    async def open_or_create_by_counterpart(self, counterpart_id: str) -> str:
        for entry in self.entries:
            if entry.counterpart.id == counterpart_id:
                return entry.id
        return await self._directory.resolve_conversation(self.actor_id, counterpart_id)

    # ------------------------------------------------------------------
    # Live updates

    async def start(self) -> List[ConversationListEntry]:
        if self._feed is None:
            raise RuntimeError("A change feed is required for live updates")
        self._active = True
        try:
            with classify_store_errors("subscribe to conversation updates"):
                for column in ("participant_a", "participant_b"):
                    self._subscriptions.append(
                        await self._feed.subscribe(ConversationRepository.table, {column: self.actor_id}, self._on_conversation_insert)
                    )
            return await self.load_conversations()
        except BaseException:
            await self.stop()
            raise

    async def stop(self) -> None:
        self._active = False
        # invalidates any reload still in flight
        self._generation += 1
        subscriptions, self._subscriptions = self._subscriptions, []
        subscriptions += self._message_subscriptions.values()
        self._message_subscriptions = {}
        for subscription in subscriptions:
            await self._feed.unsubscribe(subscription)

    async def _on_conversation_insert(self, row: Dict[str, Any]) -> None:
        await self._reload()

    async def _follow_listed_conversations(self) -> None:
        listed = {entry.id: entry for entry in self.entries}
        added = []
        async with self._sync_lock:
            for conversation_id in [c for c in self._message_subscriptions if c not in listed]:
                await self._feed.unsubscribe(self._message_subscriptions.pop(conversation_id))
            for conversation_id in listed:
                if conversation_id in self._message_subscriptions:
                    continue
                with classify_store_errors("subscribe to conversation messages"):
                    subscription = await self._feed.subscribe(
                        MessageRepository.table, {"conversation_id": conversation_id}, self._on_message_insert
                    )
                if not self._active:
                    # stopped while subscribing
                    await self._feed.unsubscribe(subscription)
                    return
                self._message_subscriptions[conversation_id] = subscription
                added.append(conversation_id)
        # a message stored between the list read and the subscribe has no event
        for conversation_id in added:
            with classify_store_errors("check latest message"):
                latest = await self._message_repo.get_latest(conversation_id)
            shown = listed[conversation_id].last_message
            if latest and (shown is None or shown.id != str(latest["_id"])):
                await self._reload()
                return

    async def _on_message_insert(self, row: Dict[str, Any]) -> None:
        await self._reload()

    async def _reload(self) -> None:
        if not self._active:
            return
        entries = await self.load_conversations()
        logger.debug("Conversation list for {} reloaded with {} entries", self.actor_id, len(entries))

"""Reconciliation of the local message log.

A conversation's visible log is fed from two directions: the sender's own
optimistic entries and confirmed rows arriving from the store response or
the change feed (possibly both, in either order).  ``reduce_log`` is the
only place the log changes.  It keeps these properties:

* the log is sorted ascending by ``sent_at`` (stable, so equal timestamps
  keep arrival order);
* confirmed entries are unique by store id, so a confirmation and its feed
  echo never show up twice;
* a confirmed row carrying a ``client_message_id`` replaces the pending
  entry with that temp id, so an echo that beats the store response never
  sits next to its own pending copy.
"""

from dataclasses import dataclass
from typing import List, Sequence, Union

from marketchat.schemas.message import ConfirmedMessage, LogEntry, PendingMessage


@dataclass(frozen=True)
class PendingAppended:
    entry: PendingMessage


@dataclass(frozen=True)
class SendConfirmed:
    temp_id: str
    message: ConfirmedMessage


@dataclass(frozen=True)
class SendFailed:
    temp_id: str


@dataclass(frozen=True)
class RemoteInserted:
    message: ConfirmedMessage


LogAction = Union[PendingAppended, SendConfirmed, SendFailed, RemoteInserted]


def _sorted(entries: Sequence[LogEntry]) -> List[LogEntry]:
    return sorted(entries, key=lambda entry: entry.sent_at)


def _without_pending(entries: Sequence[LogEntry], temp_id: str) -> List[LogEntry]:
    return [entry for entry in entries if not (entry.state == "pending" and entry.id == temp_id)]


def _merge_confirmed(entries: Sequence[LogEntry], message: ConfirmedMessage) -> List[LogEntry]:
    if any(entry.state == "confirmed" and entry.id == message.id for entry in entries):
        return list(entries)
    return _sorted([*entries, message])


def reduce_log(entries: Sequence[LogEntry], action: LogAction) -> List[LogEntry]:
    if isinstance(action, PendingAppended):
        return _sorted([*entries, action.entry])
    if isinstance(action, SendConfirmed):
        # the feed echo may already have delivered the confirmed row
        return _merge_confirmed(_without_pending(entries, action.temp_id), action.message)
    if isinstance(action, SendFailed):
        return _without_pending(entries, action.temp_id)
    if isinstance(action, RemoteInserted):
        if action.message.client_message_id:
            entries = _without_pending(entries, action.message.client_message_id)
        return _merge_confirmed(entries, action.message)
    raise TypeError(f"Unknown log action {action!r}")

import random
from datetime import datetime, timedelta, timezone

import pytest

from marketchat.schemas.message import ConfirmedMessage, PendingMessage
from marketchat.services.message_log import (
    PendingAppended,
    RemoteInserted,
    SendConfirmed,
    SendFailed,
    reduce_log,
)


T0 = datetime(2026, 10, 1, 9, 0, tzinfo=timezone.utc)


def pending(temp_id: str, seconds: int, content: str = "hi") -> PendingMessage:
    return PendingMessage(id=temp_id, conversation_id="c1", sender_id="alice", content=content, sent_at=T0 + timedelta(seconds=seconds))


def confirmed(message_id: str, seconds: int, content: str = "hi", sender: str = "alice", client_message_id=None) -> ConfirmedMessage:
    return ConfirmedMessage(
        id=message_id,
        conversation_id="c1",
        sender_id=sender,
        content=content,
        sent_at=T0 + timedelta(seconds=seconds),
        client_message_id=client_message_id,
    )


class TestReduceLog:

    def test_pending_then_confirmation_replaces_entry(self):
        log = reduce_log([], PendingAppended(pending("temp-1", 5)))
        log = reduce_log(log, SendConfirmed("temp-1", confirmed("m1", 5)))

        assert [(e.state, e.id) for e in log] == [("confirmed", "m1")]

    def test_echo_before_confirmation_is_not_duplicated(self):
        """
        Scenario: the feed echo of our own insert arrives before the store response.
        Expected: one confirmed entry, the pending one is gone.
        """
        log = reduce_log([], PendingAppended(pending("temp-1", 5)))
        echo = confirmed("m1", 5, client_message_id="temp-1")
        log = reduce_log(log, RemoteInserted(echo))
        assert [(e.state, e.id) for e in log] == [("confirmed", "m1")]

        log = reduce_log(log, SendConfirmed("temp-1", echo))
        assert [(e.state, e.id) for e in log] == [("confirmed", "m1")]

    def test_echo_only_replaces_its_own_pending_entry(self):
        log = reduce_log([], PendingAppended(pending("temp-1", 5, "one")))
        log = reduce_log(log, PendingAppended(pending("temp-2", 6, "two")))
        log = reduce_log(log, RemoteInserted(confirmed("m2", 6, "two", client_message_id="temp-2")))

        assert [(e.state, e.id) for e in log] == [("pending", "temp-1"), ("confirmed", "m2")]

    def test_echo_after_confirmation_is_noop(self):
        log = reduce_log([], PendingAppended(pending("temp-1", 5)))
        log = reduce_log(log, SendConfirmed("temp-1", confirmed("m1", 5)))
        again = reduce_log(log, RemoteInserted(confirmed("m1", 5)))

        assert again == log

    def test_failure_removes_only_that_pending_entry(self):
        log = reduce_log([], PendingAppended(pending("temp-1", 1, "one")))
        log = reduce_log(log, PendingAppended(pending("temp-2", 2, "two")))
        log = reduce_log(log, SendFailed("temp-1"))

        assert [e.id for e in log] == ["temp-2"]

    def test_remote_messages_are_sorted_by_sent_at(self):
        log = reduce_log([], RemoteInserted(confirmed("m3", 30)))
        log = reduce_log(log, RemoteInserted(confirmed("m1", 10)))
        log = reduce_log(log, RemoteInserted(confirmed("m2", 20)))

        assert [e.id for e in log] == ["m1", "m2", "m3"]

    def test_equal_timestamps_keep_arrival_order(self):
        log = reduce_log([], RemoteInserted(confirmed("first", 10)))
        log = reduce_log(log, RemoteInserted(confirmed("second", 10)))

        assert [e.id for e in log] == ["first", "second"]

    def test_unknown_action_is_rejected(self):
        with pytest.raises(TypeError):
            reduce_log([], object())

    def test_interleaved_actions_keep_log_sorted_and_unique(self):
        rng = random.Random(7)
        log = []
        for n in range(200):
            ts = rng.randint(0, 50)
            kind = rng.choice(["pending", "confirm", "echo", "fail"])
            if kind == "pending":
                log = reduce_log(log, PendingAppended(pending(f"temp-{n}", ts)))
            elif kind == "fail":
                pendings = [e for e in log if e.state == "pending"]
                if pendings:
                    log = reduce_log(log, SendFailed(rng.choice(pendings).id))
            elif kind == "confirm":
                pendings = [e for e in log if e.state == "pending"]
                if pendings:
                    target = rng.choice(pendings)
                    log = reduce_log(log, SendConfirmed(target.id, confirmed(f"m-{target.id}", ts)))
            else:
                log = reduce_log(log, RemoteInserted(confirmed(f"m-{rng.randint(0, 20)}", ts)))

            stamps = [e.sent_at for e in log]
            assert stamps == sorted(stamps)
            ids = [e.id for e in log]
            assert len(ids) == len(set(ids))

import asyncio

import pytest

import triggers
from store import CALLS, CHAT_MESSAGES, LISTENERS, ResumeTokenExpired


class StreamingStore:
    """Replays canned change events per collection, then idles like a live stream.

    Each event is (operation, before, after, token). A stream opened with
    ``resume_after`` skips everything up to and including that token.
    """

    def __init__(self, events, tokens=None):
        self.events = events
        self.tokens = dict(tokens or {})
        self.opened = []

    async def load_resume_token(self, name):
        return self.tokens.get(name)

    async def save_resume_token(self, name, token):
        self.tokens[name] = token

    async def watch(self, collection, operations, resume_after=None):
        self.opened.append((collection, resume_after))
        events = self.events.get(collection, [])
        skipping = resume_after is not None
        for event in list(events):
            if isinstance(event, Exception):
                if not skipping:
                    # Fails once, like a dropped cursor
                    events.remove(event)
                    raise event
                continue
            if skipping:
                skipping = event[3] != resume_after
                continue
            yield event
        await asyncio.Event().wait()


class RecordingLedger:
    def __init__(self, fail=False):
        self.calls = []
        self.messages = []
        self.fail = fail

    async def on_call_updated(self, before, after):
        if self.fail:
            raise RuntimeError("ledger down")
        self.calls.append((before, after))

    async def on_message_created(self, message):
        self.messages.append(message)


class RecordingWatcher:
    def __init__(self):
        self.updates = []

    async def on_listener_updated(self, before, after):
        self.updates.append((before, after))


def call_event(call_id, token):
    return ("update", {"id": call_id, "status": "answered"}, {"id": call_id, "status": "completed"}, token)


async def settle():
    for _ in range(50):
        await asyncio.sleep(0)


class TestTriggers:

    @pytest.mark.asyncio
    async def test_events_routed_to_handlers(self):
        store = StreamingStore({
            CALLS: [call_event("c1", "t1")],
            CHAT_MESSAGES: [("insert", None, {"id": "m1", "chatId": "chat-1"}, "t2")],
            LISTENERS: [("update", {"id": "l1"}, {"id": "l1", "onboardingComplete": True}, "t3")],
        })
        ledger, watcher = RecordingLedger(), RecordingWatcher()
        tasks = triggers.start_triggers(store, ledger, watcher)
        await settle()
        await triggers.stop_triggers(tasks)

        assert ledger.calls[0][1]["status"] == "completed"
        assert ledger.messages == [{"id": "m1", "chatId": "chat-1"}]
        assert watcher.updates[0][1]["id"] == "l1"
        assert all(task.done() for task in tasks)

    @pytest.mark.asyncio
    async def test_handler_error_does_not_stop_stream(self, caplog):
        store = StreamingStore({CALLS: [call_event("c1", "t1"), call_event("c2", "t2")]})
        tasks = triggers.start_triggers(store, RecordingLedger(fail=True), RecordingWatcher())
        await settle()
        await triggers.stop_triggers(tasks)
        assert "onCallComplete failed for calls/c1" in caplog.text
        assert "onCallComplete failed for calls/c2" in caplog.text
        assert store.tokens["onCallComplete"] == "t2"


class TestResume:
    """A restarted stream continues after the last handled event"""

    @pytest.mark.asyncio
    async def test_restart_after_error_resumes_from_last_event(self, monkeypatch):
        monkeypatch.setattr(triggers, "RESTART_DELAY_SECONDS", 0)
        store = StreamingStore({CALLS: [
            call_event("c1", "t1"),
            RuntimeError("cursor killed"),
            call_event("c2", "t2"),
        ]})
        ledger = RecordingLedger()
        tasks = triggers.start_triggers(store, ledger, RecordingWatcher())
        await settle()
        await triggers.stop_triggers(tasks)

        call_streams = [token for collection, token in store.opened if collection == CALLS]
        assert call_streams == [None, "t1"]
        assert [after["id"] for _, after in ledger.calls] == ["c1", "c2"]
        assert store.tokens["onCallComplete"] == "t2"
        print("✓ Call completed while the stream was down still reached the ledger")

    @pytest.mark.asyncio
    async def test_process_start_uses_saved_position(self):
        store = StreamingStore(
            {CALLS: [call_event("c1", "t1"), call_event("c2", "t2")]},
            tokens={"onCallComplete": "t1"},
        )
        ledger = RecordingLedger()
        tasks = triggers.start_triggers(store, ledger, RecordingWatcher())
        await settle()
        await triggers.stop_triggers(tasks)
        assert (CALLS, "t1") in store.opened
        assert [after["id"] for _, after in ledger.calls] == ["c2"]

    @pytest.mark.asyncio
    async def test_expired_position_restarts_from_now(self, caplog):
        store = ExpiredTokenStore({CALLS: [call_event("c3", "t3")]}, tokens={"onCallComplete": "gone"})
        ledger = RecordingLedger()
        tasks = triggers.start_triggers(store, ledger, RecordingWatcher())
        await settle()
        await triggers.stop_triggers(tasks)
        assert [token for collection, token in store.opened if collection == CALLS] == ["gone", None]
        assert [after["id"] for _, after in ledger.calls] == ["c3"]
        assert "events since the saved position were missed" in caplog.text


class ExpiredTokenStore(StreamingStore):
    async def watch(self, collection, operations, resume_after=None):
        if resume_after == "gone":
            self.opened.append((collection, resume_after))
            raise ResumeTokenExpired(collection)
        async for event in super().watch(collection, operations, resume_after):
            yield event

"""Tests for termbroker.wire (Wire, WireEvent, EventType)."""

from __future__ import annotations

import asyncio
import logging

import pytest

from termbroker.wire import EventType, Wire, WireEvent, log_lifecycle


# ---------------------------------------------------------------------------
# EventType
# ---------------------------------------------------------------------------


class TestEventType:
    def test_values_are_kebab_case(self) -> None:
        for e in EventType:
            assert e.value == e.name.lower().replace("_", "-")

    def test_protocol_names(self) -> None:
        assert EventType.SESSION_ATTACHED.value == "session-attached"
        assert EventType.SESSION_EXITED.value == "session-exited"
        assert EventType.OUTPUT.value == "output"


# ---------------------------------------------------------------------------
# WireEvent
# ---------------------------------------------------------------------------


class TestWireEvent:
    def test_defaults(self) -> None:
        event = WireEvent(type=EventType.SESSIONS)
        assert event.data == {}

    def test_output(self) -> None:
        event = WireEvent.output(b"\x1b[0mok")
        assert event.type is EventType.OUTPUT
        assert event.data == {"data": b"\x1b[0mok"}

    def test_error_with_ref(self) -> None:
        event = WireEvent.error("nope", "session_not_found", ref="r1")
        assert event.type is EventType.ERROR
        assert event.data == {"error": "nope", "kind": "session_not_found", "ref": "r1"}

    def test_error_without_ref(self) -> None:
        event = WireEvent.error("nope", "protocol")
        assert "ref" not in event.data


# ---------------------------------------------------------------------------
# Wire: basic send/subscribe
# ---------------------------------------------------------------------------


class TestWire:
    def test_send_to_subscriber(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.send(WireEvent(type=EventType.SESSIONS, data={"sessions": []}))
        event = q.get_nowait()
        assert event is not None
        assert event.type == EventType.SESSIONS
        assert event.data["sessions"] == []

    def test_send_to_multiple_subscribers(self) -> None:
        wire = Wire()
        q1 = wire.subscribe()
        q2 = wire.subscribe()
        wire.send_session_created("s1", "/tmp")
        e1 = q1.get_nowait()
        e2 = q2.get_nowait()
        assert e1 is not None and e2 is not None
        assert e1.type == e2.type == EventType.SESSION_CREATED

    def test_unsubscribe(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.unsubscribe(q)
        wire.send_session_reaped("s1", "idle")
        assert q.empty()

    def test_unsubscribe_nonexistent_is_safe(self) -> None:
        wire = Wire()
        q: asyncio.Queue[WireEvent | None] = asyncio.Queue()
        wire.unsubscribe(q)


# ---------------------------------------------------------------------------
# Wire: closed-state guard
# ---------------------------------------------------------------------------


class TestWireClosedGuard:
    def test_close_sends_sentinel_to_all_subscribers(self) -> None:
        wire = Wire()
        queues = [wire.subscribe() for _ in range(3)]
        wire.close()
        for q in queues:
            assert q.get_nowait() is None

    def test_send_after_close_is_dropped(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.close()
        q.get_nowait()
        wire.send_session_created("s1", "/tmp")
        wire.send_session_exited("s1", 0)
        wire.send_session_reaped("s1", "exited")
        assert q.empty()

    def test_close_idempotent(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.close()
        wire.close()
        assert q.get_nowait() is None
        assert q.empty()


# ---------------------------------------------------------------------------
# Wire: lifecycle helpers
# ---------------------------------------------------------------------------


class TestWireLifecycle:
    def test_session_created(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.send_session_created("s1", "/work/proj")
        event = q.get_nowait()
        assert event is not None
        assert event.data == {"id": "s1", "workspace_dir": "/work/proj"}

    def test_session_exited_truncates_output(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.send_session_exited("s1", 2, last_output=b"x" * 1000)
        event = q.get_nowait()
        assert event is not None
        assert event.type == EventType.SESSION_EXITED
        assert event.data["exit_code"] == 2
        assert len(event.data["last_output"]) == 500

    def test_session_reaped(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.send_session_reaped("s1", "idle")
        event = q.get_nowait()
        assert event is not None
        assert event.data == {"id": "s1", "reason": "idle"}


# ---------------------------------------------------------------------------
# log_lifecycle
# ---------------------------------------------------------------------------


class TestLogLifecycle:
    @pytest.mark.asyncio
    async def test_logs_until_close(self, caplog) -> None:
        caplog.set_level(logging.INFO, logger="termbroker.wire")
        wire = Wire()
        task = asyncio.create_task(log_lifecycle(wire.subscribe()))
        wire.send_session_created("s1", "/work/proj")
        wire.send_session_exited("s1", 3, last_output=b"secret-bytes")
        wire.close()
        await asyncio.wait_for(task, timeout=1)

        messages = [r.getMessage() for r in caplog.records if r.name == "termbroker.wire"]
        assert len(messages) == 2
        assert "session-created" in messages[0] and "/work/proj" in messages[0]
        assert "session-exited" in messages[1] and "'exit_code': 3" in messages[1]
        assert "secret-bytes" not in messages[1]

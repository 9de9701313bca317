"""Shared pytest fixtures for termbroker tests."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

import pytest
import pytest_asyncio

from termbroker.config import SessionConfig
from termbroker.pty.registry import SessionRegistry
from termbroker.pty.session import Session
from termbroker.wire import EventType, Wire, WireEvent


class FakeProcess:
    """Stands in for PTYProcess: output and exit are driven by the test."""

    def __init__(self) -> None:
        self.writes: list[bytes] = []
        self.resizes: list[tuple[int, int]] = []
        self.spawned: tuple[int, int] | None = None
        self.killed = False
        self.alive = True
        self.exit_code: int | None = None
        self._on_output: Callable[[bytes], None] | None = None
        self._on_exit: Callable[[int | None], None] | None = None
        self._exited = asyncio.Event()

    def set_on_output(self, callback: Callable[[bytes], None]) -> None:
        self._on_output = callback

    def set_on_exit(self, callback: Callable[[int | None], None]) -> None:
        self._on_exit = callback

    async def spawn(self, cols: int, rows: int) -> None:
        self.spawned = (cols, rows)

    async def write(self, data: bytes) -> None:
        if self.alive:
            self.writes.append(data)

    async def resize(self, cols: int, rows: int) -> None:
        if self.alive:
            self.resizes.append((cols, rows))

    def kill(self) -> None:
        self.killed = True
        self.exit(-1)

    def emit(self, data: bytes) -> None:
        assert self._on_output is not None
        self._on_output(data)

    def exit(self, code: int | None = 0) -> None:
        if not self.alive:
            return
        self.alive = False
        self.exit_code = code
        assert self._on_exit is not None
        self._on_exit(code)
        self._exited.set()

    async def wait(self) -> int | None:
        await self._exited.wait()
        return self.exit_code


class Recorder:
    """A subscriber that keeps every event it is handed."""

    def __init__(self) -> None:
        self.events: list[WireEvent] = []

    def deliver(self, event: WireEvent) -> None:
        self.events.append(event)

    @property
    def output(self) -> bytes:
        return b"".join(
            e.data["data"] for e in self.events if e.type is EventType.OUTPUT
        )

    def of_type(self, event_type: EventType) -> list[WireEvent]:
        return [e for e in self.events if e.type is event_type]


@pytest.fixture
def recorder_factory() -> Callable[[], Recorder]:
    return Recorder


@pytest.fixture
def fake_session() -> Callable[..., tuple[Session, FakeProcess]]:
    """Build a Session around a FakeProcess."""

    def _make(**kwargs) -> tuple[Session, FakeProcess]:
        process = FakeProcess()
        session = Session(process, "/tmp", **kwargs)  # type: ignore[arg-type]
        return session, process

    return _make


@pytest.fixture
def shell_config() -> SessionConfig:
    return SessionConfig(
        shell="/bin/sh",
        default_cols=200,
        default_rows=24,
        scrollback_bytes=8192,
        max_sessions=3,
        flush_interval=0,
        idle_timeout=60,
        reap_interval=3600,
    )


@pytest_asyncio.fixture
async def registry(shell_config: SessionConfig):
    reg = SessionRegistry(shell_config, wire=Wire())
    yield reg
    await reg.shutdown()


@pytest.fixture
def wait_until() -> Callable[..., Awaitable[None]]:
    """Poll a condition on the event loop until it holds or a timeout hits."""

    async def _wait(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met within %.1fs" % timeout)
            await asyncio.sleep(0.02)

    return _wait

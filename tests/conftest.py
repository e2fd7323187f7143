from __future__ import annotations

import asyncio
from collections.abc import Iterator
import logging
from pathlib import Path
import threading
import time
from typing import Any, Callable

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from framix_server import main
from framix_server.config import get_settings
from framix_server.db import get_engine, init_schema
from framix_server.services.jobs import SqlJobStore
from framix_server.services.render import RenderOutcome


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def reset_caches() -> Iterator[None]:
    get_settings.cache_clear()
    get_engine.cache_clear()
    yield
    get_settings.cache_clear()
    get_engine.cache_clear()


@pytest.fixture
def engine(tmp_path: Path) -> Iterator[Engine]:
    sqlite_engine = create_engine(f"sqlite+pysqlite:///{tmp_path / 'framix-tests.db'}")
    init_schema(sqlite_engine)
    yield sqlite_engine
    sqlite_engine.dispose()


@pytest.fixture
def store(engine: Engine) -> SqlJobStore:
    return SqlJobStore(engine)


class ScriptedRenderer:
    """Async fake renderer; each template blocks until ``release`` is called."""

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.progress: dict[str, list[dict[str, Any]]] = {}
        self.outcomes: dict[str, RenderOutcome | Exception] = {}
        self.active = 0
        self.max_active = 0
        self._gates: dict[str, asyncio.Event] = {}

    def gate(self, template_id: str) -> asyncio.Event:
        return self._gates.setdefault(template_id, asyncio.Event())

    def release(self, template_id: str) -> None:
        self.gate(template_id).set()

    async def render(
        self, template_id: str, on_progress: Callable[[dict[str, Any]], None]
    ) -> RenderOutcome:
        self.calls.append(template_id)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            for info in self.progress.get(template_id, []):
                on_progress(info)
            await self.gate(template_id).wait()
            outcome = self.outcomes.get(
                template_id,
                RenderOutcome.succeeded({"outputPath": f"output/{template_id}.mp4", "duration": 1.5}),
            )
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        finally:
            self.active -= 1


class ThreadGatedRenderer:
    """Fake renderer driven from the test thread while the app loop runs elsewhere."""

    def __init__(self) -> None:
        self.calls: list[str] = []
        self._gates: dict[str, threading.Event] = {}
        self._lock = threading.Lock()

    def _gate(self, template_id: str) -> threading.Event:
        with self._lock:
            return self._gates.setdefault(template_id, threading.Event())

    def release(self, template_id: str) -> None:
        self._gate(template_id).set()

    async def render(
        self, template_id: str, on_progress: Callable[[dict[str, Any]], None]
    ) -> RenderOutcome:
        self.calls.append(template_id)
        on_progress({"frame": 0, "total": 10, "percent": 0, "eta": "calculating..."})
        gate = self._gate(template_id)
        while not gate.is_set():
            await asyncio.sleep(0.01)
        return RenderOutcome.succeeded({"outputPath": f"output/{template_id}.mp4"})


class RecordingObserver:
    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []
        self.closed = False

    def deliver(self, event: dict[str, Any]) -> None:
        self.events.append(event)

    def close(self) -> None:
        self.closed = True

    def types(self) -> list[str]:
        return [event["type"] for event in self.events]


async def wait_until(predicate: Callable[[], bool], *, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


def poll_until(predicate: Callable[[], bool], *, timeout: float = 3.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met before timeout")
        time.sleep(0.01)


@pytest.fixture
def renderer() -> ScriptedRenderer:
    return ScriptedRenderer()


@pytest.fixture
def gated_renderer() -> ThreadGatedRenderer:
    return ThreadGatedRenderer()


@pytest.fixture
def app_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    monkeypatch.setenv("FRAMIX_DATABASE_URL", f"sqlite+pysqlite:///{tmp_path / 'api-tests.db'}")
    monkeypatch.setenv("FRAMIX_DB_ECHO", "false")
    monkeypatch.setenv("FRAMIX_MAX_CONCURRENT_JOBS", "1")
    monkeypatch.setenv("FRAMIX_IDLE_TIMEOUT_SECONDS", "0")
    monkeypatch.setenv("FRAMIX_TEMPLATES_DIR", "")
    monkeypatch.setenv("FRAMIX_OUTPUT_DIR", str(tmp_path / "output"))
    return tmp_path


@pytest.fixture
def client(
    app_env: Path,
    monkeypatch: pytest.MonkeyPatch,
    gated_renderer: ThreadGatedRenderer,
) -> Iterator[TestClient]:
    monkeypatch.setattr(main, "get_renderer", lambda settings: gated_renderer)

    with TestClient(main.app) as test_client:
        yield test_client

    get_engine().dispose()
    root = logging.getLogger()
    for handler in [h for h in root.handlers if getattr(h, "_framix", False)]:
        root.removeHandler(handler)

from __future__ import annotations

import json
from typing import Any, Callable, List, Optional, Tuple

import pytest

import pebble_core
from pebble_core import ListController, SelectionController, SessionState, StoreClient


class FakeTransport:
    """Records GETs; tests resolve them later, in any order."""

    def __init__(self) -> None:
        self.pending: List[Tuple[str, Callable]] = []
        self.urls: List[str] = []

    def get(self, url: str, callback: Callable) -> None:
        self.urls.append(url)
        self.pending.append((url, callback))

    def _take(self, index: int) -> Tuple[str, Callable]:
        return self.pending.pop(index)

    def respond(self, index: int = 0, payload: Any = None, status: int = 200) -> str:
        url, callback = self._take(index)
        body = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")
        callback(status, body, None)
        return url

    def fail(self, index: int = 0, error: str = "Connection refused") -> str:
        url, callback = self._take(index)
        callback(None, b"", error)
        return url

    def find(self, fragment: str) -> int:
        for i, (url, _cb) in enumerate(self.pending):
            if fragment in url:
                return i
        raise AssertionError(f"no pending request matching {fragment!r}: {[u for u, _ in self.pending]}")


class ManualScheduler:
    """Virtual clock in milliseconds."""

    def __init__(self) -> None:
        self.now = 0
        self._timers: List[List[Any]] = []
        self._next_id = 0

    def call_later(self, delay_ms: int, fn: Callable) -> int:
        self._next_id += 1
        self._timers.append([self.now + delay_ms, self._next_id, fn])
        return self._next_id

    def cancel(self, handle: int) -> None:
        self._timers = [t for t in self._timers if t[1] != handle]

    @property
    def pending_count(self) -> int:
        return len(self._timers)

    def advance(self, ms: int) -> None:
        target = self.now + ms
        while True:
            due = sorted((t for t in self._timers if t[0] <= target), key=lambda t: (t[0], t[1]))
            if not due:
                break
            timer = due[0]
            self._timers.remove(timer)
            self.now = timer[0]
            timer[2]()
        self.now = target


def keys_payload(keys: List[str], total: Optional[int] = None, offset: int = 0) -> dict:
    return {"keys": keys, "total": len(keys) if total is None else total, "offset": offset, "limit": 50}


def value_payload(key: str, value: bytes) -> dict:
    return {
        "key": key,
        "value": value.decode("utf-8", errors="replace"),
        "value_hex": value.hex(),
        "size": len(value),
    }


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def client(transport: FakeTransport) -> StoreClient:
    return StoreClient(transport, "http://pebble.test:8080")


@pytest.fixture
def session() -> SessionState:
    return SessionState()


@pytest.fixture
def list_ctrl(client: StoreClient, scheduler: ManualScheduler, session: SessionState) -> ListController:
    return ListController(client, scheduler, session)


@pytest.fixture
def selection(client: StoreClient) -> SelectionController:
    return SelectionController(client)


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("PEBBLE_VIEWER_URL", raising=False)
    monkeypatch.setattr(pebble_core, "CONFIG_FILE", pebble_core.Path("/nonexistent/pebble_viewer_config.json"))

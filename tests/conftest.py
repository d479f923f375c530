from __future__ import annotations

import pytest

from sigd.codec import decode
from sigd.config import RelayRuntimeConfig
from sigd.service import RelayService


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTransport:
    """Stands in for a WebSocket connection."""

    def __init__(self, address=("10.0.0.1", 50000), frames=()) -> None:
        self.remote_address = address
        self.sent: list = []
        self.closed: tuple[int, str] | None = None
        self._frames = list(frames)

    def send(self, message) -> None:
        self.sent.append(message)

    def close(self, code: int = 1000, reason: str = "") -> None:
        if self.closed is None:
            self.closed = (code, reason)

    def __iter__(self):
        for frame in self._frames:
            if self.closed is not None:
                return
            yield frame

    def messages(self) -> list:
        return [decode(p) for p in self.sent]

    def last(self):
        return decode(self.sent[-1])

    def clear(self) -> None:
        self.sent.clear()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config() -> RelayRuntimeConfig:
    return RelayRuntimeConfig(config_path=None)


@pytest.fixture
def service(config, clock) -> RelayService:
    return RelayService(config, clock=clock)


@pytest.fixture
def connect(service):
    """Connect a fake client; returns (conn_id, transport)."""

    def _connect(address=("10.0.0.1", 50000)):
        transport = FakeTransport(address)
        conn_id = service.on_connect(transport)
        transport.clear()
        return conn_id, transport

    return _connect

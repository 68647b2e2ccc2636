"""Scripted WebSocket doubles for the feed tests."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from types import SimpleNamespace
from typing import Any, List

import aiohttp
import pytest

from fusion_engine.feeds.cache import GreeksCache, QuoteCache

NOW = datetime(2025, 10, 17, 15, 0, tzinfo=timezone.utc)
NOW_MS = int(NOW.timestamp() * 1000)


class FakeSocket:
    """Yields scripted text frames, then ends as if the server closed."""

    def __init__(self, frames: List[Any]) -> None:
        self.frames = [frame if isinstance(frame, str) else json.dumps(frame) for frame in frames]
        self.sent: List[dict] = []
        self.closed = False

    async def send_str(self, data: str) -> None:
        self.sent.append(json.loads(data))

    async def close(self) -> None:
        self.closed = True

    async def _iterate(self):
        for frame in self.frames:
            yield SimpleNamespace(type=aiohttp.WSMsgType.TEXT, data=frame)

    def __aiter__(self):
        return self._iterate()


@pytest.fixture
def caches():
    """Quote and Greeks caches pinned to ``NOW``."""

    return QuoteCache("test", now_provider=lambda: NOW), GreeksCache(now_provider=lambda: NOW)


@pytest.fixture
def socket_connector():
    """Factory: ``connector(frames)`` returns ``(connect, sockets)``."""

    def factory(*scripts: List[Any]):
        sockets: List[FakeSocket] = []
        pending = list(scripts)

        async def connect(url: str) -> FakeSocket:
            socket = FakeSocket(pending.pop(0))
            sockets.append(socket)
            return socket

        return connect, sockets

    return factory

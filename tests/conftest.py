"""Test doubles shared across the suite."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

import pytest

from fusion_engine.adapters.fetcher import RateLimitedFetcher, RateLimiter


class FakeResponse:
    def __init__(self, status: int, body: Any = None) -> None:
        self.status = status
        self._body = body

    async def json(self, content_type: Optional[str] = None) -> Any:
        return self._body

    async def __aenter__(self) -> "FakeResponse":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        return None


class FakeSession:
    """Replays scripted responses and records each request."""

    def __init__(self, responses: List[Any]) -> None:
        self._responses = list(responses)
        self.requests: List[Tuple[str, str, Dict[str, Any], Dict[str, str]]] = []
        self.closed = False

    def request(self, method: str, url: str, params=None, headers=None, timeout=None):
        self.requests.append((method, url, dict(params or {}), dict(headers or {})))
        item = self._responses.pop(0)
        if isinstance(item, Exception):
            raise item
        status, body = item
        return FakeResponse(status, body)

    async def close(self) -> None:
        self.closed = True


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def build_fetcher():
    """Factory returning ``(fetcher, session, sleep)`` for scripted responses."""

    def factory(responses, **kwargs):
        sleep = RecordingSleep()
        session = FakeSession(responses)
        fetcher = RateLimitedFetcher(
            api_key=kwargs.pop("api_key", "secret"),
            session=session,
            standard=RateLimiter("standard", min_spacing=0, reservoir=None),
            bulk=RateLimiter("bulk", max_concurrent=2, min_spacing=0, reservoir=None),
            sleep=sleep,
            **kwargs,
        )
        return fetcher, session, sleep

    return factory


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()

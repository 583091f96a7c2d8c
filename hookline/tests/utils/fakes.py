from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable

import httpx


class FakeRedis:
    """In-memory subset of redis.asyncio used by the active-destination cache."""

    def __init__(self) -> None:
        self._values: dict[str, tuple[str, int | None]] = {}
        self.now = 0
        self.fail = False

    def advance(self, seconds: int) -> None:
        self.now += int(seconds)

    def ttl_of(self, key: str) -> int | None:
        item = self._values.get(key)
        if item is None or item[1] is None:
            return None
        return item[1] - self.now

    def _check(self) -> None:
        if self.fail:
            raise ConnectionError("redis unavailable")

    def _expired(self, key: str) -> bool:
        item = self._values.get(key)
        if item is None:
            return True
        _value, expiry = item
        return expiry is not None and self.now >= expiry

    async def set(self, key: str, value: str, ex: int | None = None):  # noqa: ANN001
        self._check()
        expiry = self.now + int(ex) if ex is not None else None
        self._values[key] = (str(value), expiry)
        return True

    async def get(self, key: str):  # noqa: ANN001
        self._check()
        if self._expired(key):
            self._values.pop(key, None)
            return None
        return self._values[key][0]

    async def delete(self, key: str):  # noqa: ANN001
        self._check()
        return 1 if self._values.pop(key, None) is not None else 0


@dataclass
class EnqueueRecorder:
    """Stand-in for enqueue_webhook_delivery that records every publish."""

    calls: list[dict[str, Any]] = field(default_factory=list)
    result: bool = True

    async def __call__(
        self,
        *,
        destination_id: str,
        delivery_id: str,
        attempt_number: int,
        defer_ms: int = 0,
    ) -> bool:
        self.calls.append(
            {
                "destination_id": destination_id,
                "delivery_id": delivery_id,
                "attempt_number": attempt_number,
                "defer_ms": defer_ms,
            }
        )
        return self.result

    def for_delivery(self, delivery_id: str) -> list[dict[str, Any]]:
        return [call for call in self.calls if call["delivery_id"] == delivery_id]


@dataclass
class Subscriber:
    """Scripted webhook receiver served through httpx.MockTransport."""

    status_codes: list[int] = field(default_factory=lambda: [200])
    body: bytes = b"ok"
    requests: list[httpx.Request] = field(default_factory=list)
    handler: Callable[[httpx.Request], httpx.Response] | None = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.handler is not None:
            return self.handler(request)
        # Replay the script, then keep answering with its last status.
        index = min(len(self.requests) - 1, len(self.status_codes) - 1)
        return httpx.Response(self.status_codes[index], content=self.body)

    def client_factory(self) -> Callable[[], httpx.AsyncClient]:
        def _factory() -> httpx.AsyncClient:
            return httpx.AsyncClient(transport=httpx.MockTransport(self))

        return _factory

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

import httpx

from .conditions import EvaluationContext, evaluate_source
from .models import HttpRequestSpec
from .values import json_dumps

DEFAULT_TIMEOUT = 10.0

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ResolvedRequest:
    url: str
    method: str = "GET"
    params: dict[str, Any] = field(default_factory=dict)
    body: dict[str, Any] | None = None
    headers: dict[str, str] = field(default_factory=dict)

    def fingerprint(self) -> str:
        return json_dumps({"method": self.method, "url": self.url, "params": self.params, "body": self.body})


def resolve_request(spec: HttpRequestSpec, context: EvaluationContext) -> ResolvedRequest:
    params = {name: evaluate_source(source, context) for name, source in spec.query_params}
    body = {name: evaluate_source(source, context) for name, source in spec.body} if spec.body else None
    return ResolvedRequest(url=spec.url, method=spec.method, params=params, body=body, headers=dict(spec.headers))


class HttpClient:
    def __init__(
        self,
        base_url: str = "",
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.base_url = base_url
        self.timeout = timeout
        self.transport = transport
        self.headers = dict(headers or {})

    async def send(self, request: ResolvedRequest) -> Any:
        params = {name: value for name, value in request.params.items() if value is not None}
        async with httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self.transport,
            headers=self.headers,
        ) as client:
            response = await client.request(
                request.method,
                request.url,
                params=params or None,
                json=request.body,
                headers=request.headers or None,
            )
            response.raise_for_status()
            logger.debug("http_rule_response", extra={"url": request.url, "status_code": response.status_code})
            if not response.content:
                return None
            return response.json()


class ResponseCache:
    """TTL cache keyed by request fingerprint; expired entries are pruned on every write."""

    def __init__(self, clock: Callable[[], float] | None = None, max_entries: int = 512) -> None:
        self._clock = clock or (lambda: time.monotonic() * 1000)
        self._entries: dict[str, tuple[float, Any]] = {}
        self.max_entries = max_entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> tuple[bool, Any]:
        entry = self._entries.get(key)
        if entry is None:
            return False, None
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return False, None
        return True, value

    def put(self, key: str, value: Any, duration_ms: int) -> None:
        if duration_ms <= 0:
            return
        now = self._clock()
        for stale in [name for name, (expires_at, _) in self._entries.items() if now >= expires_at]:
            del self._entries[stale]
        self._entries.pop(key, None)
        while self._entries and len(self._entries) >= self.max_entries:
            del self._entries[next(iter(self._entries))]
        self._entries[key] = (now + duration_ms, value)

    def clear(self) -> None:
        self._entries.clear()

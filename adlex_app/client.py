"""Client for following a submitted check to its terminal state.

Prefers the SSE stream and falls back to polling ``GET /api/checks/{id}``
when the stream cannot be opened or ends before a terminal event.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, Optional

import httpx

log = logging.getLogger("adlex")

TERMINAL_STATUSES = ("completed", "failed")


@dataclass
class CheckUpdate:
    kind: str  # event type, "parse-error" or "poll"
    status: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    transport: str = "sse"
    raw: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class StreamUnavailable(Exception):
    pass


def parse_sse_lines(lines) -> Iterator[tuple]:
    """Yield ``(event, data)`` pairs from an iterable of SSE lines."""
    event, data = None, []
    for line in lines:
        if line == "":
            if data:
                yield event or "message", "\n".join(data)
            event, data = None, []
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        value = value[1:] if value.startswith(" ") else value
        if name == "event":
            event = value
        elif name == "data":
            data.append(value)
    if data:
        yield event or "message", "\n".join(data)


def _status_of(event: str, payload: Dict[str, Any]) -> Optional[str]:
    if event in TERMINAL_STATUSES:
        return event
    if event == "queued":
        return "pending"
    if event == "processing":
        return "processing"
    return payload.get("status")


class CheckWatcher:
    def __init__(
        self,
        base_url: str,
        user_id: str,
        *,
        client: Optional[httpx.Client] = None,
        poll_interval: float = 1.0,
        max_polls: int = 180,
        use_stream: bool = True,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.user_id = user_id
        self._client = client or httpx.Client(base_url=self.base_url, timeout=30.0)
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self.use_stream = use_stream
        self._sleep = sleep

    @property
    def _headers(self) -> Dict[str, str]:
        return {"x-user-id": self.user_id}

    def stream(self, check_id: int) -> Iterator[CheckUpdate]:
        url = f"{self.base_url}/api/checks/{check_id}/stream"
        try:
            with self._client.stream("GET", url, headers=self._headers) as r:
                if r.status_code != 200 or "text/event-stream" not in r.headers.get("content-type", ""):
                    raise StreamUnavailable(f"stream returned HTTP {r.status_code}")
                for event, data in parse_sse_lines(r.iter_lines()):
                    try:
                        payload = json.loads(data)
                    except ValueError:
                        log.warning("check %s: malformed event payload", check_id)
                        yield CheckUpdate(kind="parse-error", raw=data)
                        continue
                    if not isinstance(payload, dict):
                        yield CheckUpdate(kind="parse-error", raw=data)
                        continue
                    yield CheckUpdate(kind=event, status=_status_of(event, payload), data=payload)
        except httpx.HTTPError as exc:
            raise StreamUnavailable(str(exc)) from exc

    def poll(self, check_id: int) -> Iterator[CheckUpdate]:
        url = f"{self.base_url}/api/checks/{check_id}"
        for _ in range(self.max_polls):
            r = self._client.get(url, headers=self._headers)
            r.raise_for_status()
            payload = r.json()
            update = CheckUpdate(kind="poll", status=payload.get("status"), data=payload, transport="poll")
            yield update
            if update.is_terminal:
                return
            self._sleep(self.poll_interval)
        raise TimeoutError(f"check {check_id} not finished after {self.max_polls} polls")

    def iter_updates(self, check_id: int) -> Iterator[CheckUpdate]:
        if self.use_stream:
            try:
                for update in self.stream(check_id):
                    yield update
                    if update.is_terminal:
                        return
                log.info("check %s: stream ended early, polling", check_id)
            except StreamUnavailable as exc:
                log.info("check %s: stream unavailable (%s), polling", check_id, exc)
        yield from self.poll(check_id)

    def wait(self, check_id: int) -> Dict[str, Any]:
        """Block until the check is terminal and return its stored record."""
        last: Optional[CheckUpdate] = None
        for update in self.iter_updates(check_id):
            last = update
        if last is not None and last.transport == "poll":
            return last.data
        r = self._client.get(f"{self.base_url}/api/checks/{check_id}", headers=self._headers)
        r.raise_for_status()
        return r.json()

    def close(self) -> None:
        self._client.close()

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional

log = logging.getLogger("adlex")

TERMINAL_EVENTS = ("completed", "failed", "delivery-error")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class CheckEvent:
    type: str
    check_id: int
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=_now)

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS

    def payload(self) -> Dict[str, Any]:
        return {"type": self.type, "check_id": self.check_id, "timestamp": self.timestamp, **self.data}

    def to_sse(self) -> str:
        body = json.dumps(self.payload(), ensure_ascii=False, default=str)
        return f"event: {self.type}\ndata: {body}\n\n"


class Subscription:
    def __init__(self, check_id: int, max_queue: int):
        self.check_id = check_id
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue)
        self.overflowed = False

    async def next_event(self, timeout: Optional[float] = None) -> Optional[CheckEvent]:
        """Next event, ``None`` on timeout, or a delivery-error after overflow."""
        if self.overflowed and self.queue.empty():
            return CheckEvent("delivery-error", self.check_id, {"error": "subscriber queue overflow"})
        try:
            return await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None


class CheckEventBroker:
    """In-process fan-out of check status events keyed by check id."""

    def __init__(self, max_queue: int = 100):
        self.max_queue = max_queue
        self._subscribers: Dict[int, List[Subscription]] = {}

    def publish(self, event: CheckEvent) -> int:
        delivered = 0
        for sub in list(self._subscribers.get(event.check_id, ())):
            if sub.overflowed:
                continue
            try:
                sub.queue.put_nowait(event)
                delivered += 1
            except asyncio.QueueFull:
                log.warning("check %s: subscriber overflowed, dropping it", event.check_id)
                sub.overflowed = True
                self._remove(sub)
        return delivered

    def _remove(self, sub: Subscription) -> None:
        subs = self._subscribers.get(sub.check_id)
        if not subs:
            return
        if sub in subs:
            subs.remove(sub)
        if not subs:
            self._subscribers.pop(sub.check_id, None)

    @asynccontextmanager
    async def subscribe(self, check_id: int) -> AsyncIterator[Subscription]:
        sub = Subscription(check_id, self.max_queue)
        self._subscribers.setdefault(check_id, []).append(sub)
        try:
            yield sub
        finally:
            self._remove(sub)

    def subscriber_count(self, check_id: Optional[int] = None) -> int:
        if check_id is None:
            return sum(len(s) for s in self._subscribers.values())
        return len(self._subscribers.get(check_id, ()))

from __future__ import annotations

import logging
import time
from typing import AsyncIterator, Awaitable, Callable, Optional

from adlex_app.storage.repo import CheckRecord

from .broker import CheckEvent, CheckEventBroker

log = logging.getLogger("adlex")

HEARTBEAT = ": heartbeat\n\n"

SNAPSHOT_EVENTS = {"pending": "queued", "processing": "processing"}


def snapshot_event(record: CheckRecord) -> CheckEvent:
    """Event describing the stored state of a check."""
    if record.status == "completed":
        return CheckEvent("completed", record.id, {"status": "completed", "check": record.to_dict()})
    if record.status == "failed":
        return CheckEvent(
            "failed", record.id, {"status": "failed", "error": record.error_message or ""}
        )
    return CheckEvent(SNAPSHOT_EVENTS.get(record.status, "queued"), record.id, {"status": record.status})


async def stream_check_events(
    check_id: int,
    broker: CheckEventBroker,
    load: Callable[[], Awaitable[Optional[CheckRecord]]],
    *,
    heartbeat_s: float,
    max_connection_s: float,
    clock: Callable[[], float] = time.monotonic,
) -> AsyncIterator[str]:
    """Yield SSE frames for one check until a terminal event.

    Subscribes before reading the stored state so no transition between the
    read and the subscription is lost.
    """
    started = clock()
    async with broker.subscribe(check_id) as sub:
        record = await load()
        if record is None:
            yield CheckEvent("failed", check_id, {"status": "failed", "error": "check not found"}).to_sse()
            return
        current = snapshot_event(record)
        yield current.to_sse()
        if current.is_terminal:
            return
        last_type = current.type

        while True:
            remaining = max_connection_s - (clock() - started)
            if remaining <= 0:
                log.info("check %s: stream reached max connection time", check_id)
                yield CheckEvent(
                    "delivery-error",
                    check_id,
                    {"error": "stream timeout, continue by polling"},
                ).to_sse()
                return
            event = await sub.next_event(timeout=min(heartbeat_s, remaining))
            if event is None:
                yield HEARTBEAT
                continue
            if event.type == last_type and not event.is_terminal:
                continue
            last_type = event.type
            yield event.to_sse()
            if event.is_terminal:
                return

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import APIRouter, FastAPI, Header, Query, Request
from fastapi.responses import StreamingResponse
from sqlalchemy import Engine

from adlex_app import __version__
from adlex_app.dictionary.lookup import DictionaryLookup
from adlex_app.llm.gateway import Gateway
from adlex_app.pipeline.processor import CheckProcessor
from adlex_app.pipeline.queue import CheckQueue
from adlex_app.realtime.broker import CheckEventBroker
from adlex_app.realtime.sse import stream_check_events
from adlex_app.storage.db import get_engine, init_db, make_session_factory
from adlex_app.storage.repo import CheckRepo, UserRepo
from adlex_app.utils.logging import init_logging

from . import limits
from .checks import CheckService
from .error_handlers import register_error_handlers
from .models import CheckOut, CreateCheckRequest, CreateCheckResponse, ProblemDetail, QueueStatus

log = logging.getLogger("adlex")

router = APIRouter()


def _service(request: Request) -> CheckService:
    return request.app.state.service


@router.post("/api/checks", response_model=CreateCheckResponse, status_code=201)
async def create_check(
    body: CreateCheckRequest,
    request: Request,
    x_user_id: Optional[str] = Header(None),
):
    return await _service(request).submit(x_user_id, body)


@router.get("/api/checks/{check_id}", response_model=CheckOut)
async def get_check(check_id: int, request: Request, x_user_id: Optional[str] = Header(None)):
    record = await _service(request).readable(x_user_id, check_id)
    return record.to_dict()


@router.get("/api/checks/{check_id}/stream")
async def stream_check(
    check_id: int,
    request: Request,
    x_user_id: Optional[str] = Header(None),
    user_id: Optional[str] = Query(None),
):
    # EventSource cannot set headers, so the user may come as a query param
    service = _service(request)
    record = await service.readable(x_user_id or user_id, check_id)
    max_connection_s = limits.SSE_MAX_CONNECTION_S * (2 if record.input_type == "image" else 1)
    frames = stream_check_events(
        check_id,
        request.app.state.broker,
        lambda: asyncio.to_thread(service.checks.find, check_id),
        heartbeat_s=limits.SSE_HEARTBEAT_S,
        max_connection_s=max_connection_s,
    )
    # starlette cancels the generator on disconnect; subscribe() unregisters on exit
    return StreamingResponse(
        frames,
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.delete("/api/checks/{check_id}", status_code=204)
async def delete_check(check_id: int, request: Request, x_user_id: Optional[str] = Header(None)):
    await _service(request).delete(x_user_id, check_id)


@router.get("/api/queue/status", response_model=QueueStatus)
async def queue_status(request: Request):
    return request.app.state.queue.status()


@router.get("/api/llm/status")
async def llm_status(request: Request):
    return await request.app.state.gateway.validate_models()


@router.get("/health")
async def health(request: Request):
    state = request.app.state
    return {
        "status": "ok",
        "version": __version__,
        "provider": state.gateway.provider,
        "queue_running": state.queue.running,
    }


def create_app(
    *,
    dsn: Optional[str] = None,
    engine: Optional[Engine] = None,
    gateway: Optional[Gateway] = None,
    processor_options: Optional[dict] = None,
    max_concurrent: Optional[int] = None,
    max_queue_size: Optional[int] = None,
) -> FastAPI:
    """Build the API; storage, gateway and worker pool are wired in the lifespan."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        eng = engine or get_engine(dsn)
        init_db(eng)
        Session = make_session_factory(eng)
        gw = gateway or Gateway()
        broker = CheckEventBroker(max_queue=limits.SSE_SUBSCRIBER_QUEUE)
        checks = CheckRepo(Session)
        processor = CheckProcessor(
            checks,
            gw,
            DictionaryLookup(Session, gw),
            broker,
            **(processor_options or {}),
        )
        queue = CheckQueue(processor, max_concurrent=max_concurrent, max_size=max_queue_size)
        service = CheckService(checks, UserRepo(Session), queue)

        app.state.session_factory = Session
        app.state.gateway = gw
        app.state.broker = broker
        app.state.queue = queue
        app.state.service = service

        await queue.start()
        await queue.recover()
        log.info("AdLex API ready (provider=%s)", gw.provider)
        try:
            yield
        finally:
            await queue.stop()
            if gateway is None:
                await gw.aclose()
            if engine is None:
                eng.dispose()

    _default_problem = {"model": ProblemDetail}
    app = FastAPI(
        title="AdLex Check API",
        version=__version__,
        lifespan=lifespan,
        responses={code: _default_problem for code in (400, 401, 403, 404, 500, 503)},
    )
    register_error_handlers(app)
    app.include_router(router)
    return app


app = create_app()


def run() -> None:
    init_logging()
    uvicorn.run(
        app,
        host=os.getenv("ADLEX_HOST", "127.0.0.1"),
        port=int(os.getenv("ADLEX_PORT", "8000")),
        log_config=None,
    )


if __name__ == "__main__":  # pragma: no cover
    run()

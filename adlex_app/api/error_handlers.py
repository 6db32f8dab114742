"""Centralised error handlers for FastAPI application.

Every error leaves the API as ``application/problem+json`` carrying a stable
``code`` the client can branch on.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .errors import AppError
from .models import ProblemDetail

log = logging.getLogger(__name__)


def problem_json(
    status: int,
    title: str,
    detail: Optional[str] = None,
    code: Optional[str] = None,
    instance: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    return ProblemDetail(
        status=status,
        title=title,
        detail=detail,
        code=code,
        instance=instance,
        type=f"/errors/{(code or 'general').lower()}",
        extra=extra or None,
    ).model_dump(exclude_none=True)


def problem_response(status: int, title: str, **kwargs: Any) -> JSONResponse:
    return JSONResponse(
        status_code=status,
        media_type="application/problem+json",
        content=problem_json(status, title, **kwargs),
    )


def register_error_handlers(app: FastAPI) -> None:
    """Register standardised error handlers on the application."""

    @app.exception_handler(AppError)
    async def _app_error(request: Request, exc: AppError):
        if exc.status >= 500:
            log.warning("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
        return problem_response(
            exc.status,
            exc.title,
            detail=exc.message,
            code=exc.code,
            instance=request.url.path,
            extra=exc.extra,
        )

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        log.info("validation error: %s", exc.errors())
        fields = [".".join(str(p) for p in e.get("loc", ()) if p != "body") for e in exc.errors()]
        return problem_response(
            400,
            "Validation error",
            detail="リクエストの形式が不正です",
            code="VALIDATION_ERROR",
            instance=request.url.path,
            extra={"fields": fields},
        )

    @app.exception_handler(Exception)
    async def _unhandled_error(request: Request, exc: Exception):
        # HTTPException carries explicit status/detail; everything else maps to 500
        if isinstance(exc, HTTPException):
            return problem_response(
                exc.status_code,
                "HTTP error",
                detail=exc.detail if isinstance(exc.detail, str) else None,
                code="HTTP_ERROR",
            )
        log.exception("unhandled exception", exc_info=exc)
        return problem_response(
            500, "Internal error", detail="内部エラーが発生しました", code="INTERNAL_ERROR"
        )

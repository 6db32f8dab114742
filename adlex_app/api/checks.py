"""Check submission and access rules shared by the HTTP endpoints."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from adlex_app.pipeline.queue import QUEUE_FAILURE_MESSAGE, CheckQueue
from adlex_app.storage.repo import CheckRecord, CheckRepo, UserRecord, UserRepo

from . import limits
from .errors import (
    AuthenticationError,
    AuthorizationError,
    NotFoundError,
    QueueError,
    ValidationError,
)
from .models import CreateCheckRequest, CreateCheckResponse

log = logging.getLogger("adlex")


class CheckService:
    """Storage calls run in worker threads so the event loop never blocks on the database."""

    def __init__(
        self,
        checks: CheckRepo,
        users: UserRepo,
        queue: CheckQueue,
        *,
        max_text_length: Optional[int] = None,
    ):
        self.checks = checks
        self.users = users
        self.queue = queue
        self.max_text_length = max_text_length or limits.MAX_TEXT_LENGTH

    async def authenticate(self, user_id: Optional[str]) -> UserRecord:
        if not user_id or not user_id.strip():
            raise AuthenticationError("認証が必要です")
        user = await asyncio.to_thread(self.users.find, user_id.strip())
        if user is None:
            raise AuthenticationError("ユーザーが見つかりません")
        return user

    def _validate_text(self, text: str) -> str:
        if not text or not text.strip():
            raise ValidationError("テキストが入力されていません")
        if len(text) > self.max_text_length:
            raise ValidationError(
                f"テキストが長すぎます（最大{self.max_text_length:,}文字）",
                extra={"max_length": self.max_text_length, "length": len(text)},
            )
        return text

    async def submit(self, user_id: Optional[str], req: CreateCheckRequest) -> CreateCheckResponse:
        user = await self.authenticate(user_id)
        if user.organization_id != req.organization_id:
            raise AuthorizationError("この組織に対する権限がありません")
        text = self._validate_text(req.text)

        record = await asyncio.to_thread(
            self.checks.create,
            user_id=user.id,
            organization_id=req.organization_id,
            original_text=text,
            input_type=req.input_type,
            file_name=req.file_name,
        )
        try:
            self.queue.enqueue(
                record.id,
                text,
                req.organization_id,
                priority=req.priority,
                input_type=req.input_type,
            )
        except Exception as exc:
            if isinstance(exc, QueueError):
                log.error("check %s: enqueue failed: %s", record.id, exc.message)
            else:
                log.exception("check %s: enqueue failed", record.id)
            await asyncio.to_thread(self.checks.fail, record.id, QUEUE_FAILURE_MESSAGE)
            raise QueueError(
                "処理キューへの追加に失敗しました", extra={"check_id": record.id}
            ) from exc
        return CreateCheckResponse(
            check_id=record.id, status="pending", message="チェック処理をキューに追加しました"
        )

    async def readable(self, user_id: Optional[str], check_id: int) -> CheckRecord:
        """Load a check the caller may see: admins, or the owner in the same org."""
        user = await self.authenticate(user_id)
        record = await asyncio.to_thread(self.checks.find, check_id)
        if record is None:
            raise NotFoundError("チェックが見つかりません")
        if user.organization_id != record.organization_id:
            raise AuthorizationError("このチェックへのアクセス権限がありません")
        if user.role != "admin" and user.id != record.user_id:
            raise AuthorizationError("このチェックへのアクセス権限がありません")
        return record

    async def delete(self, user_id: Optional[str], check_id: int) -> None:
        await self.readable(user_id, check_id)
        await asyncio.to_thread(self.checks.soft_delete, check_id)
        log.info("check %s: soft-deleted", check_id)

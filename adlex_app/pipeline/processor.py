"""Runs one check from claim to terminal state."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Iterable, Optional

from adlex_app.api import limits
from adlex_app.core.extractor import (
    ExtractionResult,
    InvalidResponseShapeError,
    ResponseParseError,
    extract,
)
from adlex_app.llm.interfaces import (
    ProviderAuthError,
    ProviderBadResponseError,
    ProviderError,
    ProviderModelMismatchError,
    ProviderQuotaExceededError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    RawResponse,
)
from adlex_app.llm.prompts import CHECK_TOOL, CHECK_TOOL_CHOICE, build_check_messages
from adlex_app.realtime.broker import CheckEvent, CheckEventBroker
from adlex_app.storage.repo import CheckRepo, PersistenceError

log = logging.getLogger("adlex")

MAX_REFERENCE_ENTRIES = 20

SHUTDOWN_MESSAGE = "サーバー停止のためチェック処理を中断しました。もう一度お試しください。"
INTERRUPTED_MESSAGE = "サーバー再起動によりチェック処理が中断されました。もう一度お試しください。"


@dataclass
class QueueItem:
    check_id: int
    text: str
    organization_id: int
    priority: str = "normal"
    input_type: str = "text"
    enqueued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def describe_failure(exc: BaseException, timeout_s: Optional[float] = None) -> str:
    """User-facing message stored on a failed check."""
    if isinstance(exc, asyncio.TimeoutError):
        return f"チェック処理がタイムアウトしました（{timeout_s:g}秒）。もう一度お試しください。"
    if isinstance(exc, ProviderTimeoutError):
        return (
            f"AI分析エラー: AIプロバイダー({exc.provider})の応答がタイムアウトしました"
            f"（{exc.timeout:g}秒）。しばらくしてから再度お試しください。"
        )
    if isinstance(exc, ProviderUnavailableError):
        return (
            f"AI分析エラー: AIプロバイダー({exc.provider})に接続できません。"
            f"プロバイダーが起動しているか確認してください。詳細: {exc.detail}"
        )
    if isinstance(exc, ProviderQuotaExceededError):
        return f"AI分析エラー: APIの利用上限に達しました({exc.provider})。プランまたは請求設定を確認してください。"
    if isinstance(exc, ProviderAuthError):
        return f"AI分析エラー: APIキーが無効です({exc.provider})。認証情報を確認してください。"
    if isinstance(exc, ProviderModelMismatchError):
        return f"AI分析エラー: モデル設定が不正です - {exc.detail}"
    if isinstance(exc, ProviderBadResponseError):
        return f"AI分析エラー: AIプロバイダーの応答が不正です - {exc.detail}"
    if isinstance(exc, ProviderError):
        return f"AI分析エラー: {exc.detail}"
    if isinstance(exc, ResponseParseError):
        return f"AI分析エラー: 応答のJSON解析に失敗しました - {exc}"
    if isinstance(exc, InvalidResponseShapeError):
        return f"AI分析エラー: 応答形式が無効です - {exc}"
    if isinstance(exc, PersistenceError):
        return f"保存エラー: チェック結果の保存に失敗しました - {exc}"
    return f"処理エラー: {exc}"


class CheckProcessor:
    def __init__(
        self,
        repo: CheckRepo,
        gateway,
        lookup,
        broker: CheckEventBroker,
        *,
        timeout_s: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_base_s: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.repo = repo
        self.gateway = gateway
        self.lookup = lookup
        self.broker = broker
        self.timeout_s = limits.CHECK_TIMEOUT_S if timeout_s is None else timeout_s
        self.max_retries = limits.CHECK_MAX_RETRIES if max_retries is None else max_retries
        self.retry_base_s = limits.CHECK_RETRY_BASE_S if retry_base_s is None else retry_base_s
        self._sleep = sleep

    async def process(self, item: QueueItem) -> str:
        """Drive ``item`` to a terminal state; returns the resulting status."""
        check_id = item.check_id
        if not await asyncio.to_thread(self.repo.claim, check_id):
            log.info("check %s: already claimed or no longer pending, skipping", check_id)
            return "skipped"
        log.info("check %s: processing (priority=%s)", check_id, item.priority)
        self.broker.publish(CheckEvent("processing", check_id, {"status": "processing"}))

        try:
            result = await asyncio.wait_for(self._analyze(item), timeout=self.timeout_s)
        except asyncio.TimeoutError as exc:
            log.warning("check %s: timed out after %ss", check_id, self.timeout_s)
            return await self._fail(check_id, describe_failure(exc, self.timeout_s))
        except (ProviderError, ResponseParseError, InvalidResponseShapeError) as exc:
            log.warning("check %s: analysis failed: %s", check_id, exc)
            return await self._fail(check_id, describe_failure(exc))
        except Exception as exc:
            log.exception("check %s: unexpected error", check_id)
            return await self._fail(check_id, describe_failure(exc))

        try:
            record = await asyncio.to_thread(
                self.repo.complete, check_id, result.modified, result.violations
            )
        except PersistenceError as exc:
            log.error("check %s: %s", check_id, exc)
            return await self._fail(check_id, describe_failure(exc))

        log.info(
            "check %s: completed with %d violation(s) via %s",
            check_id,
            len(result.violations),
            result.source,
        )
        self.broker.publish(
            CheckEvent("completed", check_id, {"status": "completed", "check": record.to_dict()})
        )
        return "completed"

    async def _fail(self, check_id: int, message: str) -> str:
        if await asyncio.to_thread(self.repo.fail, check_id, message):
            self.broker.publish(CheckEvent("failed", check_id, {"status": "failed", "error": message}))
        return "failed"

    async def abandon(self, check_ids: Iterable[int], message: str = SHUTDOWN_MESSAGE) -> None:
        """Fail checks this process will not finish; terminal rows are left alone."""
        for check_id in check_ids:
            log.warning("check %s: abandoned (%s)", check_id, message)
            await self._fail(check_id, message)

    async def _analyze(self, item: QueueItem) -> ExtractionResult:
        candidates = await self.lookup.search(item.text, item.organization_id) if self.lookup else []
        references = sorted(
            (c for c in candidates if c.category == "NG"),
            key=lambda c: c.similarity,
            reverse=True,
        )[:MAX_REFERENCE_ENTRIES]
        log.debug("check %s: %d dictionary reference(s)", item.check_id, len(references))
        messages = build_check_messages(item.text, references)
        response = await self._complete_with_retry(item.check_id, messages)
        return extract(response, item.text)

    async def _complete_with_retry(self, check_id: int, messages) -> RawResponse:
        attempt = 0
        while True:
            try:
                return await self.gateway.create_chat_completion(
                    messages, tools=[CHECK_TOOL], tool_choice=CHECK_TOOL_CHOICE
                )
            except ProviderError as exc:
                if not exc.retryable or attempt >= self.max_retries:
                    raise
                delay = self.retry_base_s * (2**attempt)
                attempt += 1
                log.warning(
                    "check %s: %s, retry %d/%d in %.1fs",
                    check_id,
                    exc.detail,
                    attempt,
                    self.max_retries,
                    delay,
                )
                await self._sleep(delay)

"""错误恢复管理（RecoveryManager）。

流程：
1. classify_error 把任意异常归入 ErrorKind。
2. 按 DEFAULT_ACTIONS 选出恢复动作。
3. 执行动作：退避重试 / 精简回退 / 降级回复 / 交给用户 / 重建会话。

所有等待都是 asyncio.sleep，运行在生成任务内部，
因此取消生成任务会同时取消挂起中的重试。
"""

import asyncio
import json
import logging
import random
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import httpx

from chat_core.domain.conversation import Message, MessageMetadata
from chat_core.domain.exceptions import ChatError, FatalChatError
from chat_core.domain.taxonomy import (
    ErrorKind,
    RecoveryAction,
    default_action,
    kind_for_http_status,
)
from chat_core.infrastructure.logging.logger import logger


T = TypeVar("T")

# 字符串错误码 / 旧式 code 到 ErrorKind 的别名
_CODE_ALIASES: Dict[str, ErrorKind] = {
    "rate_limit": ErrorKind.RATE_LIMITED,
    "rate_limit_exceeded": ErrorKind.RATE_LIMITED,
    "network_error": ErrorKind.NETWORK_UNAVAILABLE,
    "timeout": ErrorKind.NETWORK_UNAVAILABLE,
    "context_length_exceeded": ErrorKind.CONTEXT_WINDOW_EXCEEDED,
    "content_filter": ErrorKind.GUARDRAIL_VIOLATION,
    "missing_api_key": ErrorKind.SESSION_INIT_FAILED,
    "model_not_found": ErrorKind.MODEL_UNAVAILABLE,
    "insufficient_quota": ErrorKind.RATE_LIMITED,
}

# 按顺序匹配，先命中先生效
_SUBSTRING_RULES = (
    (("rate limit", "too many requests"), ErrorKind.RATE_LIMITED),
    (("context window", "context length"), ErrorKind.CONTEXT_WINDOW_EXCEEDED),
    (("unsafe", "guardrail", "content policy"), ErrorKind.GUARDRAIL_VIOLATION),
    (("network", "connection", "offline", "unreachable", "timed out", "timeout"), ErrorKind.NETWORK_UNAVAILABLE),
    (("decode", "parsing", "malformed"), ErrorKind.DECODING_FAILURE),
    (("permission", "unauthorized", "forbidden"), ErrorKind.PERMISSION_DENIED),
)


def _kind_from_token(value: Any) -> Optional[ErrorKind]:
    if isinstance(value, ErrorKind):
        return value
    if not isinstance(value, str) or not value:
        return None
    token = value.strip().lower()
    try:
        return ErrorKind(token)
    except ValueError:
        return _CODE_ALIASES.get(token)


def _kind_from_payload(payload: Dict[str, Any]) -> Optional[ErrorKind]:
    for key in ("kind", "code", "type"):
        kind = _kind_from_token(payload.get(key))
        if kind:
            return kind
    nested = payload.get("error")
    if isinstance(nested, dict):
        return _kind_from_payload(nested)
    return _kind_from_token(nested)


def classify_error(exc: BaseException) -> ErrorKind:
    """把任意异常映射为 ErrorKind：类型化错误 > 结构化信息 > 描述关键字。"""

    if isinstance(exc, ChatError):
        return exc.kind

    for attr in ("kind", "code"):
        kind = _kind_from_token(getattr(exc, attr, None))
        if kind:
            return kind
    if exc.args and isinstance(exc.args[0], dict):
        kind = _kind_from_payload(exc.args[0])
        if kind:
            return kind

    if isinstance(exc, httpx.HTTPStatusError):
        return kind_for_http_status(exc.response.status_code, exc.response.text)
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError, asyncio.TimeoutError)):
        return ErrorKind.NETWORK_UNAVAILABLE
    if isinstance(exc, (json.JSONDecodeError, UnicodeDecodeError)):
        return ErrorKind.DECODING_FAILURE
    if isinstance(exc, PermissionError):
        return ErrorKind.PERMISSION_DENIED
    if isinstance(exc, ConnectionError):
        return ErrorKind.NETWORK_UNAVAILABLE

    text = str(exc).lower()
    for needles, kind in _SUBSTRING_RULES:
        if any(n in text for n in needles):
            return kind
    return ErrorKind.OTHER


def as_chat_error(exc: BaseException) -> ChatError:
    if isinstance(exc, ChatError):
        return exc
    return ChatError(classify_error(exc), str(exc) or type(exc).__name__, cause=exc)


@dataclass
class ErrorContext:
    kind: ErrorKind
    operation: str
    retry_count: int = 0
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class AttemptPlan:
    """一次尝试的执行计划。attempt=0 为首次调用。"""

    attempt: int = 0
    simplified: bool = False
    restarted: bool = False


@dataclass(frozen=True)
class RecoveryProgress:
    action: RecoveryAction
    attempt: int
    max_attempts: int
    kind: ErrorKind


Operation = Callable[[AttemptPlan], Awaitable[T]]
ProgressCallback = Callable[[RecoveryProgress], None]


DEGRADED_REPLIES = (
    "I'm experiencing some technical difficulties. Please try rephrasing your request.",
    "I'm having trouble processing that request right now. Could you try asking something else?",
    "There seems to be a temporary issue with my response generation. Please try again in a moment.",
    "I'm currently operating in limited mode. I can still help, but my responses might be simpler.",
)


def degraded_reply(kind: ErrorKind) -> Message:
    """降级模式下的固定回复，不调用模型。"""
    return Message(
        content=random.choice(DEGRADED_REPLIES),
        is_user=False,
        metadata=MessageMetadata(
            processing_time=0.0,
            token_count=0,
            confidence=0.3,
            tone="apologetic",
            category="degraded",
            requires_follow_up=False,
        ),
    )


class RecoveryManager:
    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self._sleep = sleep
        self.retry_count = 0
        self.last_action: Optional[RecoveryAction] = None
        self.last_error: Optional[ErrorContext] = None

    def backoff_delay(self, attempt: int) -> float:
        return self.base_delay * (2 ** (attempt - 1))

    async def execute(
        self,
        operation: Operation,
        *,
        operation_name: str = "generation",
        degraded: Optional[Callable[[ErrorKind], T]] = None,
        restart: Optional[Callable[[], Awaitable[None]]] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> T:
        """执行 operation，失败时按错误分类选择恢复动作。

        - degraded: DegradedMode 时生成替代结果；为空则直接抛出原错误。
        - restart: SystemRestart 时重建底层会话；为空则视为无法重建。
        - on_progress: 每个恢复步骤开始前回调一次。
        """

        self.retry_count = 0
        try:
            return await operation(AttemptPlan())
        except Exception as exc:
            return await self._recover(exc, operation, operation_name, degraded, restart, on_progress, restarted=False)

    async def _recover(self, exc, operation, operation_name, degraded, restart, on_progress, restarted):
        if isinstance(exc, FatalChatError):
            raise exc
        kind = classify_error(exc)
        action = default_action(kind)
        self.last_action = action
        self.last_error = ErrorContext(kind=kind, operation=operation_name, retry_count=self.retry_count)
        self._log(logging.WARNING, "Recovering from error", operation_name, kind=kind.value, action=action.value, error=str(exc))

        if action is RecoveryAction.RETRY:
            return await self._retry(exc, operation, operation_name, on_progress)

        if action is RecoveryAction.FALLBACK_STRATEGY:
            self._report(on_progress, action, 1, 1, kind)
            try:
                result = await operation(AttemptPlan(attempt=1, simplified=True, restarted=restarted))
            except Exception as e:
                self._log(logging.WARNING, "Fallback attempt failed", operation_name, error=str(e))
                raise as_chat_error(e)
            return result

        if action is RecoveryAction.DEGRADED_MODE:
            if degraded is None:
                raise as_chat_error(exc)
            self._report(on_progress, action, 1, 1, kind)
            return degraded(kind)

        if action is RecoveryAction.SYSTEM_RESTART:
            if restarted or restart is None:
                raise FatalChatError(str(exc), cause=exc) from exc
            self._report(on_progress, action, 1, 1, kind)
            try:
                await restart()
            except Exception as e:
                raise FatalChatError(f"session restart failed: {e}", cause=e) from e
            try:
                return await operation(AttemptPlan(attempt=1, restarted=True))
            except Exception as e:
                # 重建后的失败再走一次分类；再次需要重建即为致命错误
                return await self._recover(e, operation, operation_name, degraded, restart, on_progress, restarted=True)

        raise as_chat_error(exc)

    async def _retry(self, exc, operation, operation_name, on_progress):
        last_exc: BaseException = exc
        try:
            for attempt in range(1, self.max_attempts + 1):
                self.retry_count = attempt
                kind = classify_error(last_exc)
                self._report(on_progress, RecoveryAction.RETRY, attempt, self.max_attempts, kind)
                await self._sleep(self.backoff_delay(attempt))
                try:
                    return await operation(AttemptPlan(attempt=attempt))
                except Exception as e:
                    last_exc = e
                    next_kind = classify_error(e)
                    self._log(logging.WARNING, "Retry attempt failed", operation_name, attempt=attempt, kind=next_kind.value)
                    if isinstance(e, FatalChatError) or default_action(next_kind) is RecoveryAction.USER_INTERVENTION:
                        break
        finally:
            self.retry_count = 0
        raise as_chat_error(last_exc)

    @staticmethod
    def _report(on_progress, action, attempt, max_attempts, kind) -> None:
        if on_progress is not None:
            on_progress(RecoveryProgress(action=action, attempt=attempt, max_attempts=max_attempts, kind=kind))

    @staticmethod
    def _log(level: int, message: str, operation_name: str, **fields: Any) -> None:
        payload = {"operation": operation_name}
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})

"""错误分类（ErrorTaxonomy）。

封闭的失败类型集合，以及每种类型的：
- 默认恢复动作（RecoveryAction）；
- 面向用户的标题与恢复建议文本；
- 是否允许把建议原样展示给用户。

这里只放纯数据与查表函数，异常类定义见 exceptions.py，
对任意异常的分类逻辑见 engine/recovery.py。
"""

from enum import Enum
from typing import Dict, FrozenSet


class ErrorKind(str, Enum):
    CONTEXT_WINDOW_EXCEEDED = "context_window_exceeded"
    ASSETS_UNAVAILABLE = "assets_unavailable"
    GUARDRAIL_VIOLATION = "guardrail_violation"
    UNSUPPORTED_GUIDE = "unsupported_guide"
    UNSUPPORTED_LOCALE = "unsupported_locale"
    DECODING_FAILURE = "decoding_failure"
    RATE_LIMITED = "rate_limited"
    NETWORK_UNAVAILABLE = "network_unavailable"
    PERMISSION_DENIED = "permission_denied"
    SESSION_INIT_FAILED = "session_init_failed"
    MODEL_UNAVAILABLE = "model_unavailable"
    VOICE_RECOGNITION_FAILED = "voice_recognition_failed"
    EMPTY_RESPONSE = "empty_response"
    SAVE_FAILED = "save_failed"
    LOAD_FAILED = "load_failed"
    SESSION_NOT_FOUND = "session_not_found"
    OTHER = "other"


class RecoveryAction(str, Enum):
    RETRY = "retry"
    FALLBACK_STRATEGY = "fallback_strategy"
    DEGRADED_MODE = "degraded_mode"
    USER_INTERVENTION = "user_intervention"
    SYSTEM_RESTART = "system_restart"

    @property
    def description(self) -> str:
        return _ACTION_DESCRIPTIONS[self]


_ACTION_DESCRIPTIONS: Dict[RecoveryAction, str] = {
    RecoveryAction.RETRY: "Retry with exponential backoff",
    RecoveryAction.FALLBACK_STRATEGY: "Use fallback strategy",
    RecoveryAction.DEGRADED_MODE: "Operate in degraded mode",
    RecoveryAction.USER_INTERVENTION: "Requires user intervention",
    RecoveryAction.SYSTEM_RESTART: "System restart required",
}


DEFAULT_ACTIONS: Dict[ErrorKind, RecoveryAction] = {
    ErrorKind.NETWORK_UNAVAILABLE: RecoveryAction.RETRY,
    ErrorKind.RATE_LIMITED: RecoveryAction.RETRY,
    ErrorKind.VOICE_RECOGNITION_FAILED: RecoveryAction.RETRY,
    ErrorKind.SAVE_FAILED: RecoveryAction.RETRY,
    ErrorKind.LOAD_FAILED: RecoveryAction.RETRY,
    ErrorKind.EMPTY_RESPONSE: RecoveryAction.RETRY,
    ErrorKind.SESSION_INIT_FAILED: RecoveryAction.SYSTEM_RESTART,
    ErrorKind.ASSETS_UNAVAILABLE: RecoveryAction.SYSTEM_RESTART,
    ErrorKind.MODEL_UNAVAILABLE: RecoveryAction.FALLBACK_STRATEGY,
    ErrorKind.DECODING_FAILURE: RecoveryAction.FALLBACK_STRATEGY,
    ErrorKind.CONTEXT_WINDOW_EXCEEDED: RecoveryAction.DEGRADED_MODE,
    ErrorKind.UNSUPPORTED_GUIDE: RecoveryAction.DEGRADED_MODE,
    ErrorKind.GUARDRAIL_VIOLATION: RecoveryAction.USER_INTERVENTION,
    ErrorKind.PERMISSION_DENIED: RecoveryAction.USER_INTERVENTION,
    ErrorKind.UNSUPPORTED_LOCALE: RecoveryAction.USER_INTERVENTION,
    ErrorKind.SESSION_NOT_FOUND: RecoveryAction.USER_INTERVENTION,
    ErrorKind.OTHER: RecoveryAction.FALLBACK_STRATEGY,
}


# 只有这些类型的建议文本会原样展示给用户，其余统一转成“请重试”
USER_FACING_KINDS: FrozenSet[ErrorKind] = frozenset({
    ErrorKind.GUARDRAIL_VIOLATION,
    ErrorKind.CONTEXT_WINDOW_EXCEEDED,
    ErrorKind.RATE_LIMITED,
})

GENERIC_USER_MESSAGE = "Something went wrong while generating a reply. Please try again."


_HEADLINES: Dict[ErrorKind, str] = {
    ErrorKind.CONTEXT_WINDOW_EXCEEDED: "Failed to respond: Context window size exceeded.",
    ErrorKind.ASSETS_UNAVAILABLE: "Failed to respond: Required AI assets are currently unavailable.",
    ErrorKind.GUARDRAIL_VIOLATION: "Failed to respond: Content detected likely to be unsafe.",
    ErrorKind.UNSUPPORTED_GUIDE: "Failed to respond: Unsupported response format requested.",
    ErrorKind.UNSUPPORTED_LOCALE: "Failed to respond: Language or locale not supported.",
    ErrorKind.DECODING_FAILURE: "Failed to respond: Failed to process AI response format.",
    ErrorKind.RATE_LIMITED: "Failed to respond: Too many requests, please try again later.",
    ErrorKind.NETWORK_UNAVAILABLE: "Failed to respond: The network is unavailable.",
    ErrorKind.PERMISSION_DENIED: "Failed to respond: Permission denied.",
    ErrorKind.SESSION_INIT_FAILED: "Failed to respond: The model session could not be started.",
    ErrorKind.MODEL_UNAVAILABLE: "Failed to respond: The model is currently unavailable.",
    ErrorKind.VOICE_RECOGNITION_FAILED: "Voice recognition failed.",
    ErrorKind.EMPTY_RESPONSE: "Failed to respond: The model returned an empty reply.",
    ErrorKind.SAVE_FAILED: "Failed to save conversation data.",
    ErrorKind.LOAD_FAILED: "Failed to load conversation data.",
    ErrorKind.SESSION_NOT_FOUND: "The conversation could not be found.",
    ErrorKind.OTHER: "An unknown error occurred.",
}


_SUGGESTIONS: Dict[ErrorKind, str] = {
    ErrorKind.CONTEXT_WINDOW_EXCEEDED: "Try starting a new conversation or shortening your message.",
    ErrorKind.GUARDRAIL_VIOLATION: "Please rephrase your request to avoid potentially harmful content.",
    ErrorKind.ASSETS_UNAVAILABLE: "Please try again in a few moments. The AI model may be temporarily unavailable.",
    ErrorKind.DECODING_FAILURE: "Please try rephrasing your request or start a new conversation.",
    ErrorKind.UNSUPPORTED_GUIDE: "Try simplifying your request or asking in a different way.",
    ErrorKind.RATE_LIMITED: "Please wait a moment before sending another message.",
    ErrorKind.UNSUPPORTED_LOCALE: "Please try using a supported language or locale.",
    ErrorKind.NETWORK_UNAVAILABLE: "Check your connection and try again.",
    ErrorKind.PERMISSION_DENIED: "Grant the required permission and try again.",
    ErrorKind.SESSION_INIT_FAILED: "Start a new conversation to reset the assistant.",
    ErrorKind.MODEL_UNAVAILABLE: "The assistant is busy right now. Please try again shortly.",
    ErrorKind.VOICE_RECOGNITION_FAILED: "Try speaking again or type your message instead.",
    ErrorKind.EMPTY_RESPONSE: "Please try sending your message again.",
    ErrorKind.SAVE_FAILED: "Your conversation could not be saved. Please try again.",
    ErrorKind.LOAD_FAILED: "Your conversations could not be loaded. Please try again.",
    ErrorKind.SESSION_NOT_FOUND: "The conversation may have been deleted. Start a new one.",
    ErrorKind.OTHER: "Unknown error, Please try again later.",
}


def default_action(kind: ErrorKind) -> RecoveryAction:
    return DEFAULT_ACTIONS.get(kind, RecoveryAction.FALLBACK_STRATEGY)


def headline_for(kind: ErrorKind) -> str:
    return _HEADLINES[kind]


def suggestion_for(kind: ErrorKind) -> str:
    return _SUGGESTIONS[kind]


def is_user_facing(kind: ErrorKind) -> bool:
    return kind in USER_FACING_KINDS


_CONTEXT_HINTS = ("context length", "context_length", "maximum context", "too many tokens", "context window")
_GUARDRAIL_HINTS = ("content_filter", "content policy", "safety system")
_FORMAT_HINTS = ("response_format", "json_schema")


def kind_for_http_status(status: int, body: str = "") -> ErrorKind:
    """HTTP 状态码（及响应体关键字）到错误类型的映射。"""
    lowered = (body or "").lower()
    if status == 429:
        return ErrorKind.RATE_LIMITED
    if status in (401, 403):
        return ErrorKind.PERMISSION_DENIED
    if status == 404 or status >= 500:
        return ErrorKind.MODEL_UNAVAILABLE
    if any(h in lowered for h in _CONTEXT_HINTS):
        return ErrorKind.CONTEXT_WINDOW_EXCEEDED
    if any(h in lowered for h in _GUARDRAIL_HINTS):
        return ErrorKind.GUARDRAIL_VIOLATION
    if any(h in lowered for h in _FORMAT_HINTS):
        return ErrorKind.UNSUPPORTED_GUIDE
    return ErrorKind.OTHER

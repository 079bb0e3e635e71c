"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在 Coordinator 层做统一捕获并转换为对话状态。

ChatError 是一个“带标签的联合类型”：kind 标识失败类型，
message 是技术细节，suggestion 是可展示给用户的恢复建议。
"""

from typing import Optional

from chat_core.domain.taxonomy import (
    ErrorKind,
    GENERIC_USER_MESSAGE,
    headline_for,
    is_user_facing,
    suggestion_for,
)


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 技术性错误信息，主要用于日志。
        extra: 其他补充字段（例如 trace_id、session_id 等）。
    """

    def __init__(self, code: str, message: str, **extra):
        self.code = code
        self.message = message
        self.extra = extra
        super().__init__(message)


class ChatError(BusinessError):
    """对话生成/恢复链路中的错误。"""

    def __init__(
        self,
        kind: ErrorKind,
        message: Optional[str] = None,
        suggestion: Optional[str] = None,
        cause: Optional[BaseException] = None,
        **extra,
    ):
        self.kind = kind
        self.cause = cause
        self._suggestion = suggestion
        super().__init__(code=kind.value.upper(), message=message or headline_for(kind), **extra)

    @property
    def headline(self) -> str:
        return headline_for(self.kind)

    @property
    def recovery_suggestion(self) -> str:
        # Provider 携带的建议优先于默认文本
        return self._suggestion or suggestion_for(self.kind)

    @property
    def is_user_facing(self) -> bool:
        return is_user_facing(self.kind)

    def user_message(self) -> str:
        if self.is_user_facing:
            return self.recovery_suggestion
        return GENERIC_USER_MESSAGE

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value!r}, message={self.message!r})"


class DataError(ChatError):
    """持久化层错误：sessionNotFound / saveFailed / loadFailed。"""

    def __init__(self, kind: ErrorKind, message: Optional[str] = None, **extra):
        if kind not in (ErrorKind.SESSION_NOT_FOUND, ErrorKind.SAVE_FAILED, ErrorKind.LOAD_FAILED):
            raise ValueError(f"DataError does not accept kind {kind!r}")
        super().__init__(kind, message, **extra)


class FatalChatError(ChatError):
    """模型会话无法重建：只能由用户显式开启新会话来恢复。"""

    def __init__(self, message: Optional[str] = None, cause: Optional[BaseException] = None, **extra):
        super().__init__(ErrorKind.SESSION_INIT_FAILED, message, cause=cause, **extra)

    def user_message(self) -> str:
        return suggestion_for(ErrorKind.SESSION_INIT_FAILED)


class IllegalTransitionError(BusinessError):
    """状态机收到了不合法的状态迁移请求。"""

    def __init__(self, source: str, target: str):
        self.source = source
        self.target = target
        super().__init__(code="ILLEGAL_TRANSITION", message=f"{source} -> {target}")

"""对话状态机。

状态：Active（初始）、VoiceListening、Thinking、Streaming、Error(detail)。
没有终止状态，整个对话是循环的。

“同时只能有一个出站迁移”由 accepts_input 保证：只有 Active /
VoiceListening 才能进入 Thinking，生成过程中再次发送会被拒绝而不是排队。
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, FrozenSet, List, Optional

from chat_core.domain.exceptions import IllegalTransitionError


class ChatStatus(str, Enum):
    ACTIVE = "active"
    VOICE_LISTENING = "voice_listening"
    THINKING = "thinking"
    STREAMING = "streaming"
    ERROR = "error"


@dataclass(frozen=True)
class ChatState:
    status: ChatStatus
    detail: Optional[str] = None
    fatal: bool = False

    @property
    def is_generating(self) -> bool:
        return self.status in (ChatStatus.THINKING, ChatStatus.STREAMING)

    def __str__(self) -> str:
        if self.status is ChatStatus.ERROR:
            return f"error({self.detail or ''})"
        return self.status.value


ACTIVE = ChatState(ChatStatus.ACTIVE)

_ALLOWED: Dict[ChatStatus, FrozenSet[ChatStatus]] = {
    ChatStatus.ACTIVE: frozenset({ChatStatus.THINKING, ChatStatus.VOICE_LISTENING, ChatStatus.ERROR}),
    ChatStatus.VOICE_LISTENING: frozenset({ChatStatus.ACTIVE, ChatStatus.THINKING, ChatStatus.ERROR}),
    # Thinking/Streaming -> Active 同时覆盖正常完成与取消
    ChatStatus.THINKING: frozenset({ChatStatus.STREAMING, ChatStatus.ACTIVE, ChatStatus.ERROR}),
    ChatStatus.STREAMING: frozenset({ChatStatus.ACTIVE, ChatStatus.ERROR}),
    ChatStatus.ERROR: frozenset({ChatStatus.ACTIVE, ChatStatus.ERROR}),
}

StateListener = Callable[[ChatState, ChatState], None]


class StateMachine:
    def __init__(self) -> None:
        self._state = ACTIVE
        self._listeners: List[StateListener] = []

    @property
    def state(self) -> ChatState:
        return self._state

    @property
    def status(self) -> ChatStatus:
        return self._state.status

    @property
    def accepts_input(self) -> bool:
        return self._state.status in (ChatStatus.ACTIVE, ChatStatus.VOICE_LISTENING)

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def can_transition(self, target: ChatStatus) -> bool:
        if target is self._state.status and target is not ChatStatus.ERROR:
            return True
        if self._state.fatal and target is not ChatStatus.ERROR:
            return False
        return target in _ALLOWED[self._state.status]

    def transition(self, target: ChatStatus) -> ChatState:
        """迁移到非 Error 状态；重复进入当前状态视为 no-op。"""
        if target is ChatStatus.ERROR:
            raise ValueError("use fail() to enter the error state")
        if target is self._state.status:
            return self._state
        if not self.can_transition(target):
            raise IllegalTransitionError(str(self._state), target.value)
        return self._set(ChatState(target))

    def fail(self, detail: str, fatal: bool = False) -> ChatState:
        """any -> Error。已处于致命错误时不会被非致命错误覆盖。"""
        if self._state.fatal and not fatal:
            return self._state
        return self._set(ChatState(ChatStatus.ERROR, detail=detail, fatal=fatal))

    def dismiss(self) -> bool:
        """Error -> Active；致命错误不可关闭。"""
        if self._state.status is not ChatStatus.ERROR or self._state.fatal:
            return False
        self._set(ACTIVE)
        return True

    def reset(self) -> ChatState:
        """强制回到 Active，只在用户显式开启新会话时使用。"""
        if self._state == ACTIVE:
            return self._state
        return self._set(ACTIVE)

    def _set(self, new: ChatState) -> ChatState:
        old = self._state
        self._state = new
        for listener in list(self._listeners):
            listener(old, new)
        return new

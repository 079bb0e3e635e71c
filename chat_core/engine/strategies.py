"""回复生成策略。

- AtomicResponseStrategy: 一次 respond 请求，拿到完整结构化回复后返回。
- StreamingResponseStrategy: 消费 stream_response 的快照，逐步合并到
  PartialResult 并回调 on_partial，收到终止信号后才 finalize。

两种策略共享：历史窗口裁剪、整体生成超时、空回复检测和元数据构造。
"""

import asyncio
import time
from abc import ABC, abstractmethod
from contextlib import aclosing
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional

from chat_core.domain.conversation import ChatSettings, Message, MessageMetadata
from chat_core.domain.exceptions import ChatError
from chat_core.domain.models import (
    CHAT_REPLY_SCHEMA,
    ChatTurn,
    GenerationOptions,
    ModelRequest,
    PartialResult,
)
from chat_core.domain.personas import Persona
from chat_core.domain.taxonomy import ErrorKind
from chat_core.providers.base import ModelSession
from chat_core.tools.executor import ToolExecutor


PartialCallback = Callable[[str], None]


def build_history_window(messages: List[Message], max_chars: int) -> List[ChatTurn]:
    """从最新消息往前取，总字符数不超过 max_chars。

    最新的一条即使单独超长也会被截断保留尾部，保证模型至少能看到最近的上下文。
    """

    window: List[ChatTurn] = []
    used = 0
    for msg in reversed(messages):
        text = msg.content or ""
        if not text:
            continue
        remaining = max_chars - used
        if remaining <= 0:
            break
        if len(text) > remaining:
            if window:
                break
            text = text[-remaining:]
        window.append(ChatTurn(role="user" if msg.is_user else "assistant", content=text))
        used += len(text)
    window.reverse()
    return window


@dataclass
class ResponseContext:
    """一次生成所需的全部上下文。

    messages 为当前用户输入之前的会话消息，窗口在 build_request 时裁剪。
    """

    session: ModelSession
    persona: Persona = Persona.NONE
    messages: List[Message] = field(default_factory=list)
    max_context_length: int = 8000
    tools: Optional[ToolExecutor] = None
    options: GenerationOptions = field(default_factory=GenerationOptions)
    generation_timeout: float = 60.0

    def simplified(self) -> "ResponseContext":
        """回退策略：上下文窗口与 token 预算减半。"""
        return replace(
            self,
            max_context_length=max(1, self.max_context_length // 2),
            options=self.options.simplified(),
        )

    def build_request(self, prompt: str) -> ModelRequest:
        return ModelRequest(
            prompt=prompt,
            history=build_history_window(self.messages, self.max_context_length),
            schema=CHAT_REPLY_SCHEMA,
            options=self.options,
            tools=self.tools if self.tools else None,
        )


class ResponseStrategy(ABC):
    name = "base"

    async def generate(
        self,
        prompt: str,
        context: ResponseContext,
        on_partial: Optional[PartialCallback] = None,
    ) -> Message:
        started = time.monotonic()
        request = context.build_request(prompt)
        try:
            fields = await asyncio.wait_for(
                self._produce(request, context, on_partial),
                timeout=context.generation_timeout,
            )
        except asyncio.TimeoutError as e:
            raise ChatError(ErrorKind.NETWORK_UNAVAILABLE, "generation timed out", cause=e)
        return build_reply(fields, time.monotonic() - started)

    @abstractmethod
    async def _produce(
        self,
        request: ModelRequest,
        context: ResponseContext,
        on_partial: Optional[PartialCallback],
    ) -> Dict[str, Any]:
        ...


class AtomicResponseStrategy(ResponseStrategy):
    name = "atomic"

    async def _produce(self, request, context, on_partial):
        fields = await context.session.respond(request)
        partial = PartialResult(request.schema)
        partial.merge_fields(fields)
        partial.mark_complete()
        return partial.finalize()


class StreamingResponseStrategy(ResponseStrategy):
    name = "streaming"

    async def _produce(self, request, context, on_partial):
        partial = PartialResult(request.schema)
        last_content = ""
        async with aclosing(context.session.stream_response(request)) as updates:
            async for update in updates:
                if partial.merge(update) and on_partial is not None:
                    content = partial.best_content()
                    if content and content != last_content:
                        last_content = content
                        on_partial(content)
                if partial.complete:
                    break
        return partial.finalize()


def select_strategy(chat_settings: ChatSettings, simplified: bool = False) -> ResponseStrategy:
    """回退尝试总是使用 Atomic，否则按 streaming_enabled 选择。"""
    if simplified or not chat_settings.streaming_enabled:
        return AtomicResponseStrategy()
    return StreamingResponseStrategy()


def build_reply(fields: Dict[str, Any], processing_time: float) -> Message:
    content = str(fields.get("content") or "").strip()
    if not content:
        raise ChatError(ErrorKind.EMPTY_RESPONSE, "model returned empty content")
    metadata = MessageMetadata(
        processing_time=round(processing_time, 3),
        token_count=len(content.split()),
        confidence=_as_float(fields.get("confidence")),
        tone=_as_str(fields.get("tone")),
        category=_as_str(fields.get("category")),
        topics=[str(t) for t in fields.get("topics") or [] if t],
        requires_follow_up=_as_bool(fields.get("requires_follow_up")),
    )
    return Message(content=content, is_user=False, metadata=metadata)


def _as_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _as_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _as_bool(value: Any) -> Optional[bool]:
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "1")
    return bool(value)

"""Coordinator 对外广播的事件流。

每个订阅者拥有独立的 asyncio.Queue，事件按发布顺序送达；
订阅者消费慢不会阻塞发布方（队列无上限）。
订阅在 subscribe() 返回时即生效，之后发布的事件都不会丢失。
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

from chat_core.domain.conversation import Message
from chat_core.domain.state import ChatState


EventKind = Literal["state", "partial", "message", "recovery", "rejected", "title", "error"]

_CLOSED = object()


@dataclass
class ChatEvent:
    """Coordinator 产生的事件。

    kind:
        - "state": 状态迁移，携带 old_state / state。
        - "partial": 流式生成中的最新内容（text）。
        - "message": 一条消息已提交（message）。
        - "recovery": 恢复流程进度（data 中包含 action/attempt/max_attempts/kind）。
        - "rejected": send_message 被拒绝（text 为原因）。
        - "title": 会话标题已更新（text）。
        - "error": 不可恢复的错误（text 为展示给用户的文案）。
    """

    kind: EventKind
    session_id: Optional[str] = None
    state: Optional[ChatState] = None
    old_state: Optional[ChatState] = None
    text: Optional[str] = None
    message: Optional[Message] = None
    data: Dict[str, Any] = field(default_factory=dict)


class Subscription:
    """单个订阅者的事件队列，可 async for 迭代。"""

    def __init__(self, stream: "EventStream"):
        self._stream = stream
        self._queue: asyncio.Queue = asyncio.Queue()
        self._done = False

    def _put(self, item: Any) -> None:
        self._queue.put_nowait(item)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ChatEvent:
        if self._done:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            self._done = True
            raise StopAsyncIteration
        return item

    def drain(self) -> List[ChatEvent]:
        """取出当前已排队的全部事件，不等待。"""
        items: List[ChatEvent] = []
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is _CLOSED:
                self._done = True
                break
            items.append(item)
        return items

    def close(self) -> None:
        self._stream._remove(self)
        self._put(_CLOSED)


class EventStream:
    def __init__(self) -> None:
        self._subscribers: List[Subscription] = []
        self._closed = False

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> Subscription:
        sub = Subscription(self)
        if self._closed:
            sub._put(_CLOSED)
        else:
            self._subscribers.append(sub)
        return sub

    def publish(self, event: ChatEvent) -> None:
        if self._closed:
            return
        for sub in list(self._subscribers):
            sub._put(event)

    def close(self) -> None:
        self._closed = True
        for sub in list(self._subscribers):
            sub._put(_CLOSED)
        self._subscribers.clear()

    def _remove(self, sub: Subscription) -> None:
        if sub in self._subscribers:
            self._subscribers.remove(sub)

"""模型会话抽象接口。

引擎不直接依赖具体厂商的 HTTP SDK，而是依赖此协议：

- 每个厂商实现一个 ModelSession（如 OpenAICompatSession）。
- 会话在创建时绑定 system instructions（由 Persona 决定），
  之后的每次请求只携带历史窗口与本轮输入。
- 负责把 ModelRequest 转成具体 API 请求，并把结构化回复解析为 dict。
- 所有失败都应以 ChatError 抛出，kind 取自错误分类表。

这样可以在不改引擎代码的前提下接入更多厂商。
"""

from typing import Any, AsyncIterator, Callable, Dict, Protocol

from chat_core.domain.models import ModelRequest, StreamUpdate


class ModelSession(Protocol):
    """模型会话协议。

    - name: Provider 名称，用于日志。
    - instructions: 创建会话时绑定的 system prompt。
    - respond(req): 一次性返回完整的结构化回复（字段名 -> 值）。
    - stream_response(req): 逐步产出 StreamUpdate，最后一条 complete=True。
    """

    name: str
    instructions: str

    async def respond(self, request: ModelRequest) -> Dict[str, Any]:
        ...

    def stream_response(self, request: ModelRequest) -> AsyncIterator[StreamUpdate]:
        ...


ModelSessionFactory = Callable[[str], ModelSession]

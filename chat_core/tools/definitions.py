"""工具数据结构定义。

- ToolCapability: 可由模型调用的工具能力协议。
- FunctionTool: 把普通 async 函数包装成 ToolCapability。
- ToolCall / ToolResult: 模型发起的一次调用及其文本结果。
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Protocol, runtime_checkable


@runtime_checkable
class ToolCapability(Protocol):
    """工具能力协议。

    - name: 暴露给模型的函数名。
    - description: 给模型看的用途说明。
    - argument_schema: 参数的 JSON Schema（object 类型）。
    - call(args): 执行工具，返回文本结果。
    """

    name: str
    description: str
    argument_schema: Dict[str, Any]

    async def call(self, args: Dict[str, Any]) -> str:
        ...


ToolFunc = Callable[[Dict[str, Any]], Awaitable[str]]


@dataclass
class FunctionTool:
    """一个由 async 函数实现的工具。"""

    name: str
    description: str
    func: ToolFunc
    argument_schema: Dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}, "required": []}
    )

    async def call(self, args: Dict[str, Any]) -> str:
        result = await self.func(args)
        return result if isinstance(result, str) else str(result)


@dataclass
class ToolCall:
    """模型发起的一次工具调用请求。"""

    id: str
    name: str
    arguments: Dict[str, Any]


@dataclass
class ToolResult:
    """工具执行结果的封装（文本形式）。"""

    call_id: str
    content: str
    is_error: bool = False

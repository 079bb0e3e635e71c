import asyncio
import json
from typing import Any, Dict, Iterable, List, Optional

from chat_core.infrastructure.logging.logger import logger
from .definitions import ToolCall, ToolCapability, ToolResult


NOT_REGISTERED = "Tool not registered"


class ToolExecutor:
    """在一组已启用的工具上执行模型发起的调用。

    每次调用受 timeout 约束；超时或异常都转成错误文本返回给模型，
    而不是向上抛出，避免一次工具失败拖垮整轮生成。
    取消（CancelledError）照常向上传播。
    """

    def __init__(self, tools: Iterable[ToolCapability], timeout: Optional[float] = None):
        self._tools: Dict[str, ToolCapability] = {t.name: t for t in tools}
        self.timeout = timeout

    @property
    def names(self) -> List[str]:
        return list(self._tools)

    def __bool__(self) -> bool:
        return bool(self._tools)

    async def execute(self, call: ToolCall) -> ToolResult:
        tool = self._tools.get(call.name)
        if tool is None:
            return ToolResult(call_id=call.id, content=NOT_REGISTERED, is_error=True)
        try:
            content = await asyncio.wait_for(tool.call(call.arguments), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning("tool_timeout", extra={"extra": {"tool": call.name, "timeout": self.timeout}})
            return ToolResult(call_id=call.id, content=f"Error: tool '{call.name}' timed out", is_error=True)
        except Exception as exc:
            logger.warning("tool_error", extra={"extra": {"tool": call.name, "error": str(exc)}})
            return ToolResult(call_id=call.id, content=f"Error: {exc}", is_error=True)
        return ToolResult(call_id=call.id, content=content)

    def definitions(self) -> List[Dict[str, Any]]:
        """转换为 OpenAI 兼容的 function tool 描述。"""

        defs: List[Dict[str, Any]] = []
        for tool in self._tools.values():
            params = dict(tool.argument_schema or {})
            params.setdefault("type", "object")
            params.setdefault("properties", {})
            defs.append(
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": params,
                    },
                }
            )
        return defs

    @staticmethod
    def parse_arguments(raw: Any) -> Dict[str, Any]:
        """解析工具调用的 arguments 字段。

        OpenAI 兼容接口把 arguments 作为 JSON 字符串返回，这里做一层
        json.loads 尝试，失败时保留原始字符串到 `_raw`，避免信息丢失。
        """

        if isinstance(raw, dict):
            return raw
        if isinstance(raw, str):
            if not raw.strip():
                return {}
            try:
                parsed = json.loads(raw)
            except json.JSONDecodeError:
                return {"_raw": raw}
            return parsed if isinstance(parsed, dict) else {"_raw": raw}
        return {}

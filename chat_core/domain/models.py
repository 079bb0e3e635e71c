"""面向模型会话的请求/响应数据模型。

本模块定义了引擎与 ModelSession 之间共享的标准数据结构：

- ChatTurn: 一条发给模型的历史消息（system/user/assistant/tool）。
- ResponseSchema: 结构化回复的字段声明，可导出为 JSON Schema。
- ModelRequest: 发给模型会话的完整请求。
- StreamUpdate: 流式生成中的一次快照。
- PartialResult: 按 schema 字段逐步合并的中间结果。

所有 ModelSession 实现（如 OpenAICompatSession）都只依赖这些模型，
并负责在各自的 API JSON 与这些模型之间做转换。
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Tuple, TYPE_CHECKING

from chat_core.domain.exceptions import ChatError
from chat_core.domain.taxonomy import ErrorKind

if TYPE_CHECKING:
    # 仅在类型检查时导入，避免运行时循环依赖
    from chat_core.tools.definitions import ToolCall
    from chat_core.tools.executor import ToolExecutor


Role = Literal["system", "user", "assistant", "tool"]


@dataclass
class ChatTurn:
    """一条对话消息，既可用于历史窗口，也可用于工具调用回合。

    - tool_calls: role 为 "assistant" 且模型触发工具调用时的调用列表。
    - tool_call_id: role 为 "tool" 时关联的调用 id。
    """

    role: Role
    content: str
    tool_calls: Optional[List["ToolCall"]] = None
    tool_call_id: Optional[str] = None


FieldType = Literal["string", "number", "boolean", "array"]


@dataclass(frozen=True)
class SchemaField:
    name: str
    type: FieldType
    description: str = ""
    required: bool = False
    minimum: Optional[float] = None
    maximum: Optional[float] = None

    def to_json_schema(self) -> Dict[str, Any]:
        prop: Dict[str, Any] = {"type": self.type}
        if self.type == "array":
            prop["items"] = {"type": "string"}
        if self.description:
            prop["description"] = self.description
        if self.minimum is not None:
            prop["minimum"] = self.minimum
        if self.maximum is not None:
            prop["maximum"] = self.maximum
        return prop


@dataclass(frozen=True)
class ResponseSchema:
    """结构化回复 schema。字段顺序即模型生成顺序。"""

    name: str
    description: str
    fields: Tuple[SchemaField, ...]

    @property
    def field_names(self) -> List[str]:
        return [f.name for f in self.fields]

    @property
    def required(self) -> List[str]:
        return [f.name for f in self.fields if f.required]

    def to_json_schema(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "description": self.description,
            "properties": {f.name: f.to_json_schema() for f in self.fields},
            "required": self.required,
            "additionalProperties": False,
        }


CHAT_REPLY_SCHEMA = ResponseSchema(
    name="chat_reply",
    description="A structured reply to the user's latest message.",
    fields=(
        SchemaField("content", "string", "The reply text shown to the user.", required=True),
        SchemaField("tone", "string", "The tone of the reply, e.g. friendly, formal, empathetic.", required=True),
        SchemaField("confidence", "number", "Confidence in the reply from 0 to 1.", required=True, minimum=0, maximum=1),
        SchemaField("category", "string", "A short category for the reply, e.g. question, advice, chitchat."),
        SchemaField("topics", "array", "Main topics discussed in the reply."),
        SchemaField("requires_follow_up", "boolean", "Whether the user is likely to need a follow-up."),
    ),
)

SESSION_TITLE_SCHEMA = ResponseSchema(
    name="session_title",
    description="A short title summarizing a conversation.",
    fields=(
        SchemaField("title", "string", "A concise title of 3 to 6 words.", required=True),
        SchemaField("confidence", "number", "Confidence in the title from 0 to 1.", required=True, minimum=0, maximum=1),
    ),
)


@dataclass
class GenerationOptions:
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None

    def simplified(self) -> "GenerationOptions":
        """回退策略使用的精简参数：max_tokens 减半。"""
        if self.max_tokens is None:
            return GenerationOptions(temperature=self.temperature, max_tokens=None)
        return GenerationOptions(temperature=self.temperature, max_tokens=max(1, self.max_tokens // 2))


@dataclass
class ModelRequest:
    """一次完整的模型请求。

    history 已经由策略按 max_context_length 裁剪；tools 为空表示不开放工具。
    """

    prompt: str
    history: List[ChatTurn] = field(default_factory=list)
    schema: Optional[ResponseSchema] = CHAT_REPLY_SCHEMA
    options: GenerationOptions = field(default_factory=GenerationOptions)
    tools: Optional["ToolExecutor"] = None


@dataclass
class StreamUpdate:
    """流式生成中的一次快照：已知字段的当前值，complete 表示终止信号。"""

    fields: Dict[str, Any] = field(default_factory=dict)
    complete: bool = False


class PartialResult:
    """按 schema 字段逐步合并的中间结果。

    - 合并是单调的：已经有值的字段不会被 None 覆盖回空。
    - 未声明的字段直接忽略。
    - 只有收到 complete 信号后才能 finalize。
    """

    def __init__(self, schema: ResponseSchema):
        self.schema = schema
        self._slots: Dict[str, Any] = {name: None for name in schema.field_names}
        self._complete = False

    @property
    def complete(self) -> bool:
        return self._complete

    def get(self, name: str) -> Any:
        return self._slots.get(name)

    def merge(self, update: StreamUpdate) -> bool:
        """合并一次快照，返回是否有字段发生变化。"""
        changed = False
        for name, value in (update.fields or {}).items():
            if name not in self._slots or value is None:
                continue
            if self._slots[name] != value:
                self._slots[name] = value
                changed = True
        if update.complete:
            self._complete = True
        return changed

    def merge_fields(self, fields: Dict[str, Any]) -> bool:
        return self.merge(StreamUpdate(fields=dict(fields or {})))

    def mark_complete(self) -> None:
        self._complete = True

    def best_content(self) -> str:
        value = self._slots.get("content")
        return value if isinstance(value, str) else ""

    def missing_required(self) -> List[str]:
        return [name for name in self.schema.required if self._slots.get(name) is None]

    def finalize(self) -> Dict[str, Any]:
        if not self._complete:
            raise ChatError(ErrorKind.DECODING_FAILURE, "stream ended before completion")
        missing = self.missing_required()
        if missing:
            raise ChatError(ErrorKind.DECODING_FAILURE, f"missing required fields: {', '.join(missing)}")
        return dict(self._slots)

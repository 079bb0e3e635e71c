"""会话与消息的领域模型，以及 PersistenceGateway 抽象。"""

import bisect
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol
from uuid import uuid4

from chat_core.domain.personas import Persona


DEFAULT_TITLE = "New Conversation"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid4().hex}"


def format_ts(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_ts(value: str) -> datetime:
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


@dataclass
class MessageMetadata:
    processing_time: Optional[float] = None
    token_count: Optional[int] = None
    confidence: Optional[float] = None
    tone: Optional[str] = None
    category: Optional[str] = None
    topics: List[str] = field(default_factory=list)
    requires_follow_up: Optional[bool] = None

    def __post_init__(self) -> None:
        if self.confidence is not None:
            self.confidence = min(1.0, max(0.0, float(self.confidence)))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processing_time": self.processing_time,
            "token_count": self.token_count,
            "confidence": self.confidence,
            "tone": self.tone,
            "category": self.category,
            "topics": list(self.topics),
            "requires_follow_up": self.requires_follow_up,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MessageMetadata":
        return cls(
            processing_time=data.get("processing_time"),
            token_count=data.get("token_count"),
            confidence=data.get("confidence"),
            tone=data.get("tone"),
            category=data.get("category"),
            topics=list(data.get("topics") or []),
            requires_follow_up=data.get("requires_follow_up"),
        )


@dataclass
class Message:
    """一条对话消息。

    - is_user: True 为用户消息，False 为助手消息。
    - reactions: 有序且不重复的表情符号列表。
    - metadata: 仅助手消息携带，记录耗时、置信度、语气等。
    """

    content: str
    is_user: bool
    timestamp: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=lambda: new_id("m"))
    reactions: List[str] = field(default_factory=list)
    metadata: Optional[MessageMetadata] = None

    def with_reaction(self, symbol: str) -> "Message":
        if symbol in self.reactions:
            return self
        return replace(self, reactions=[*self.reactions, symbol])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "is_user": self.is_user,
            "timestamp": format_ts(self.timestamp),
            "reactions": list(self.reactions),
            "metadata": self.metadata.to_dict() if self.metadata else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        meta = data.get("metadata")
        return cls(
            id=data["id"],
            content=data.get("content") or "",
            is_user=bool(data.get("is_user")),
            timestamp=parse_ts(data["timestamp"]),
            reactions=list(dict.fromkeys(data.get("reactions") or [])),
            metadata=MessageMetadata.from_dict(meta) if meta else None,
        )


@dataclass
class ConversationSession:
    id: str = field(default_factory=lambda: new_id("s"))
    title: str = DEFAULT_TITLE
    created_at: datetime = field(default_factory=utcnow)
    last_modified: datetime = field(default_factory=utcnow)
    persona: Persona = Persona.NONE
    messages: List[Message] = field(default_factory=list)

    @property
    def message_count(self) -> int:
        return len(self.messages)

    @property
    def last_message(self) -> Optional[Message]:
        return self.messages[-1] if self.messages else None

    @property
    def first_user_message(self) -> Optional[Message]:
        return next((m for m in self.messages if m.is_user), None)

    @property
    def has_default_title(self) -> bool:
        return self.title == DEFAULT_TITLE

    def touch(self) -> None:
        now = utcnow()
        # 时钟回拨时也保证 last_modified 不倒退
        self.last_modified = max(now, self.last_modified)

    def append(self, message: Message) -> None:
        """按时间戳插入（相同时间戳保持追加顺序），同 id 则替换。"""
        self.messages = [m for m in self.messages if m.id != message.id]
        keys = [m.timestamp for m in self.messages]
        self.messages.insert(bisect.bisect_right(keys, message.timestamp), message)
        self.touch()

    def find(self, message_id: str) -> Optional[Message]:
        return next((m for m in self.messages if m.id == message_id), None)

    def replace_message(self, message: Message) -> bool:
        for idx, existing in enumerate(self.messages):
            if existing.id == message.id:
                self.messages[idx] = message
                self.touch()
                return True
        return False

    def remove(self, message_id: str) -> bool:
        before = len(self.messages)
        self.messages = [m for m in self.messages if m.id != message_id]
        if len(self.messages) != before:
            self.touch()
            return True
        return False

    def set_title(self, title: str) -> None:
        self.title = title
        self.touch()

    def set_persona(self, persona: Persona) -> None:
        self.persona = persona
        self.touch()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "created_at": format_ts(self.created_at),
            "last_modified": format_ts(self.last_modified),
            "persona": self.persona.value,
            "messages": [m.to_dict() for m in self.messages],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationSession":
        messages = [Message.from_dict(m) for m in data.get("messages") or []]
        messages.sort(key=lambda m: m.timestamp)
        return cls(
            id=data["id"],
            title=data.get("title") or DEFAULT_TITLE,
            created_at=parse_ts(data["created_at"]),
            last_modified=parse_ts(data["last_modified"]),
            persona=Persona.parse(data.get("persona") or ""),
            messages=messages,
        )


@dataclass
class ChatSettings:
    """用户可修改的对话偏好，全局唯一，单独持久化。"""

    persona: Persona = Persona.NONE
    voice_enabled: bool = True
    streaming_enabled: bool = True
    max_context_length: int = 8000
    auto_save_conversations: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "persona": self.persona.value,
            "voice_enabled": self.voice_enabled,
            "streaming_enabled": self.streaming_enabled,
            "max_context_length": self.max_context_length,
            "auto_save_conversations": self.auto_save_conversations,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatSettings":
        defaults = cls()
        return cls(
            persona=Persona.parse(data.get("persona") or defaults.persona.value),
            voice_enabled=bool(data.get("voice_enabled", defaults.voice_enabled)),
            streaming_enabled=bool(data.get("streaming_enabled", defaults.streaming_enabled)),
            max_context_length=int(data.get("max_context_length", defaults.max_context_length)),
            auto_save_conversations=bool(data.get("auto_save_conversations", defaults.auto_save_conversations)),
        )


class PersistenceGateway(Protocol):
    def save_session(self, session: ConversationSession) -> None:
        ...

    def load_sessions(self) -> List[ConversationSession]:
        ...

    def load_session(self, session_id: str) -> ConversationSession:
        ...

    def delete_session(self, session_id: str) -> None:
        ...

    def add_message(self, session_id: str, message: Message) -> ConversationSession:
        ...

    def update_message(self, session_id: str, message: Message) -> ConversationSession:
        ...

    def delete_message(self, message_id: str) -> bool:
        ...

    def save_settings(self, chat_settings: ChatSettings) -> None:
        ...

    def load_settings(self) -> ChatSettings:
        ...

    def cleanup_older_than(self, days: int) -> int:
        ...

    def export_all(self) -> bytes:
        ...

    def import_all(self, data: bytes) -> int:
        ...

    def clear_all(self) -> None:
        ...

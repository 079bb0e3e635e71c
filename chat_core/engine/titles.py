"""会话标题生成。

优先用结构化的标题请求（SESSION_TITLE_SCHEMA），置信度不足或请求失败时
退回到从第一条用户消息里抽关键词的本地规则。
"""

from typing import Optional

from chat_core.domain.conversation import DEFAULT_TITLE, ConversationSession
from chat_core.domain.models import GenerationOptions, ModelRequest, SESSION_TITLE_SCHEMA
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers.base import ModelSession


MAX_TITLE_CHARS = 50
MAX_FALLBACK_CHARS = 40
MAX_FALLBACK_WORDS = 4

STOP_WORDS = frozenset({
    "i", "me", "my", "am", "is", "are", "was", "were", "be", "been", "being",
    "have", "has", "had", "do", "does", "did", "will", "would", "could", "should",
    "may", "might", "can", "the", "a", "an", "and", "or", "but", "in", "on", "at",
    "to", "for", "of", "with", "by",
})

TITLE_PROMPT = """Generate a concise, descriptive title for a conversation that starts with this message:

{message}

Requirements:
- 3-6 words
- Specific to the subject of the message
- Avoid generic words like "conversation", "chat", "discussion"

Examples: "Travel Planning", "Recipe Help", "Career Advice", "Math Homework"
"""


def build_title_request(first_user_message: str) -> ModelRequest:
    return ModelRequest(
        prompt=TITLE_PROMPT.format(message=first_user_message.strip()),
        schema=SESSION_TITLE_SCHEMA,
        options=GenerationOptions(temperature=0.3),
    )


def accept_model_title(title: str, confidence: Optional[float], min_confidence: float = 0.5) -> Optional[str]:
    """按置信度与长度决定是否采用模型给出的标题，返回 None 表示不采用。"""
    title = (title or "").strip().strip('"').strip()
    if not title:
        return None
    if confidence is None or confidence < min_confidence:
        return None
    if len(title) > MAX_TITLE_CHARS:
        return title[: MAX_TITLE_CHARS - 3] + "..."
    return title


def fallback_title(first_user_message: Optional[str]) -> str:
    content = (first_user_message or "").strip()
    if not content:
        return DEFAULT_TITLE
    words = [w for w in content.split() if len(w) > 2 and w.lower() not in STOP_WORDS]
    if words:
        title = " ".join(words[:MAX_FALLBACK_WORDS])
        if len(title) > MAX_FALLBACK_CHARS:
            return title[: MAX_FALLBACK_CHARS - 3] + "..."
        return title
    if len(content) <= 30:
        return content
    return content[:30] + "..."


async def generate_title(
    model_session: Optional[ModelSession],
    session: ConversationSession,
    min_confidence: float = 0.5,
) -> str:
    """为会话生成标题；没有用户消息时返回默认标题。"""

    first = session.first_user_message
    if first is None:
        return DEFAULT_TITLE
    if model_session is not None:
        try:
            fields = await model_session.respond(build_title_request(first.content))
        except Exception as exc:
            logger.warning(
                "title_generation_failed",
                extra={"extra": {"session_id": session.id, "error": str(exc)}},
            )
        else:
            try:
                confidence = float(fields.get("confidence"))
            except (TypeError, ValueError):
                confidence = None
            title = accept_model_title(str(fields.get("title") or ""), confidence, min_confidence)
            if title:
                return title
    return fallback_title(first.content)

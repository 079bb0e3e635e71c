"""对外 API 服务模块。

提供组装好的 Coordinator 以及几个简化的函数接口供上层应用调用。
"""

from typing import Any, Dict, Iterable, List, Optional

from chat_core.config.settings import settings
from chat_core.domain.conversation import PersistenceGateway
from chat_core.engine.coordinator import ConversationCoordinator
from chat_core.engine.recovery import RecoveryManager
from chat_core.infrastructure.logging.logger import logger
from chat_core.infrastructure.storage.json_store import JsonPersistenceGateway
from chat_core.providers import create_model_session_factory
from chat_core.providers.base import ModelSessionFactory
from chat_core.tools.definitions import ToolCapability
from chat_core.tools.registry import ToolCapabilitySet


def create_coordinator(
    store: Optional[PersistenceGateway] = None,
    model_session_factory: Optional[ModelSessionFactory] = None,
    tools: Optional[Iterable[ToolCapability]] = None,
    provider: Optional[str] = None,
    config=None,
) -> ConversationCoordinator:
    """按配置组装一个 ConversationCoordinator。

    Args:
        store: 持久化实现，默认使用 storage_root 下的 JSON 文件。
        model_session_factory: 模型会话工厂，默认按 provider 创建 OpenAI 兼容会话。
        tools: 需要开放给模型的工具，全部默认启用。
        provider: Provider 名称，覆盖配置中的 model_provider。
        config: ChatCoreSettings 实例，默认使用全局 settings。

    Returns:
        尚未 start() 的 Coordinator。
    """
    cfg = config or settings
    coordinator = ConversationCoordinator(
        store=store or JsonPersistenceGateway(root=cfg.storage_root),
        model_session_factory=model_session_factory or create_model_session_factory(provider, cfg),
        recovery=RecoveryManager(max_attempts=cfg.retry_max_attempts, base_delay=cfg.retry_base_delay),
        tools=ToolCapabilitySet(tools),
        config=cfg,
    )
    logger.info(
        "coordinator_created",
        extra={"extra": {"provider": provider or cfg.model_provider, "tools": len(coordinator.tools)}},
    )
    return coordinator


def session_summaries(coordinator_sessions: Iterable[Any]) -> List[Dict[str, Any]]:
    """把会话列表转换为便于展示/序列化的摘要。"""
    return [
        {
            "id": s.id,
            "title": s.title,
            "persona": s.persona.value,
            "message_count": s.message_count,
            "created_at": s.created_at.isoformat(),
            "last_modified": s.last_modified.isoformat(),
            "preview": (s.last_message.content[:80] if s.last_message else ""),
        }
        for s in coordinator_sessions
    ]


async def chat_once(coordinator: ConversationCoordinator, text: str) -> Dict[str, Any]:
    """发送一条消息并等待本轮结束，返回本轮结果摘要。"""
    accepted = await coordinator.send_message(text)
    if accepted:
        await coordinator.wait_for_generation()
    last = coordinator.current_session.last_message
    reply = last if last is not None and not last.is_user else None
    return {
        "accepted": accepted,
        "session_id": coordinator.current_session.id,
        "state": str(coordinator.state),
        "reply": reply.content if reply else None,
        "metadata": reply.metadata.to_dict() if reply and reply.metadata else None,
    }

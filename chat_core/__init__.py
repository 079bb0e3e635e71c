"""Chat Core 顶层包。

该包提供对话助手的编排与容错引擎，包括配置加载、领域模型、
模型会话适配、工具系统、生成策略、错误恢复与持久化存储等能力。
"""

from chat_core.api.service import create_coordinator
from chat_core.engine.coordinator import ConversationCoordinator

__all__ = ["ConversationCoordinator", "create_coordinator"]

"""模型 Provider 集成层。
该包下的模块负责：
- 定义 ModelSession 抽象接口 (base)。
- 维护 Provider 与模型配置 (registry)。
- 提供 OpenAI 兼容接口的具体实现 (openai_compat)，openai 与 ollama 共用。
"""

from typing import Optional

from chat_core.config.settings import settings as default_settings
from chat_core.providers.base import ModelSession, ModelSessionFactory
from chat_core.providers.openai_compat import OpenAICompatSession
from chat_core.providers.registry import get_provider_config


def create_model_session_factory(name: Optional[str] = None, settings=None) -> ModelSessionFactory:
    """根据 Provider 名称返回会话工厂，默认取配置中的 provider。

    工厂接收 system instructions，每次调用都会创建一个全新的会话，
    SystemRestart 恢复动作依赖这一点。
    """

    cfg_settings = settings or default_settings
    provider = get_provider_config(name or cfg_settings.model_provider)

    def _factory(instructions: str) -> ModelSession:
        return OpenAICompatSession(cfg_settings, provider, instructions=instructions)

    return _factory


__all__ = ["ModelSession", "ModelSessionFactory", "OpenAICompatSession", "create_model_session_factory"]

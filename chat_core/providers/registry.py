"""Provider 注册表。

引擎只认识逻辑模型名（默认 "chat"），这里把它映射成各厂商的真实模型 ID，
同时记录 API 地址、默认采样参数以及是否需要 API key。
两个内置 Provider 都走 OpenAI 兼容的 /chat/completions 接口。
"""

from dataclasses import dataclass, field
from typing import Dict, Mapping


@dataclass(frozen=True)
class ModelConfig:
    logical_name: str
    provider_model: str
    max_tokens: int = 2048
    default_temperature: float = 0.7


@dataclass(frozen=True)
class ProviderConfig:
    name: str
    base_url: str
    models: Dict[str, ModelConfig] = field(default_factory=dict)
    # 本地推理服务通常不校验 key
    requires_api_key: bool = True


def _chat_model(provider_model: str) -> Dict[str, ModelConfig]:
    return {"chat": ModelConfig(logical_name="chat", provider_model=provider_model)}


OPENAI_CONFIG = ProviderConfig(
    name="openai",
    base_url="https://api.openai.com/v1",
    models=_chat_model("gpt-4o-mini"),
)

OLLAMA_CONFIG = ProviderConfig(
    name="ollama",
    base_url="http://localhost:11434/v1",
    models=_chat_model("llama3.1"),
    requires_api_key=False,
)


PROVIDER_REGISTRY: Mapping[str, ProviderConfig] = {
    cfg.name: cfg for cfg in (OPENAI_CONFIG, OLLAMA_CONFIG)
}


def get_provider_config(name: str) -> ProviderConfig:
    """按名称查找 Provider（忽略大小写和首尾空白）。"""
    cfg = PROVIDER_REGISTRY.get((name or "").strip().lower())
    if cfg is None:
        known = ", ".join(sorted(PROVIDER_REGISTRY))
        raise KeyError(f"Unknown provider {name!r}; expected one of: {known}")
    return cfg


def get_model_config(provider: ProviderConfig, logical_name: str) -> ModelConfig:
    try:
        return provider.models[logical_name]
    except KeyError:
        raise KeyError(f"Unknown model {logical_name!r} for provider {provider.name!r}") from None

"""运行时配置。

优先级从高到低：构造参数 > 环境变量 > .env > YAML 配置文件 > secrets 目录。
YAML 文件可以是扁平的键值，也可以把本包的配置放在顶层 ``chat`` 段下。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


CONFIG_ENV_VAR = "CHAT_CONFIG_FILE"
CONFIG_FILE_NAME = "config.yaml"
CONFIG_SECTION = "chat"


def _candidate_config_files() -> Iterator[Path]:
    explicit = os.getenv(CONFIG_ENV_VAR)
    if explicit:
        yield Path(explicit).expanduser()
    here = Path(__file__).resolve()
    yield Path.cwd() / CONFIG_FILE_NAME
    # 仓库根目录与包目录
    yield here.parents[2] / CONFIG_FILE_NAME
    yield here.parents[1] / CONFIG_FILE_NAME


def _read_yaml_config() -> Dict[str, Any]:
    """返回第一个可读 YAML 配置文件的内容，找不到时返回空字典。"""
    visited = set()
    for candidate in _candidate_config_files():
        if candidate in visited or not candidate.is_file():
            continue
        visited.add(candidate)
        try:
            loaded = yaml.safe_load(candidate.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Skipping unreadable config {candidate}: {exc}")
            continue
        if loaded is None:
            return {}
        if not isinstance(loaded, dict):
            warnings.warn(f"Skipping config {candidate}: top level must be a mapping")
            continue
        section = loaded.get(CONFIG_SECTION)
        return dict(section) if isinstance(section, dict) else loaded
    return {}


class ChatCoreSettings(BaseSettings):
    """运行时配置（使用 Pydantic）。

    注意与 domain 层的 ChatSettings 区分：这里是安装/部署级别的参数，
    ChatSettings 是用户在界面上可修改并持久化的偏好。
    """

    # ---- 模型 Provider ----
    model_provider: str = Field(
        default="openai",
        description="默认使用的 Provider 名称，例如 openai、ollama",
    )
    default_model: str = Field(
        default="chat",
        description="逻辑模型名，由 registry 映射为具体厂商模型",
    )
    model_api_key: Optional[str] = Field(default=None, description="模型 API 密钥")
    model_base_url: Optional[str] = Field(
        default=None,
        description="覆盖 registry 中的 API 基础URL",
    )
    http_timeout: float = Field(default=30.0, ge=1.0, description="HTTP 超时时间（秒）")

    # ---- 生成与恢复 ----
    generation_timeout: float = Field(default=60.0, ge=1.0, description="单次生成的总超时（秒）")
    tool_call_timeout: Optional[float] = Field(
        default=None,
        description="单次工具调用超时（秒），为空时取 generation_timeout 的一半",
    )
    max_response_tokens: int = Field(default=1024, ge=16, description="单次回复的 token 预算，回退策略减半")
    max_tool_rounds: int = Field(default=5, ge=1, le=20, description="单轮对话内工具调用最大轮数")
    retry_max_attempts: int = Field(default=3, ge=1, le=10, description="Retry 动作的最大重试次数")
    retry_base_delay: float = Field(default=1.0, ge=0.0, description="指数退避的基础延迟（秒）")
    stream_chunk_size: int = Field(default=32, ge=1, description="本地模拟流式输出的切片大小")
    title_min_confidence: float = Field(default=0.5, ge=0.0, le=1.0, description="接受模型标题的最低置信度")

    # ---- 存储与日志 ----
    storage_root: str = Field(default=".storage", description="存储根目录")
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")
    retention_days: int = Field(default=30, ge=1, description="会话保留天数（按最后修改时间）")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("model_api_key")
    @classmethod
    def _check_api_key(cls, value: Optional[str]) -> Optional[str]:
        value = (value or "").strip() or None
        if value is not None and len(value) < 10:
            raise ValueError("model_api_key looks truncated (fewer than 10 characters)")
        return value

    @field_validator("tool_call_timeout")
    @classmethod
    def _check_tool_timeout(cls, value: Optional[float]) -> Optional[float]:
        if value is not None and value <= 0:
            raise ValueError("tool_call_timeout must be positive")
        return value

    @property
    def effective_tool_timeout(self) -> float:
        """工具调用预算：显式配置优先，否则由生成超时推导。"""
        if self.tool_call_timeout:
            return self.tool_call_timeout
        return self.generation_timeout / 2

    @classmethod
    def settings_customise_sources(cls, settings_cls, init_settings, env_settings, dotenv_settings, file_secret_settings):
        # YAML 文件位于 .env 之后、secrets 之前
        return init_settings, env_settings, dotenv_settings, _read_yaml_config, file_secret_settings


settings = ChatCoreSettings()

"""配置管理模块。

支持从环境变量、.env 以及 config.yaml 加载配置，优先级依次降低。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("GATEWAY_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class Settings(BaseSettings):
    """Gateway 配置（使用 Pydantic）。"""

    # ---- Provider 凭据与地址 ----
    kimi_api_key: Optional[str] = Field(default=None, description="Kimi API 密钥")
    kimi_base_url: str = Field(default="https://api.moonshot.cn/v1", description="Kimi API 基础URL")
    glm_api_key: Optional[str] = Field(default=None, description="GLM API 密钥")
    glm_base_url: str = Field(
        default="https://open.bigmodel.cn/api/paas/v4",
        description="GLM API 基础URL",
    )
    claude_api_key: Optional[str] = Field(default=None, description="Anthropic API 密钥")
    claude_base_url: str = Field(default="https://api.anthropic.com/v1", description="Anthropic API 基础URL")
    claude_api_version: str = Field(default="2023-06-01", description="anthropic-version 请求头")

    # ---- 路由策略 ----
    family_defaults: Dict[str, str] = Field(
        default_factory=lambda: {"ide-chat": "glm", "fast-chat": "glm"},
        description="逻辑模型族 -> 默认 provider；未配置的模型族在省略 provider 时无法解析",
    )
    fallback_providers: Dict[str, str] = Field(
        default_factory=lambda: {"glm": "kimi", "kimi": "glm", "claude": "kimi"},
        description="provider -> 瞬时失败时的备用 provider（每个请求最多一次）",
    )
    disabled_analysis_types: List[str] = Field(
        default_factory=list,
        description="被功能开关禁用的分析类型",
    )

    # ---- 超时与并发 ----
    http_timeout: float = Field(default=30.0, ge=1.0, description="HTTP 超时时间（秒）")
    request_timeout: float = Field(default=60.0, gt=0, description="单次 Provider 调用的截止时间（秒）")
    cancel_poll_interval: float = Field(default=0.05, gt=0, le=1.0, description="取消/背压等待的轮询间隔（秒）")
    max_workers: int = Field(default=8, ge=1, le=64, description="非流式调用线程池大小")

    # ---- 日志 ----
    log_dir: str = Field(default="logs", description="日志目录")
    log_level: str = Field(default="INFO", description="日志级别")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("kimi_api_key", "glm_api_key", "claude_api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v) < 10:
            raise ValueError("API key seems too short")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Invalid log level: {v}")
        return level

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )


settings = Settings()

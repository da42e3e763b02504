"""配置管理模块。

支持从环境变量、.env 以及 config.yaml 加载配置，优先级依次降低。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("TUTOR_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
        Path(__file__).resolve().parents[1] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if not path or path in seen:
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


class TutorSettings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- 存储与日志 ----
    storage_root: str = Field(default=".storage", description="会话存储根目录")
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    # ---- 对话 ----
    max_context_messages: int = Field(default=10, ge=1, le=100, description="发送给模型的最近消息数")
    prompt_locale: str = Field(default="en", description="系统提示词语言目录（prompts/<locale>）")

    # ---- 模型分档 ----
    device_memory_gb: Optional[float] = Field(
        default=None,
        description="设备内存提示（GB），缺省时按 4GB 处理",
    )
    model_low: str = Field(default="Qwen2.5-0.5B-Instruct-q4f16_1-MLC", description="低内存设备使用的模型")
    model_mid: str = Field(default="Llama-3.2-1B-Instruct-q4f16_1-MLC", description="中档设备使用的模型")
    model_high: str = Field(default="Llama-3.2-3B-Instruct-q4f16_1-MLC", description="高内存设备使用的模型")
    max_output_tokens: int = Field(default=2048, ge=16, description="单次回答的最大 token 数")
    temperature: float = Field(default=0.2, ge=0.0, le=2.0, description="生成温度（偏低，保持讲解稳定）")

    # ---- 本地推理服务 ----
    inference_base_url: str = Field(
        default="http://127.0.0.1:8000/v1",
        description="本地 OpenAI 兼容推理服务地址",
    )
    inference_api_key: Optional[str] = Field(default=None, description="本地推理服务密钥（通常为空）")
    http_timeout: float = Field(default=60.0, ge=1.0, description="HTTP 超时时间（秒）")

    # ---- 多模态输入 ----
    ocr_languages: str = Field(default="eng+ara+tam+hin+deu+fra+spa", description="OCR 语言提示")
    max_image_bytes: int = Field(default=5 * 1024 * 1024, ge=1, description="图片附件大小上限")
    send_images_to_model: bool = Field(
        default=False,
        description="是否把图片原图随上下文发给模型（纯文本模型应保持关闭，OCR 文本已并入消息）",
    )

    # ---- 学校品牌信息 ----
    branding_base_url: Optional[str] = Field(default=None, description="学校设置文档服务地址")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("device_memory_gb", mode="before")
    @classmethod
    def parse_memory_hint(cls, v: Any) -> Optional[float]:
        # 无法解析的内存提示视为“未提供”，而不是配置错误
        if v is None or v == "":
            return None
        try:
            value = float(v)
        except (TypeError, ValueError):
            return None
        return value if value > 0 else None

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


settings = TutorSettings()

# 类型别名，让外部代码可以使用 Settings 类型
Settings = TutorSettings

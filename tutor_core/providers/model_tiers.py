"""模型分档配置。

本模块把“设备能力”与“具体模型 ID”解耦：

- tier：low / mid / high 三档，由设备内存提示决定。
- model_id：该档位实际加载的量化模型，例如 "Llama-3.2-3B-Instruct-q4f16_1-MLC"。

上层只关心 select_model() 的结果，具体用哪个模型由这里集中配置，便于后续升级或切换。"""

from dataclasses import dataclass
from typing import Dict, Literal, Optional

from tutor_core.config.settings import settings

ModelTier = Literal["low", "mid", "high"]

DEFAULT_MEMORY_GB = 4.0
HIGH_TIER_MIN_GB = 8.0
MID_TIER_MIN_GB = 4.0


@dataclass
class TierConfig:
    """单个档位的配置。"""

    tier: ModelTier
    model_id: str
    min_memory_gb: float


def tier_table(cfg=settings) -> Dict[ModelTier, TierConfig]:
    return {
        "low": TierConfig(tier="low", model_id=cfg.model_low, min_memory_gb=0.0),
        "mid": TierConfig(tier="mid", model_id=cfg.model_mid, min_memory_gb=MID_TIER_MIN_GB),
        "high": TierConfig(tier="high", model_id=cfg.model_high, min_memory_gb=HIGH_TIER_MIN_GB),
    }


def read_device_memory_hint(cfg=settings) -> Optional[float]:
    """读取设备内存提示（GB）。未配置或无法解析时返回 None。

    环境变量 DEVICE_MEMORY_GB 由 TutorSettings 统一加载并校验。
    """

    value = getattr(cfg, "device_memory_gb", None)
    if value is None:
        return None
    return value if value > 0 else None


def tier_for_memory(device_memory_gb: Optional[float]) -> ModelTier:
    memory = DEFAULT_MEMORY_GB if device_memory_gb is None else device_memory_gb
    if memory >= HIGH_TIER_MIN_GB:
        return "high"
    if memory >= MID_TIER_MIN_GB:
        return "mid"
    return "low"


def is_low_memory(device_memory_gb: Optional[float]) -> bool:
    return tier_for_memory(device_memory_gb) == "low"


def select_model(device_memory_gb: Optional[float] = None, cfg=settings) -> str:
    """根据内存提示选择模型 ID；缺省提示按 4GB 处理，永不报错。"""

    return tier_table(cfg)[tier_for_memory(device_memory_gb)].model_id

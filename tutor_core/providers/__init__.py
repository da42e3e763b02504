"""推理集成层。

该包下的模块负责：
- 定义运行时抽象接口 (base)。
- 按设备内存选择模型档位 (model_tiers)。
- 提供具体运行时实现 (local_runtime)。
- 在后台线程中托管运行时 (worker)，并对外暴露引擎适配器 (engine)。
"""

from typing import Optional

from tutor_core.config.settings import settings
from tutor_core.providers.base import InferenceRuntime
from tutor_core.providers.local_runtime import LocalServerRuntime


def create_runtime(name: Optional[str] = None, cfg=settings) -> InferenceRuntime:
    """根据名称创建运行时实例，目前只有本地推理服务一种。"""

    runtime_name = (name or LocalServerRuntime.name).lower()
    if runtime_name != LocalServerRuntime.name:
        raise KeyError(f"Unknown inference runtime: {name!r}")
    return LocalServerRuntime(cfg)

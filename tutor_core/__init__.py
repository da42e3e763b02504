"""Tutor Core 顶层包。

该包提供本地运行的辅导对话核心实现，
包括配置加载、领域模型、推理运行时与引擎适配、会话持久化、
多模态输入合并以及对话控制器等能力。
"""

from tutor_core.api.service import build_controller
from tutor_core.agents.tutor_agent import TutorController

__all__ = ["build_controller", "TutorController"]

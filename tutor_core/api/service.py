"""组合根。

显式创建存储、引擎适配器与控制器并把它们连起来；
不保存任何模块级单例，调用方持有返回的 TutorController 即拥有唯一的引擎实例。
"""

import asyncio
import logging
from typing import Callable, Optional

from tutor_core.agents.tutor_agent import ControllerConfig, TutorController
from tutor_core.config.settings import settings as default_settings
from tutor_core.domain.exceptions import InitializationError
from tutor_core.domain.session import SessionStore
from tutor_core.infrastructure.logging.logger import logger
from tutor_core.infrastructure.storage.json_store import JsonSessionStore
from tutor_core.inputs.merger import OcrRecognizer
from tutor_core.inputs.speech import SpeechRecognizer
from tutor_core.providers import create_runtime
from tutor_core.providers.base import InferenceRuntime
from tutor_core.providers.engine import InferenceEngineAdapter


def build_controller(
    settings=None,
    *,
    runtime: Optional[InferenceRuntime] = None,
    store: Optional[SessionStore] = None,
    ocr: Optional[OcrRecognizer] = None,
    speech: Optional[SpeechRecognizer] = None,
    device_memory_gb: Optional[float] = None,
    on_change: Optional[Callable[[TutorController], None]] = None,
    on_notice: Optional[Callable[[str], None]] = None,
) -> TutorController:
    """按配置组装一个 TutorController。

    Args:
        settings: 配置对象，默认使用全局 settings
        runtime: 推理运行时（可选，默认本地推理服务）
        store: 会话存储（可选，默认 JSON 文件存储）
        ocr: OCR 能力（可选）
        speech: 语音识别能力（可选）
        device_memory_gb: 设备内存提示（可选，默认读取配置）
    """
    cfg = settings or default_settings
    engine = InferenceEngineAdapter(
        runtime=runtime or create_runtime(cfg=cfg),
        device_memory_gb=device_memory_gb,
        cfg=cfg,
    )
    return TutorController(
        store=store or JsonSessionStore(root=cfg.storage_root),
        engine=engine,
        ocr=ocr,
        speech=speech,
        config=ControllerConfig.from_settings(cfg),
        on_change=on_change,
        on_notice=on_notice,
    )


async def run_console_chat(
    controller: TutorController,
    read_line: Callable[[str], str] = input,
    write: Callable[[str], None] = print,
) -> None:
    """最简单的命令行对话循环：/new 新建会话，/quit 退出。"""
    try:
        await controller.initialize_engine(lambda text: write(f"[loading] {text}"))
    except InitializationError as e:
        write(f"Engine failed to load: {e.message}")
        await controller.close()
        return
    await controller.load()
    write(controller.messages[-1].content)

    while True:
        line = await asyncio.to_thread(read_line, "> ")
        command = line.strip()
        if command in {"/quit", "/exit"}:
            break
        if command == "/new":
            await controller.create_session()
            write(controller.messages[-1].content)
            continue
        if command.startswith("/image "):
            await controller.attach_image_file(command[len("/image "):].strip())
            continue
        if await controller.send(line):
            write(controller.messages[-1].content)

    await controller.close()
    logger.log(logging.INFO, "Console chat finished", extra={"extra": {"sessions": len(controller.sessions)}})

"""推理引擎适配层。

InferenceEngineAdapter 独占一个 EngineWorker（后台线程）及其中的运行时，
对外只暴露 initialize / generate 两个异步操作。

状态机：UNINITIALIZED -> INITIALIZING -> READY，失败进入 FAILED（可重试）。
实例由组合根显式创建并注入控制器，不使用模块级单例。
"""

import asyncio
import enum
import logging
import time
from typing import Callable, Optional, Sequence

from tutor_core.config.settings import settings
from tutor_core.domain.exceptions import (
    GenerationInProgressError,
    InitializationError,
    NotReadyError,
    StreamError,
)
from tutor_core.domain.models import ChatMessage, ChatRequest
from tutor_core.infrastructure.logging.logger import log_event
from tutor_core.providers.base import InferenceRuntime
from tutor_core.providers.model_tiers import is_low_memory, read_device_memory_hint, select_model
from tutor_core.providers.worker import EngineWorker, Generate, LoadModel

ProgressCallback = Callable[[str], None]
UpdateCallback = Callable[[str], None]


class EngineState(str, enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    FAILED = "failed"


class InferenceEngineAdapter:
    def __init__(
        self,
        runtime: InferenceRuntime,
        device_memory_gb: Optional[float] = None,
        cfg=settings,
    ):
        """初始化适配器。

        Args:
            runtime: 推理运行时，只会在工作线程中被调用
            device_memory_gb: 设备内存提示（GB），None 时读取配置
            cfg: 配置对象
        """
        self._settings = cfg
        self._runtime = runtime
        self._memory_hint = device_memory_gb if device_memory_gb is not None else read_device_memory_hint(cfg)
        # 模型只在构造时选择一次
        self._model_id = select_model(self._memory_hint, cfg)
        self._worker = EngineWorker(runtime)
        self._state = EngineState.UNINITIALIZED
        self._pending: Optional[asyncio.Task] = None
        self._generating = False
        self._log_ctx = {"runtime": getattr(runtime, "name", type(runtime).__name__), "model_id": self._model_id}

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def model_id(self) -> str:
        return self._model_id

    @property
    def max_tokens(self) -> int:
        budget = self._settings.max_output_tokens
        if is_low_memory(self._memory_hint):
            return max(1, budget // 2)
        return budget

    @property
    def is_generating(self) -> bool:
        return self._generating

    def is_ready(self) -> bool:
        return self._state is EngineState.READY

    async def initialize(self, on_progress: Optional[ProgressCallback] = None) -> None:
        """加载模型。

        已就绪时直接返回；正在初始化时等待同一个进行中的操作，
        保证任意时刻最多只有一次初始化尝试。失败后清空句柄，允许重试。
        """
        if self._state is EngineState.READY:
            return
        if self._pending is None:
            self._pending = asyncio.create_task(self._initialize(on_progress))
        await asyncio.shield(self._pending)

    async def _initialize(self, on_progress: Optional[ProgressCallback]) -> None:
        self._state = EngineState.INITIALIZING
        started = time.time()
        log_event(logging.INFO, "Initializing inference engine", self._log_ctx)
        try:
            self._worker.start()
            async for event in self._worker.run(LoadModel(self._model_id)):
                if event.kind == "progress":
                    log_event(logging.INFO, "Engine load progress", self._log_ctx, progress=event.text)
                    if on_progress is not None:
                        self._notify(on_progress, event.text)
            self._state = EngineState.READY
            log_event(
                logging.INFO,
                "Inference engine ready",
                self._log_ctx,
                elapsed_seconds=round(time.time() - started, 2),
            )
        except Exception as e:
            self._state = EngineState.FAILED
            log_event(logging.ERROR, "Failed to initialize inference engine", self._log_ctx, error=str(e))
            raise InitializationError(
                code="ENGINE_INIT_FAILED",
                message=f"Failed to initialize inference engine: {e}",
                model_id=self._model_id,
            ) from e
        finally:
            self._pending = None

    async def generate(self, messages: Sequence[ChatMessage], on_update: UpdateCallback) -> str:
        """流式生成回答。

        每收到一段增量就拼到缓冲区，并同步调用 on_update(缓冲区全文)。
        流正常结束时返回最终全文；中途失败抛出 StreamError（携带已生成的部分）。
        """
        if self._state is not EngineState.READY:
            raise NotReadyError(code="ENGINE_NOT_READY", message="Engine not initialized")
        if self._generating:
            raise GenerationInProgressError(code="GENERATION_IN_PROGRESS", message="A generation is already running")

        self._generating = True
        req = ChatRequest(
            model=self._model_id,
            messages=list(messages),
            max_tokens=self.max_tokens,
            temperature=self._settings.temperature,
            stream=True,
        )
        log_event(
            logging.INFO,
            "Calling engine (stream)",
            self._log_ctx,
            message_count=len(req.messages),
            max_tokens=req.max_tokens,
        )
        buffer = ""
        try:
            async for event in self._worker.run(Generate(req)):
                if event.kind == "delta":
                    buffer += event.text
                    on_update(buffer)
        except Exception as e:
            log_event(logging.ERROR, "Generation aborted", self._log_ctx, error=str(e), partial_chars=len(buffer))
            raise StreamError(
                code="STREAM_ABORTED",
                message=str(e) or type(e).__name__,
                partial_text=buffer,
                cause=e,
            ) from e
        finally:
            self._generating = False
        log_event(logging.INFO, "Generation finished", self._log_ctx, chars=len(buffer))
        return buffer

    def shutdown(self) -> None:
        """停止工作线程。之后需要重新 initialize。

        会阻塞到工作线程退出或等待超时，在事件循环里请用 asyncio.to_thread 调用。
        """
        self._worker.stop()
        if self._state is EngineState.READY:
            self._state = EngineState.UNINITIALIZED

    def _notify(self, callback: ProgressCallback, text: str) -> None:
        try:
            callback(text)
        except Exception as e:
            log_event(logging.WARNING, "Progress callback failed", self._log_ctx, error=str(e))

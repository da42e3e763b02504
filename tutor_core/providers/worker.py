"""推理工作线程。

模型运行时只在一个长期存在的后台线程里执行，事件循环所在线程永远不做阻塞的推理调用。
两侧通过消息通信：

- 请求（事件循环 -> 工作线程）：LoadModel、Generate，以及内部的停止信号。
- 响应（工作线程 -> 事件循环）：progress / delta 若干条，最后是 done 或 error。

响应经 loop.call_soon_threadsafe 投递到每个请求自己的 asyncio.Queue。
工作线程串行处理请求，所以同一时刻最多只有一次加载或生成在跑。
"""

from __future__ import annotations

import asyncio
import logging
import queue
import threading
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Literal, Optional, Union

from tutor_core.domain.models import ChatRequest
from tutor_core.infrastructure.logging.logger import logger
from tutor_core.providers.base import InferenceRuntime

WORKER_JOIN_TIMEOUT_SECONDS = 2.0


@dataclass
class LoadModel:
    model_id: str


@dataclass
class Generate:
    request: ChatRequest


Command = Union[LoadModel, Generate]


@dataclass
class WorkerEvent:
    """工作线程发回的事件。

    kind:
        - "progress": 模型加载进度文本。
        - "delta": 一段新生成的文本。
        - "done": 当前请求正常结束。
        - "error": 当前请求失败，error 携带原始异常。
    """

    kind: Literal["progress", "delta", "done", "error"]
    text: str = ""
    error: Optional[BaseException] = None


_SHUTDOWN = object()


class EngineWorker:
    def __init__(self, runtime: InferenceRuntime, name: str = "tutor-engine"):
        self._runtime = runtime
        self._name = name
        # 每个线程独占一个收件箱，停止信号不会遗留给下一个线程
        self._inbox: "queue.Queue[object]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None

    @property
    def alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.alive:
            return
        self._inbox = queue.Queue()
        self._thread = threading.Thread(target=self._run, args=(self._inbox,), name=self._name, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """通知当前线程退出并等待。阻塞调用，事件循环里应通过 asyncio.to_thread 调用。

        线程正忙（例如生成未结束）而等待超时时，线程在处理完手头请求后自行退出，
        之后的 start() 会启动一个新线程。
        """
        if not self.alive:
            return
        thread, inbox = self._thread, self._inbox
        assert thread is not None
        inbox.put(_SHUTDOWN)
        thread.join(timeout=WORKER_JOIN_TIMEOUT_SECONDS)
        if thread.is_alive():
            logger.log(
                logging.WARNING,
                "Engine worker still busy after stop, detaching",
                extra={"extra": {"thread": thread.name}},
            )
        if self._thread is thread:
            self._thread = None

    async def run(self, command: Command) -> AsyncIterator[WorkerEvent]:
        """提交一个请求，并以异步迭代的方式产出 progress/delta 事件。

        收到 done 时正常结束；收到 error 时抛出工作线程里的原始异常。
        """

        if not self.alive:
            raise RuntimeError("Engine worker is not running")
        loop = asyncio.get_running_loop()
        outbox: "asyncio.Queue[WorkerEvent]" = asyncio.Queue()

        def emit(event: WorkerEvent) -> None:
            try:
                loop.call_soon_threadsafe(outbox.put_nowait, event)
            except RuntimeError:
                # 事件循环已关闭，调用方早已不在等待
                logger.log(logging.DEBUG, "Dropped worker event", extra={"extra": {"kind": event.kind}})

        inbox = self._inbox
        inbox.put((command, emit))
        while True:
            event = await outbox.get()
            if event.kind == "done":
                return
            if event.kind == "error":
                assert event.error is not None
                raise event.error
            yield event

    def _run(self, inbox: "queue.Queue[object]") -> None:
        while True:
            item = inbox.get()
            if item is _SHUTDOWN:
                break
            command, emit = item  # type: ignore[misc]
            self._handle(command, emit)

    def _handle(self, command: Command, emit: Callable[[WorkerEvent], None]) -> None:
        try:
            if isinstance(command, LoadModel):
                self._runtime.load(command.model_id, lambda text: emit(WorkerEvent(kind="progress", text=text)))
            elif isinstance(command, Generate):
                for delta in self._runtime.stream_chat(command.request):
                    if delta:
                        emit(WorkerEvent(kind="delta", text=delta))
            else:
                raise TypeError(f"Unknown worker command: {command!r}")
        except Exception as e:
            emit(WorkerEvent(kind="error", error=e))
            return
        emit(WorkerEvent(kind="done"))

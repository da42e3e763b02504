"""推理运行时抽象接口。

引擎适配层（InferenceEngineAdapter）不直接依赖具体的推理后端，而是依赖此协议：

- 每种后端实现一个 InferenceRuntime（如 LocalServerRuntime）。
- 两个方法都是阻塞调用，只会在引擎的工作线程里执行。

这样可以在不改控制器代码的前提下换成其他本地推理后端。
"""

from typing import Callable, Iterable, Protocol

from tutor_core.domain.models import ChatRequest

ProgressReporter = Callable[[str], None]


class InferenceRuntime(Protocol):
    """推理运行时协议。

    实现者需要提供：
    - name: 运行时名称，用于日志。
    - load(model_id, report): 加载模型，每到一个阶段调用 report(文本进度)。
    - stream_chat(req): 执行一次流式补全，逐个产出文本增量。
    """

    name: str

    def load(self, model_id: str, report: ProgressReporter) -> None:
        ...

    def stream_chat(self, req: ChatRequest) -> Iterable[str]:
        ...

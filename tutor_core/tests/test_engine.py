import asyncio
import threading

import pytest

from tutor_core.domain.exceptions import InitializationError, NotReadyError, StreamError
from tutor_core.domain.models import ChatMessage
from tutor_core.providers.engine import EngineState

from conftest import FakeRuntime


@pytest.mark.asyncio
async def test_generate_requires_ready(make_engine):
    engine = make_engine(FakeRuntime())
    assert engine.state is EngineState.UNINITIALIZED
    with pytest.raises(NotReadyError, match="Engine not initialized"):
        await engine.generate([ChatMessage(role="user", content="hi")], lambda text: None)


@pytest.mark.asyncio
async def test_initialize_reports_progress_and_becomes_ready(make_engine):
    runtime = FakeRuntime()
    engine = make_engine(runtime, device_memory_gb=8)
    progress = []
    await engine.initialize(progress.append)
    assert engine.is_ready()
    assert progress == [f"Fetching {engine.model_id}", "Model ready"]
    assert engine.model_id == "Llama-3.2-3B-Instruct-q4f16_1-MLC"

    # 已就绪时再次调用不会重新加载
    await engine.initialize(progress.append)
    assert runtime.load_calls == 1


@pytest.mark.asyncio
async def test_concurrent_initialize_shares_one_attempt(make_engine):
    runtime = FakeRuntime(load_delay=0.05)
    engine = make_engine(runtime)
    await asyncio.gather(engine.initialize(), engine.initialize(), engine.initialize())
    assert runtime.load_calls == 1
    assert engine.is_ready()


@pytest.mark.asyncio
async def test_failed_initialize_can_be_retried(make_engine):
    runtime = FakeRuntime(fail_load=RuntimeError("weights missing"))
    engine = make_engine(runtime)
    with pytest.raises(InitializationError, match="weights missing"):
        await engine.initialize()
    assert engine.state is EngineState.FAILED

    await engine.initialize()
    assert engine.is_ready()
    assert runtime.load_calls == 2


@pytest.mark.asyncio
async def test_generate_streams_cumulative_updates(make_engine):
    runtime = FakeRuntime(deltas=["Hi", " there", "!"])
    engine = make_engine(runtime)
    await engine.initialize()
    updates = []
    final = await engine.generate([ChatMessage(role="user", content="hello")], updates.append)
    assert updates == ["Hi", "Hi there", "Hi there!"]
    assert final == "Hi there!"
    assert not engine.is_generating

    # 推理只在工作线程里执行
    assert threading.current_thread().name not in runtime.threads
    assert runtime.threads == {"tutor-engine"}


@pytest.mark.asyncio
async def test_request_config_budget_and_temperature(make_engine, tutor_settings):
    low = FakeRuntime(deltas=["x"])
    engine = make_engine(low, device_memory_gb=2)
    await engine.initialize()
    await engine.generate([ChatMessage(role="user", content="q")], lambda text: None)
    req = low.requests[0]
    assert req.max_tokens == tutor_settings.max_output_tokens // 2
    assert req.temperature == tutor_settings.temperature
    assert req.stream is True
    assert req.model == "Qwen2.5-0.5B-Instruct-q4f16_1-MLC"

    normal = FakeRuntime(deltas=["x"])
    engine2 = make_engine(normal, device_memory_gb=4)
    await engine2.initialize()
    await engine2.generate([ChatMessage(role="user", content="q")], lambda text: None)
    assert normal.requests[0].max_tokens == tutor_settings.max_output_tokens


@pytest.mark.asyncio
async def test_stream_failure_keeps_partial_text(make_engine):
    runtime = FakeRuntime(deltas=["Par", "tial", "never"], fail_after=2)
    engine = make_engine(runtime)
    await engine.initialize()
    updates = []
    with pytest.raises(StreamError) as exc_info:
        await engine.generate([ChatMessage(role="user", content="q")], updates.append)
    assert exc_info.value.partial_text == "Partial"
    assert updates == ["Par", "Partial"]
    assert not engine.is_generating

    # 失败后引擎仍可继续使用
    runtime.fail_after = None
    assert await engine.generate([ChatMessage(role="user", content="q")], lambda text: None) == "Partialnever"


class StallingRuntime(FakeRuntime):
    """第一段输出后阻塞，直到测试放行。"""

    def __init__(self):
        super().__init__(deltas=["first", " rest"])
        self.release = threading.Event()

    def stream_chat(self, req):
        self.requests.append(req)
        yield "first"
        self.release.wait(timeout=5)
        yield " rest"


@pytest.mark.asyncio
async def test_shutdown_mid_stream_then_reinitialize(make_engine, monkeypatch):
    monkeypatch.setattr("tutor_core.providers.worker.WORKER_JOIN_TIMEOUT_SECONDS", 0.1)
    runtime = StallingRuntime()
    engine = make_engine(runtime)
    await engine.initialize()

    updates = []
    streaming = asyncio.create_task(engine.generate([ChatMessage(role="user", content="q")], updates.append))
    while not updates:
        await asyncio.sleep(0.01)

    await asyncio.to_thread(engine.shutdown)
    assert engine.state is EngineState.UNINITIALIZED

    await engine.initialize()
    assert engine.is_ready()
    assert runtime.load_calls == 2

    runtime.release.set()
    assert await streaming == "first rest"


@pytest.mark.asyncio
async def test_shutdown_when_idle_then_reinitialize(make_engine):
    runtime = FakeRuntime()
    engine = make_engine(runtime)
    await engine.initialize()
    await asyncio.to_thread(engine.shutdown)
    await engine.initialize()
    assert await engine.generate([ChatMessage(role="user", content="q")], lambda text: None) == "Hi there!"
    assert runtime.load_calls == 2

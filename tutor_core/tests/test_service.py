from pathlib import Path

import pytest

from tutor_core.agents.tutor_agent import TutorController
from tutor_core.api.service import build_controller, run_console_chat
from tutor_core.domain.models import DEFAULT_GREETING
from tutor_core.infrastructure.storage.memory_store import MemorySessionStore

from conftest import FakeRuntime


def _scripted(lines):
    it = iter(lines)

    def read_line(prompt):
        return next(it)

    return read_line


def test_build_controller_wires_engine_per_settings(tutor_settings):
    controller = build_controller(tutor_settings, runtime=FakeRuntime(), device_memory_gb=2)
    assert isinstance(controller, TutorController)
    assert controller.active_session is None
    assert controller.sessions == []

    # 每次调用都得到独立的实例
    other = build_controller(tutor_settings, runtime=FakeRuntime(), store=MemorySessionStore())
    assert other is not controller


@pytest.mark.asyncio
async def test_console_chat_round_trip(tutor_settings):
    runtime = FakeRuntime()
    controller = build_controller(tutor_settings, runtime=runtime)
    output = []
    await run_console_chat(controller, _scripted(["Explain gravity", "/new", "/quit"]), output.append)

    assert output[0].startswith("[loading] ")
    assert output[2:] == [DEFAULT_GREETING, "Hi there!", DEFAULT_GREETING]
    assert runtime.load_calls == 1
    assert len(controller.sessions) == 2

    # 默认使用 JSON 文件存储
    stored = list((Path(tutor_settings.storage_root) / "sessions").glob("*.json"))
    assert len(stored) == 2


@pytest.mark.asyncio
async def test_console_chat_stops_when_engine_fails(tutor_settings):
    controller = build_controller(
        tutor_settings,
        runtime=FakeRuntime(fail_load=RuntimeError("no weights")),
        store=MemorySessionStore(),
    )
    output = []
    await run_console_chat(controller, _scripted([]), output.append)
    assert output[-1].startswith("Engine failed to load:")
    assert "no weights" in output[-1]

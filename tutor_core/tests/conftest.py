import threading
import time

import pytest

from tutor_core.config.settings import TutorSettings
from tutor_core.domain.exceptions import StorageUnavailableError
from tutor_core.infrastructure.storage.memory_store import MemorySessionStore
from tutor_core.providers.engine import InferenceEngineAdapter


class FakeRuntime:
    """模拟的推理运行时，记录调用所在线程与收到的请求。"""

    name = "fake"

    def __init__(self, deltas=None, fail_load=None, fail_after=None, load_delay=0.0):
        self.deltas = list(deltas if deltas is not None else ["Hi", " there", "!"])
        self.fail_load = fail_load
        self.fail_after = fail_after
        self.load_delay = load_delay
        self.load_calls = 0
        self.requests = []
        self.threads = set()

    def load(self, model_id, report):
        self.load_calls += 1
        self.threads.add(threading.current_thread().name)
        report(f"Fetching {model_id}")
        if self.load_delay:
            time.sleep(self.load_delay)
        if self.fail_load is not None:
            # 只失败一次，方便测试重试
            exc, self.fail_load = self.fail_load, None
            raise exc
        report("Model ready")

    def stream_chat(self, req):
        self.requests.append(req)
        self.threads.add(threading.current_thread().name)
        for i, delta in enumerate(self.deltas):
            if self.fail_after is not None and i >= self.fail_after:
                raise RuntimeError("stream broke")
            yield delta


class FakeOcr:
    def __init__(self, text="", error=None):
        self.text = text
        self.error = error
        self.calls = []

    def recognize(self, image, languages):
        self.calls.append((image, languages))
        if self.error is not None:
            raise self.error
        return self.text


class RecordingStore(MemorySessionStore):
    """内存存储 + 写入计数。"""

    def __init__(self):
        super().__init__()
        self.saves = 0
        self.feedback_updates = 0

    async def save_session(self, session):
        self.saves += 1
        await super().save_session(session)

    async def update_message_feedback(self, session_id, message_index, feedback):
        self.feedback_updates += 1
        await super().update_message_feedback(session_id, message_index, feedback)


class BrokenStore:
    """任何操作都报存储不可用。"""

    async def get_all_sessions(self):
        raise StorageUnavailableError(code="STORE_UNAVAILABLE", message="disk gone")

    async def get_session(self, session_id):
        raise StorageUnavailableError(code="STORE_UNAVAILABLE", message="disk gone")

    async def save_session(self, session):
        raise StorageUnavailableError(code="STORE_UNAVAILABLE", message="disk gone")

    async def delete_session(self, session_id):
        raise StorageUnavailableError(code="STORE_UNAVAILABLE", message="disk gone")

    async def update_message_feedback(self, session_id, message_index, feedback):
        raise StorageUnavailableError(code="STORE_UNAVAILABLE", message="disk gone")


@pytest.fixture
def tutor_settings(tmp_path):
    return TutorSettings(
        storage_root=str(tmp_path / ".storage"),
        max_output_tokens=2048,
        temperature=0.2,
        max_context_messages=10,
        send_images_to_model=False,
    )


@pytest.fixture
def make_engine(tutor_settings):
    created = []

    def factory(runtime, device_memory_gb=4, cfg=None):
        engine = InferenceEngineAdapter(runtime, device_memory_gb=device_memory_gb, cfg=cfg or tutor_settings)
        created.append(engine)
        return engine

    yield factory
    for engine in created:
        engine.shutdown()

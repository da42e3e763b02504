"""辅导对话控制器。

负责一轮对话的完整生命周期：会话加载/创建、多模态输入合并、
构造有限长度的上下文、调用推理引擎并把流式增量写回界面状态、持久化最终结果，
以及消息反馈与会话管理。

单轮状态机：IDLE -> COMPOSING(等待 OCR) -> READY -> SENDING -> STREAMING -> FINALIZED -> IDLE。
所有对外操作都在同一个事件循环里执行；任何一轮失败都不会破坏后续轮次的会话状态。
"""

import asyncio
import enum
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set
from uuid import uuid4

from tutor_core.config.settings import settings
from tutor_core.domain.exceptions import (
    BusinessError,
    GenerationInProgressError,
    NotReadyError,
    StorageUnavailableError,
    StreamError,
    ValidationError,
)
from tutor_core.domain.models import (
    NEW_CHAT_TITLE,
    ChatMessage,
    ChatSession,
    Feedback,
    derive_title,
    new_session,
)
from tutor_core.domain.session import SessionStore
from tutor_core.infrastructure.logging.logger import logger
from tutor_core.infrastructure.storage.memory_store import MemorySessionStore
from tutor_core.inputs.attachments import load_image_attachment
from tutor_core.inputs.merger import OcrRecognizer, compose_message, recognize_image
from tutor_core.inputs.speech import SpeechRecognizer, SpeechSession
from tutor_core.prompts import load_system_prompt
from tutor_core.providers.engine import InferenceEngineAdapter

NOTICE_EMPTY_INPUT = "Please enter a message or upload an image"
NOTICE_ENGINE_LOADING = "The AI Tutor is still loading. Please wait a moment."
NOTICE_BUSY = "Please wait for the current answer to finish."
NOTICE_NO_SESSION = "No active chat. Start a new chat first."
NOTICE_GENERATION_FAILED = "Failed to get response from AI Tutor"
NOTICE_STORAGE_DEGRADED = "Chat history is unavailable. Conversations will only be kept until you close the app."
NOTICE_SPEECH_UNSUPPORTED = "Speech recognition is not supported in this environment."

QUICK_PROMPT_MAX_MESSAGES = 3


class TurnState(str, enum.Enum):
    IDLE = "idle"
    COMPOSING = "composing"
    READY = "ready"
    SENDING = "sending"
    STREAMING = "streaming"
    FINALIZED = "finalized"


@dataclass(frozen=True)
class QuickPrompt:
    key: str
    label: str
    text: str


QUICK_PROMPTS: List[QuickPrompt] = [
    QuickPrompt(key="explain", label="Explain topic", text="Can you explain this topic simply?"),
    QuickPrompt(key="quiz", label="Quiz me", text="Ask me a question to test my knowledge."),
    QuickPrompt(key="check", label="Check answer", text="Is my answer correct? 'The sun rises in the east.'"),
]


@dataclass
class ControllerConfig:
    max_context_messages: int = 10
    ocr_languages: str = "eng+ara+tam+hin+deu+fra+spa"
    send_images_to_model: bool = False
    locale: str = "en"

    @classmethod
    def from_settings(cls, cfg=settings) -> "ControllerConfig":
        return cls(
            max_context_messages=cfg.max_context_messages,
            ocr_languages=cfg.ocr_languages,
            send_images_to_model=cfg.send_images_to_model,
            locale=cfg.prompt_locale,
        )


class TutorController:
    def __init__(
        self,
        store: SessionStore,
        engine: InferenceEngineAdapter,
        ocr: Optional[OcrRecognizer] = None,
        speech: Optional[SpeechRecognizer] = None,
        config: Optional[ControllerConfig] = None,
        on_change: Optional[Callable[["TutorController"], None]] = None,
        on_notice: Optional[Callable[[str], None]] = None,
    ):
        self._store = store
        self._engine = engine
        self._ocr = ocr
        self._config = config or ControllerConfig.from_settings()
        self._on_change = on_change
        self._on_notice = on_notice
        self._speech = SpeechSession(speech, self._on_transcript, self._on_listening) if speech else None

        self._sessions: List[ChatSession] = []
        self._active_id: Optional[str] = None
        self._input = ""
        self._image: Optional[str] = None
        self._is_loading = False
        self._turn_state = TurnState.IDLE
        self._init_progress = ""
        self._degraded = False
        self._background: Set[asyncio.Task] = set()
        self._feedback_locks: Dict[str, asyncio.Lock] = {}

    # ---- 只读视图 ----

    @property
    def sessions(self) -> List[ChatSession]:
        """按 updated_at 降序排列的会话列表。"""
        return list(self._sessions)

    @property
    def active_session_id(self) -> Optional[str]:
        return self._active_id

    @property
    def active_session(self) -> Optional[ChatSession]:
        return self._find(self._active_id)

    @property
    def messages(self) -> List[ChatMessage]:
        session = self.active_session
        return list(session.messages) if session else []

    @property
    def input_text(self) -> str:
        return self._input

    @property
    def image(self) -> Optional[str]:
        return self._image

    @property
    def is_loading(self) -> bool:
        return self._is_loading

    @property
    def turn_state(self) -> TurnState:
        return self._turn_state

    @property
    def listening(self) -> bool:
        return bool(self._speech and self._speech.listening)

    @property
    def init_progress(self) -> str:
        return self._init_progress

    @property
    def degraded(self) -> bool:
        """持久化不可用、已退化为纯内存模式。"""
        return self._degraded

    # ---- 引擎 ----

    async def initialize_engine(self, on_progress: Optional[Callable[[str], None]] = None) -> None:
        """加载推理引擎。InitializationError 直接抛给调用方。"""

        def relay(text: str) -> None:
            self._init_progress = text
            self._changed()
            if on_progress is not None:
                on_progress(text)

        await self._engine.initialize(relay)
        self._changed()

    # ---- 会话管理 ----

    async def load(self) -> None:
        """加载历史会话并激活最近更新的一个；没有历史时新建。"""
        try:
            stored = await self._store.get_all_sessions()
        except StorageUnavailableError as e:
            await self._degrade(e)
            stored = []
        stored = [s for s in stored if s.messages]
        if not stored:
            await self.create_session()
            return
        self._sessions = sorted(stored, key=lambda s: s.updated_at, reverse=True)
        self._active_id = self._sessions[0].id
        self._log(logging.INFO, "Loaded sessions", {}, count=len(self._sessions), session_id=self._active_id)
        self._changed()

    async def create_session(self) -> ChatSession:
        session = new_session()
        self._sessions.insert(0, session)
        self._active_id = session.id
        self._changed()
        self._log(logging.INFO, "Created new session", {"session_id": session.id})
        await self._persist(session)
        return session

    def select_session(self, session_id: str) -> bool:
        if self._find(session_id) is None:
            return False
        if session_id != self._active_id:
            self._active_id = session_id
            self._changed()
        return True

    async def delete_session(self, session_id: str) -> None:
        """删除会话。

        删除当前会话时切换到最近更新的剩余会话；一个都不剩时新建一个，
        因此删除之后至少总有一个会话。
        """
        if self._find(session_id) is None:
            return
        self._sessions = [s for s in self._sessions if s.id != session_id]
        self._feedback_locks.pop(session_id, None)
        self._changed()
        try:
            await self._store.delete_session(session_id)
        except StorageUnavailableError as e:
            await self._degrade(e)
        except BusinessError as e:
            self._log(logging.WARNING, "Failed to delete session", {"session_id": session_id}, error=e.message)
        self._log(logging.INFO, "Deleted session", {"session_id": session_id})

        if not self._sessions:
            await self.create_session()
        elif self._active_id == session_id or self._find(self._active_id) is None:
            self._active_id = max(self._sessions, key=lambda s: s.updated_at).id
            self._changed()

    # ---- 输入 ----

    def set_input(self, text: str) -> None:
        self._input = text or ""
        self._changed()

    def attach_image(self, data_uri: str) -> None:
        self._image = data_uri or None
        self._changed()

    async def attach_image_file(self, path: str) -> bool:
        """从文件附加图片；过大或无法识别时给出提示并返回 False。"""
        try:
            data_uri = await asyncio.to_thread(load_image_attachment, path)
        except ValidationError as e:
            self._notice(e.message)
            return False
        self.attach_image(data_uri)
        return True

    def remove_image(self) -> None:
        self._image = None
        self._changed()

    def toggle_listening(self) -> bool:
        """开关语音输入。开始时清空输入框，之后每次转写结果替换输入内容。"""
        if self._speech is None:
            self._notice(NOTICE_SPEECH_UNSUPPORTED)
            return False
        if not self._speech.listening:
            self._input = ""
        listening = self._speech.toggle()
        self._changed()
        return listening

    def quick_prompts(self) -> List[QuickPrompt]:
        """会话刚开始（少于 3 条消息）且没有在生成时提供的快捷提问。"""
        if self._is_loading or len(self.messages) >= QUICK_PROMPT_MAX_MESSAGES:
            return []
        return list(QUICK_PROMPTS)

    async def send_quick_prompt(self, key: str) -> bool:
        for prompt in QUICK_PROMPTS:
            if prompt.key == key:
                return await self.send(prompt.text)
        raise KeyError(f"Unknown quick prompt: {key!r}")

    # ---- 发送 ----

    async def send(self, override_text: Optional[str] = None) -> bool:
        """发送一轮对话。

        被拒绝时只发出提示、返回 False，不抛异常、不追加消息、不写存储。
        被接受时返回 True；推理失败也算已接受（保留已生成的部分并记录日志）。
        """
        text = override_text if override_text is not None else self._input
        image = self._image

        if not self._engine.is_ready():
            self._notice(NOTICE_ENGINE_LOADING)
            return False
        if self._is_loading or self._engine.is_generating:
            self._notice(NOTICE_BUSY)
            return False
        if not text.strip() and not image:
            self._notice(NOTICE_EMPTY_INPUT)
            return False
        session = self.active_session
        if session is None:
            self._notice(NOTICE_NO_SESSION)
            return False

        start_time = time.time()
        log_ctx: Dict[str, Any] = {"trace_id": f"tr-{uuid4().hex}", "session_id": session.id}
        self._is_loading = True
        try:
            # 1. OCR（失败时降级为无 OCR 文本）
            ocr_text: Optional[str] = None
            if image:
                self._set_turn(TurnState.COMPOSING)
                ocr_text = await recognize_image(self._ocr, image, self._config.ocr_languages)
                self._log(logging.INFO, "OCR finished", log_ctx, recognized=ocr_text is not None)

            # 2. 合并输入
            content = compose_message(text, ocr_text, has_image=image is not None)
            if not content.strip():
                self._notice(NOTICE_EMPTY_INPUT)
                return False
            self._set_turn(TurnState.READY)

            # 3. 追加用户消息、更新标题并立即落盘
            self._set_turn(TurnState.SENDING)
            session.messages.append(ChatMessage(role="user", content=content, image=image))
            if session.title == NEW_CHAT_TITLE:
                session.title = derive_title(text.strip())
            session.touch()
            self._resort()
            await self._persist(session, log_ctx)
            self._log(logging.INFO, "Stored user message", log_ctx, index=len(session.messages) - 1)

            self._input = ""
            self._image = None

            # 4. 构造上下文（不含占位消息），再追加空的助手占位消息
            context = self._build_context(session)
            placeholder = ChatMessage(role="assistant", content="")
            session.messages.append(placeholder)
            self._set_turn(TurnState.STREAMING)

            def on_update(partial: str) -> None:
                placeholder.content = partial
                self._changed()

            # 5. 流式生成
            try:
                await self._engine.generate(context, on_update)
            except StreamError as e:
                placeholder.content = e.partial_text
                self._log(logging.ERROR, "Chat error", log_ctx, error=e.message, partial_chars=len(e.partial_text))
                self._notice(NOTICE_GENERATION_FAILED)
            except (NotReadyError, GenerationInProgressError) as e:
                self._log(logging.ERROR, "Chat error", log_ctx, error=e.message)
                self._notice(NOTICE_GENERATION_FAILED)

            # 6. 最终状态再落盘一次；会话在生成期间被删除时不再写回
            self._set_turn(TurnState.FINALIZED)
            session.touch()
            self._resort()
            if self._find(session.id) is session:
                await self._persist(session, log_ctx)
            self._log(
                logging.INFO,
                "Completed turn",
                log_ctx,
                elapsed_seconds=round(time.time() - start_time, 2),
                assistant_chars=len(placeholder.content),
            )
            return True
        finally:
            self._is_loading = False
            self._set_turn(TurnState.IDLE)

    def _build_context(self, session: ChatSession) -> List[ChatMessage]:
        """系统提示词 + 最近 N 条非空消息（包含刚追加的用户消息）。

        之前失败的轮次可能留下内容为空的助手消息，不发给模型。
        """
        system_prompt = load_system_prompt("tutor", self._config.locale)
        non_empty = [m for m in session.messages if m.content.strip()]
        history = non_empty[-self._config.max_context_messages:]
        context = [ChatMessage(role="system", content=system_prompt)]
        for m in history:
            image = m.image if (self._config.send_images_to_model and m.role == "user") else None
            context.append(ChatMessage(role=m.role, content=m.content, image=image))
        return context

    # ---- 反馈 ----

    def update_feedback(self, message_index: int, feedback: Feedback) -> None:
        """切换消息反馈：同一类型点两次即清除。

        内存状态立即更新；持久化在后台执行，失败只记日志（界面已经乐观更新）。
        同一会话的反馈写入按调用顺序串行执行，磁盘上以最后一次为准。
        需要在事件循环内调用。
        """
        session = self.active_session
        if session is None or not 0 <= message_index < len(session.messages):
            return
        message = session.messages[message_index]
        new_value: Optional[Feedback] = None if message.feedback == feedback else feedback
        message.feedback = new_value
        self._changed()
        task = asyncio.get_running_loop().create_task(
            self._persist_feedback(session.id, message_index, new_value)
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _persist_feedback(self, session_id: str, message_index: int, feedback: Optional[Feedback]) -> None:
        lock = self._feedback_locks.setdefault(session_id, asyncio.Lock())
        try:
            async with lock:
                await self._store.update_message_feedback(session_id, message_index, feedback)
        except Exception as e:
            self._log(
                logging.WARNING,
                "Failed to persist feedback",
                {"session_id": session_id},
                index=message_index,
                error=str(e),
            )

    async def wait_for_background(self) -> None:
        """等待所有后台持久化任务结束（关闭前或测试中使用）。"""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def close(self) -> None:
        """结束语音输入、等待后台写入并停止引擎工作线程。"""
        if self._speech is not None:
            self._speech.stop()
        await self.wait_for_background()
        await asyncio.to_thread(self._engine.shutdown)

    # ---- 内部工具 ----

    def _find(self, session_id: Optional[str]) -> Optional[ChatSession]:
        if session_id is None:
            return None
        for s in self._sessions:
            if s.id == session_id:
                return s
        return None

    def _resort(self) -> None:
        self._sessions.sort(key=lambda s: s.updated_at, reverse=True)
        self._changed()

    async def _persist(self, session: ChatSession, log_ctx: Optional[Dict[str, Any]] = None) -> bool:
        try:
            await self._store.save_session(session)
            return True
        except StorageUnavailableError as e:
            await self._degrade(e)
            await self._store.save_session(session)
            return True
        except BusinessError as e:
            self._log(logging.ERROR, "Failed to save session", log_ctx or {"session_id": session.id}, error=e.message)
            return False

    async def _degrade(self, error: StorageUnavailableError) -> None:
        """持久化层不可用：切换到内存存储，并把当前会话搬过去。"""
        if self._degraded:
            return
        self._log(logging.WARNING, "Storage unavailable, switching to in-memory sessions", {}, error=error.message)
        self._degraded = True
        self._store = MemorySessionStore()
        for s in self._sessions:
            await self._store.save_session(s)
        self._notice(NOTICE_STORAGE_DEGRADED)

    def _set_turn(self, state: TurnState) -> None:
        self._turn_state = state
        self._changed()

    def _on_transcript(self, transcript: str) -> None:
        self._input = transcript
        self._changed()

    def _on_listening(self, listening: bool) -> None:
        self._changed()

    def _changed(self) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(self)
        except Exception as e:
            logger.warning(f"on_change observer failed: {e}")

    def _notice(self, text: str) -> None:
        logger.log(logging.INFO, "Notice", extra={"extra": {"notice": text}})
        if self._on_notice is None:
            return
        try:
            self._on_notice(text)
        except Exception as e:
            logger.warning(f"on_notice observer failed: {e}")

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})

import asyncio
import json
import logging
import os
import re
from pathlib import Path
from typing import List, Optional
from uuid import uuid4

from tutor_core.config.settings import settings
from tutor_core.domain.exceptions import StorageUnavailableError, ValidationError
from tutor_core.domain.models import ChatSession, Feedback
from tutor_core.domain.session import SessionStore
from tutor_core.infrastructure.logging.logger import logger

_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,128}$")


class JsonSessionStore(SessionStore):
    """每个会话一个 JSON 文件：<root>/sessions/<id>.json。

    写入先落到临时文件再 os.replace，保证单条记录要么是旧版本要么是新版本。
    文件 IO 通过 asyncio.to_thread 放到线程池，不阻塞事件循环。
    """

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._sessions_root = self._root / "sessions"
        self._opened = False

    async def get_all_sessions(self) -> List[ChatSession]:
        return await asyncio.to_thread(self._get_all_sync)

    async def get_session(self, session_id: str) -> Optional[ChatSession]:
        return await asyncio.to_thread(self._get_sync, session_id)

    async def save_session(self, session: ChatSession) -> None:
        await asyncio.to_thread(self._save_sync, session)

    async def delete_session(self, session_id: str) -> None:
        await asyncio.to_thread(self._delete_sync, session_id)

    async def update_message_feedback(
        self,
        session_id: str,
        message_index: int,
        feedback: Optional[Feedback],
    ) -> None:
        await asyncio.to_thread(self._update_feedback_sync, session_id, message_index, feedback)

    # ---- 同步实现（运行在线程池中） ----

    def _open(self) -> Path:
        if not self._opened:
            try:
                self._sessions_root.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise StorageUnavailableError(code="STORE_UNAVAILABLE", message=str(e), root=str(self._root))
            self._opened = True
        return self._sessions_root

    def _path_for(self, session_id: str) -> Path:
        if not isinstance(session_id, str) or not _SESSION_ID_RE.match(session_id):
            raise ValidationError(code="INVALID_SESSION_ID", message=repr(session_id))
        return self._open() / f"{session_id}.json"

    def _get_all_sync(self) -> List[ChatSession]:
        root = self._open()
        items: List[ChatSession] = []
        try:
            paths = sorted(root.glob("*.json"))
        except OSError as e:
            raise StorageUnavailableError(code="STORE_READ_ERROR", message=str(e))
        for path in paths:
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                items.append(ChatSession.from_dict(data))
            except (OSError, ValueError, KeyError, TypeError) as e:
                # 单条记录损坏不影响其他会话
                logger.log(
                    logging.WARNING,
                    "Skipped unreadable session record",
                    extra={"extra": {"path": str(path), "error": str(e)}},
                )
                continue
        items.sort(key=lambda s: s.updated_at)
        return items

    def _get_sync(self, session_id: str) -> Optional[ChatSession]:
        path = self._path_for(session_id)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise StorageUnavailableError(code="STORE_READ_ERROR", message=str(e), session_id=session_id)
        return ChatSession.from_dict(data)

    def _save_sync(self, session: ChatSession) -> None:
        path = self._path_for(session.id)
        tmp_path = path.parent / f".{session.id}.{uuid4().hex}.json.tmp"
        try:
            tmp_path.write_text(json.dumps(session.to_dict(), ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise StorageUnavailableError(code="STORE_WRITE_ERROR", message=str(e), session_id=session.id)

    def _delete_sync(self, session_id: str) -> None:
        path = self._path_for(session_id)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise StorageUnavailableError(code="STORE_DELETE_ERROR", message=str(e), session_id=session_id)

    def _update_feedback_sync(self, session_id: str, message_index: int, feedback: Optional[Feedback]) -> None:
        session = self._get_sync(session_id)
        if session is None:
            return
        # 越界下标静默忽略
        if not 0 <= message_index < len(session.messages):
            return
        session.messages[message_index].feedback = feedback
        self._save_sync(session)

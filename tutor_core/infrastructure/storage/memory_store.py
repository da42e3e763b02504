import copy
from typing import Dict, List, Optional

from tutor_core.domain.models import ChatSession, Feedback
from tutor_core.domain.session import SessionStore


class MemorySessionStore(SessionStore):
    """进程内会话存储。

    持久化层不可用时控制器退化到这里；数据随进程结束丢失。
    读写都做深拷贝，调用方拿到的对象与存储内部互不影响。
    """

    def __init__(self) -> None:
        self._sessions: Dict[str, ChatSession] = {}

    async def get_all_sessions(self) -> List[ChatSession]:
        items = [copy.deepcopy(s) for s in self._sessions.values()]
        items.sort(key=lambda s: s.updated_at)
        return items

    async def get_session(self, session_id: str) -> Optional[ChatSession]:
        session = self._sessions.get(session_id)
        return copy.deepcopy(session) if session is not None else None

    async def save_session(self, session: ChatSession) -> None:
        self._sessions[session.id] = copy.deepcopy(session)

    async def delete_session(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    async def update_message_feedback(
        self,
        session_id: str,
        message_index: int,
        feedback: Optional[Feedback],
    ) -> None:
        session = self._sessions.get(session_id)
        if session is None or not 0 <= message_index < len(session.messages):
            return
        session.messages[message_index].feedback = feedback

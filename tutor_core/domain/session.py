from typing import List, Optional, Protocol

from .models import ChatSession, Feedback


class SessionStore(Protocol):
    """会话持久化协议，所有操作都是异步的。

    无法打开底层存储时抛出 StorageUnavailableError，调用方负责降级。
    """

    async def get_all_sessions(self) -> List[ChatSession]:
        """按 updated_at 升序返回全部会话。"""
        ...

    async def get_session(self, session_id: str) -> Optional[ChatSession]:
        ...

    async def save_session(self, session: ChatSession) -> None:
        ...

    async def delete_session(self, session_id: str) -> None:
        ...

    async def update_message_feedback(
        self,
        session_id: str,
        message_index: int,
        feedback: Optional[Feedback],
    ) -> None:
        ...

"""统一的对话数据模型。

本模块定义辅导核心内部共享的标准数据结构：

- ChatMessage: 一条对话消息（system/user/assistant）。
- ChatSession: 一个带标题、按时间排序的会话。
- ChatRequest: 发给本地推理引擎的完整请求。

持久化格式沿用 camelCase 键（updatedAt、studentGrade），
to_dict/from_dict 负责在 dataclass 与 JSON 之间转换，缺省的可选字段不写出。
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4


# 消息角色类型（与 OpenAI 兼容接口的 role 字段对应）
Role = Literal["system", "user", "assistant"]
Feedback = Literal["like", "dislike"]

ROLES = ("system", "user", "assistant")
FEEDBACK_VALUES = ("like", "dislike")

NEW_CHAT_TITLE = "New Chat"
TITLE_MAX_CHARS = 30

DEFAULT_GREETING = (
    "Welcome! I am Lumina, your AI Tutor. I can help you understand complex topics, "
    "solve problems, or review for exams. What would you like to learn today?"
)


def now_ms() -> int:
    """当前时间，毫秒级 epoch。"""
    return int(time.time() * 1000)


@dataclass
class ChatMessage:
    """一条对话消息。

    - role: 消息角色。
    - content: 纯文本内容（OCR 结果已合并进来）。
    - image: 用户消息附带的图片（data URI），只出现在 user 消息上。
    - feedback: 用户对该条消息的评价；持久化后唯一允许修改的字段。
    """

    role: Role
    content: str
    image: Optional[str] = None
    feedback: Optional[Feedback] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.image:
            payload["image"] = self.image
        if self.feedback:
            payload["feedback"] = self.feedback
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatMessage":
        role = data.get("role")
        if role not in ROLES:
            raise ValueError(f"Unknown message role: {role!r}")
        feedback = data.get("feedback")
        return cls(
            role=role,
            content=data.get("content") or "",
            image=data.get("image") or None,
            feedback=feedback if feedback in FEEDBACK_VALUES else None,
        )


@dataclass
class ChatSession:
    """一个会话。

    不变量：从创建到删除，messages 至少包含一条消息（开场问候）。
    """

    id: str
    title: str
    messages: List[ChatMessage]
    updated_at: int
    student_grade: Optional[str] = None
    subject: Optional[str] = None

    def touch(self) -> None:
        # updated_at 只增不减，即使系统时钟回拨
        self.updated_at = max(now_ms(), self.updated_at + 1)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "messages": [m.to_dict() for m in self.messages],
            "updatedAt": self.updated_at,
        }
        if self.student_grade is not None:
            payload["studentGrade"] = self.student_grade
        if self.subject is not None:
            payload["subject"] = self.subject
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatSession":
        return cls(
            id=str(data["id"]),
            title=data.get("title") or NEW_CHAT_TITLE,
            messages=[ChatMessage.from_dict(m) for m in data.get("messages") or []],
            updated_at=int(data.get("updatedAt", 0)),
            student_grade=data.get("studentGrade"),
            subject=data.get("subject"),
        )


def new_session_id() -> str:
    return f"s-{uuid4().hex}"


def new_session() -> ChatSession:
    """创建一个只含开场问候的新会话。"""
    return ChatSession(
        id=new_session_id(),
        title=NEW_CHAT_TITLE,
        messages=[ChatMessage(role="assistant", content=DEFAULT_GREETING)],
        updated_at=now_ms(),
    )


def derive_title(text: str) -> str:
    """用第一条用户输入生成标题：超过 30 个字符时截断并加省略号。"""
    if not text:
        return NEW_CHAT_TITLE
    if len(text) > TITLE_MAX_CHARS:
        return text[:TITLE_MAX_CHARS] + "..."
    return text


@dataclass
class ChatRequest:
    """一次完整的推理请求。

    控制器把系统提示词与最近 N 条消息组装成 messages，
    引擎适配层补上 max_tokens/temperature 后交给运行时。
    """

    model: str
    messages: List[ChatMessage]
    max_tokens: int = 2048
    temperature: float = 0.2
    stream: bool = True
    extra: Dict[str, Any] = field(default_factory=dict)

"""系统提示词加载工具。

按语言(locale) 从 prompts/<locale> 目录读取辅导场景的 system prompt 文本，
用于构造 ChatMessage(role="system")。
"""

from functools import lru_cache
from pathlib import Path


PROMPTS_DIR = Path(__file__).resolve().parent


@lru_cache(maxsize=None)
def load_system_prompt(agent_type: str = "tutor", locale: str = "en") -> str:
    """根据 Agent 类型和语言加载系统提示词文本。

    目前 agent_type 仅支持 "tutor"。
    """

    if agent_type != "tutor":
        raise KeyError(f"Unknown agent type: {agent_type!r}")
    fname = PROMPTS_DIR / locale / "tutor_system.md"
    return fname.read_text(encoding="utf-8").strip()

"""Minimal demonstration of the tutor console loop against a local inference server."""

import asyncio

from tutor_core import build_controller
from tutor_core.api.service import run_console_chat

if __name__ == "__main__":
    controller = build_controller(on_notice=lambda text: print(f"[notice] {text}"))
    asyncio.run(run_console_chat(controller))

"""语音转写边界。

平台语音识别是外部能力：一次连续识别会话，每个结果事件给出累计的转写文本，
停止或出错时给出结束事件。这里只负责开关状态与错误降级。
"""

import logging
from typing import Callable, Optional, Protocol

from tutor_core.infrastructure.logging.logger import logger

TranscriptCallback = Callable[[str], None]
EndCallback = Callable[[Optional[str]], None]


class SpeechRecognizer(Protocol):
    """语音识别能力。

    - start(on_result, on_end): 开始连续识别；on_result 收到累计转写，
      on_end(error) 在停止或出错时调用，error 为 None 表示正常停止。
    - stop(): 结束识别。
    """

    def start(self, on_result: TranscriptCallback, on_end: EndCallback) -> None:
        ...

    def stop(self) -> None:
        ...


class SpeechSession:
    def __init__(self, recognizer: SpeechRecognizer, on_transcript: TranscriptCallback,
                 on_state: Optional[Callable[[bool], None]] = None):
        self._recognizer = recognizer
        self._on_transcript = on_transcript
        self._on_state = on_state
        self._listening = False

    @property
    def listening(self) -> bool:
        return self._listening

    def start(self) -> bool:
        """开始识别，失败时记录日志并返回 False（识别错误不致命）。"""
        if self._listening:
            return True
        try:
            self._recognizer.start(self._handle_result, self._handle_end)
        except Exception as e:
            logger.log(logging.WARNING, "Speech recognition failed to start", extra={"extra": {"error": str(e)}})
            self._set_listening(False)
            return False
        self._set_listening(True)
        return True

    def stop(self) -> None:
        if not self._listening:
            return
        try:
            self._recognizer.stop()
        except Exception as e:
            logger.log(logging.WARNING, "Speech recognition failed to stop", extra={"extra": {"error": str(e)}})
        self._set_listening(False)

    def toggle(self) -> bool:
        if self._listening:
            self.stop()
            return False
        return self.start()

    def _handle_result(self, transcript: str) -> None:
        if not self._listening:
            return
        self._on_transcript(transcript or "")

    def _handle_end(self, error: Optional[str] = None) -> None:
        if error:
            logger.log(logging.WARNING, "Speech recognition error", extra={"extra": {"error": error}})
        self._set_listening(False)

    def _set_listening(self, value: bool) -> None:
        changed = value != self._listening
        self._listening = value
        if changed and self._on_state is not None:
            self._on_state(value)

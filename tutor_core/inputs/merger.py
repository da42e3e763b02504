"""把键入文本与图片 OCR 结果合并成一条用户消息。"""

import asyncio
import inspect
import logging
from typing import Optional, Protocol

from tutor_core.config.settings import settings
from tutor_core.infrastructure.logging.logger import logger

IMAGE_CONTENT_LABEL = "[Attached Image Content]"
IMAGE_ATTACHED_PLACEHOLDER = "[Image Attached]"


class OcrRecognizer(Protocol):
    """OCR 能力。返回识别出的文本（可以为空），失败时可以抛出任意异常。

    recognize 可以是普通函数，也可以是协程函数。
    """

    def recognize(self, image: str, languages: str) -> str:
        ...


def compose_message(text: Optional[str], ocr_text: Optional[str], has_image: bool) -> str:
    """合并规则：

    - OCR 文本去空白后非空：有键入文本时为 "<文本>\\n\\n[Attached Image Content]: <OCR>"，
      否则为 "[Attached Image Content]: <OCR>"。
    - 有图片但没有可用 OCR 文本：没有键入文本时退化为 "[Image Attached]"。
    - 其余情况原样返回键入文本；结果为空时由上游拒绝。
    """
    typed = text or ""
    if ocr_text and ocr_text.strip():
        if typed.strip():
            return f"{typed}\n\n{IMAGE_CONTENT_LABEL}: {ocr_text}"
        return f"{IMAGE_CONTENT_LABEL}: {ocr_text}"
    if has_image and not typed.strip():
        return IMAGE_ATTACHED_PLACEHOLDER
    return typed


async def recognize_image(
    ocr: Optional[OcrRecognizer],
    image: Optional[str],
    languages: Optional[str] = None,
) -> Optional[str]:
    """调用 OCR，失败或结果为空一律返回 None，不向上抛。

    同步的 recognize 放到线程池执行，识别期间事件循环照常运行。
    """
    if ocr is None or not image:
        return None
    langs = languages or settings.ocr_languages
    try:
        if inspect.iscoroutinefunction(ocr.recognize):
            result = await ocr.recognize(image, langs)
        else:
            result = await asyncio.to_thread(ocr.recognize, image, langs)
            if inspect.isawaitable(result):
                result = await result
    except Exception as e:
        logger.log(logging.WARNING, "OCR failed", extra={"extra": {"error": str(e)}})
        return None
    if not isinstance(result, str) or not result.strip():
        return None
    return result

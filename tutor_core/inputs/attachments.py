"""图片附件：校验大小与格式，转换为 data URI。"""

import base64
import io
from pathlib import Path
from typing import Optional

from PIL import Image, UnidentifiedImageError

from tutor_core.config.settings import settings
from tutor_core.domain.exceptions import ValidationError

_FORMAT_MIME = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "GIF": "image/gif",
    "WEBP": "image/webp",
    "BMP": "image/bmp",
    "TIFF": "image/tiff",
}


def image_bytes_to_data_uri(data: bytes, max_bytes: Optional[int] = None) -> str:
    """把图片字节转成 data URI。

    超过大小上限或无法解码为图片时抛出 ValidationError。
    """
    limit = max_bytes or settings.max_image_bytes
    if len(data) > limit:
        raise ValidationError(
            code="IMAGE_TOO_LARGE",
            message="File too large. Please select an image under 5MB.",
            size=len(data),
            limit=limit,
        )
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.verify()
            fmt = img.format or ""
    except (UnidentifiedImageError, OSError, SyntaxError) as e:
        raise ValidationError(code="INVALID_IMAGE", message=f"Not a readable image: {e}")
    mime = _FORMAT_MIME.get(fmt.upper(), "application/octet-stream")
    encoded = base64.b64encode(data).decode("ascii")
    return f"data:{mime};base64,{encoded}"


def load_image_attachment(path: str | Path, max_bytes: Optional[int] = None) -> str:
    """从文件读取图片并返回 data URI。"""
    p = Path(path)
    limit = max_bytes or settings.max_image_bytes
    try:
        size = p.stat().st_size
    except OSError as e:
        raise ValidationError(code="IMAGE_NOT_FOUND", message=str(e))
    if size > limit:
        raise ValidationError(
            code="IMAGE_TOO_LARGE",
            message="File too large. Please select an image under 5MB.",
            size=size,
            limit=limit,
        )
    return image_bytes_to_data_uri(p.read_bytes(), max_bytes=limit)

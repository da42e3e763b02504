"""统一业务异常模型。

所有跨模块抛出的业务级错误都继承自 BusinessError，
便于在控制器或 UI 层做统一捕获与用户提示。

按传播策略分两类：
- 必须向上暴露的：InitializationError、NotReadyError（阻塞后续所有功能）。
- 在边界处被吞掉并降级的：StorageUnavailableError、RecognitionError、StreamError。
"""

from typing import Optional


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 trace_id、model_id 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class InitializationError(BusinessError):
    """推理引擎加载失败。在重试成功之前，对话功能不可用。"""


class NotReadyError(BusinessError):
    """引擎尚未就绪时调用了 generate，属于调用方错误。"""


class GenerationInProgressError(BusinessError):
    """同一个引擎实例上已有一次生成在进行中。"""


class StorageUnavailableError(BusinessError):
    """持久化层无法打开或读写，调用方应退化为纯内存模式。"""


class RecognitionError(BusinessError):
    """OCR 或语音识别失败，永远不是致命错误。"""


class StreamError(BusinessError):
    """生成过程中流被中断。

    partial_text 保存中断前已经拼接好的文本。
    """

    def __init__(self, code: str, message: str, partial_text: str = "", cause: Optional[BaseException] = None, **extra):
        super().__init__(code=code, message=message, **extra)
        self.partial_text = partial_text
        self.cause = cause


class NetworkError(BusinessError):
    """网络层错误，例如连接本地推理服务失败、超时等。"""


class ApiError(BusinessError):
    """推理服务返回非 2xx/429 错误时抛出。"""


class RateLimitError(BusinessError):
    """推理服务限流错误。"""


class ValidationError(BusinessError):
    """参数或配置校验失败。"""

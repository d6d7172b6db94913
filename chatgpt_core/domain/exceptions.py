"""统一业务异常模型。

所有跨模块抛出的业务级错误都继承自 BusinessError，
便于调用方统一捕获与提示。客户端内部不做任何重试。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 call_id 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class TransportError(BusinessError):
    """网络层错误：连接失败、超时，或 HTTP 返回非 2xx 状态。"""


class RateLimitError(TransportError):
    """HTTP 429，同样不会自动重试，由调用方决定退避策略。"""


class ProtocolError(BusinessError):
    """响应体无法解析，或者响应体里带有 error 字段。"""


class ValidationError(BusinessError):
    """参数或配置校验失败。"""

"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在 API 层或 UI 层做统一捕获与用户提示。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "RATE_LIMIT"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 model、duration_ms 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class NetworkError(BusinessError):
    """网络层错误，例如连接失败、超时等。"""


class ApiError(BusinessError):
    """模型 API 返回非 2xx 错误时抛出，http_status 保留原始状态码。"""


class RateLimitError(BusinessError):
    """限流错误（HTTP 429），由重试策略负责退避，必要时触发模型降级。"""

    def __init__(self, code: str = "RATE_LIMIT", message: str = "rate limit exceeded (429)", http_status: int = 429, **extra):
        super().__init__(code, message, http_status, **extra)


class AuthenticationError(BusinessError):
    """认证/授权失败（401/403），不重试。"""


class ValidationError(BusinessError):
    """参数或配置校验失败。"""


class ExchangeError(BusinessError):
    """一次消息交换最终失败（重试耗尽或不可重试的错误）。

    除了原始错误信息外，还携带模型名、耗时与原始错误类型，
    原始异常通过 ``__cause__`` 保留。
    """

    def __init__(self, message: str, *, model: str, duration_ms: int, error_type: str, http_status: int = 500, **extra):
        super().__init__("EXCHANGE_FAILED", message, http_status, **extra)
        self.model = model
        self.duration_ms = duration_ms
        self.error_type = error_type

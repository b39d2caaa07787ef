"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在引擎层做统一捕获、记录日志，并把失败限制在单轮对话内。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 trace_id、provider 等）。
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
    """第三方 API 返回非 2xx/429 错误时抛出。"""


class RateLimitError(BusinessError):
    """Provider 限流错误，不做自动重试，由本轮对话直接失败。"""


class ValidationError(BusinessError):
    """参数或命令输入校验失败。"""


class StoreError(BusinessError):
    """状态文件读写失败。"""


class ConfigurationError(BusinessError):
    """启动期配置错误（如缺少 API 密钥），必须在处理任何会话之前终止进程。"""

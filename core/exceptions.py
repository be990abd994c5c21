"""业务异常定义。预期内的业务结果用枚举状态返回，这里只放校验失败和外部依赖故障。"""

from typing import Optional


class SnipTextError(Exception):
    """Base exception for SnipText services"""
    pass


class ValidationError(SnipTextError, ValueError):
    """Malformed input rejected before any state is touched"""
    pass


class ConfigError(SnipTextError):
    """Required configuration is missing"""
    pass


class ExtractionError(SnipTextError):
    """Text extraction provider failed. Retryable by the client."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class ExtractionTimeoutError(ExtractionError):
    """Extraction provider did not answer within the configured timeout"""
    pass


class IntrospectionError(SnipTextError):
    """Federated identity provider could not be reached"""
    pass


class QuotaBusyError(SnipTextError):
    """Quota counter stayed contended after the bounded retries"""

    def __init__(self, message: str, attempts: int = 0):
        self.attempts = attempts
        super().__init__(message)

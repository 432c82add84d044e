"""领域层异常基类。

支付、退款、回调等领域错误都从 BusinessException 派生，core 层只负责把它们映射为 HTTP 响应。
"""
from __future__ import annotations

from typing import Any, Optional

from shared.codes import BusinessCode


class BusinessException(Exception):
    """可预期的业务错误，携带业务码与结构化详情"""

    def __init__(
        self,
        code: int,
        message: str,
        error_type: str = "BusinessError",
        details: Optional[dict[str, Any]] = None,
        field: Optional[str] = None,
        message_key: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_type = error_type
        self.details = details or {}
        self.field = field
        self.message_key = message_key

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code}, message={self.message!r})"


class DomainValidationException(BusinessException):
    """实体不变量被破坏（金额为负、货币为空等）"""

    def __init__(self, message: str, *, field: str | None = None, details: dict | None = None):
        super().__init__(
            code=BusinessCode.PARAM_VALIDATION_ERROR,
            message=message,
            error_type="DomainValidationError",
            details=details,
            field=field,
            message_key="validation.domain",
        )

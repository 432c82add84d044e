
from .logging import LoggingMiddleware
from .request_id import RequestIDMiddleware, current_tenant_id, get_request_id

__all__ = [
    "RequestIDMiddleware",
    "LoggingMiddleware",
    "get_request_id",
    "current_tenant_id",
]

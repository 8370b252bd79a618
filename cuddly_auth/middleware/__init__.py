from cuddly_auth.middleware.request_log import RequestLoggingMiddleware
from cuddly_auth.middleware.security import SecurityHeadersMiddleware

__all__ = ["RequestLoggingMiddleware", "SecurityHeadersMiddleware"]

# Middleware modules
from entitlement_sync.middleware.auth import AuthMiddleware
from entitlement_sync.middleware.request_id import RequestIDMiddleware

__all__ = [
    "AuthMiddleware",
    "RequestIDMiddleware",
]

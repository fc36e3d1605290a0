"""
Domain utilities for the Cloaking Gateway.

Includes the auth middleware, the request-to-upstream payload builders
and the write-through gateway used by the mutation routes.
"""

from .auth_middleware import AuthContext, AuthMiddleware
from .upstream_gateway import UpstreamGateway, relay

__all__ = [
    "AuthContext",
    "AuthMiddleware",
    "UpstreamGateway",
    "relay",
]

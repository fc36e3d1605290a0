"""
Authentication middleware for the Cloaking Gateway.
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import Request
from jose import JWTError, jwt

from shared.errors import AuthenticationError, AuthorizationError
from shared.logging import get_logger, set_user_context


UserLookup = Callable[[Any], Awaitable[bool]]


@dataclass(frozen=True)
class AuthContext:
    """Caller identity derived from a verified bearer token."""

    user_id: Any
    claims: Dict[str, Any]
    token: str


class AuthMiddleware:
    """Gate in front of every route: is this caller authorized?"""

    def __init__(
        self,
        secret: str,
        algorithm: str = "HS256",
        *,
        user_lookup: Optional[UserLookup] = None,
    ):
        self.secret = secret
        self.algorithm = algorithm
        self.user_lookup = user_lookup
        self.logger = get_logger("cloaking.auth_middleware")

    async def authenticate_request(self, request: Request) -> AuthContext:
        """Verify the ``Authorization: Bearer`` header and return the caller."""
        auth_header = request.headers.get("Authorization")
        token = None
        if auth_header:
            parts = auth_header.split(" ", 1)
            if len(parts) == 2 and parts[0].lower() == "bearer":
                token = parts[1].strip()

        if not token:
            raise AuthenticationError("Access token missing")

        try:
            claims = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except JWTError as e:
            self.logger.warning("JWT verification failed", error=str(e))
            raise AuthorizationError("Invalid access token")

        user_id = claims.get("userId", claims.get("sub"))
        if user_id is None:
            raise AuthorizationError("Invalid access token", details={"reason": "no subject"})

        if self.user_lookup is not None and not await self.user_lookup(user_id):
            self.logger.warning("Token subject no longer exists", user_id=user_id)
            raise AuthorizationError("User does not exist")

        set_user_context(str(user_id))
        context = AuthContext(user_id=user_id, claims=claims, token=token)
        request.state.auth = context
        return context

    async def __call__(self, request: Request) -> AuthContext:
        return await self.authenticate_request(request)

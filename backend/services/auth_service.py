"""
Token verification for HTTP requests and WebSocket handshakes.

Tokens are issued by the platform's auth service and signed with the shared
JWT_SECRET. This module only verifies them and resolves the user:

- Signature and expiry checked with python-jose
- User id read from the "userId" claim (falls back to "sub")
- User resolved through the users directory
"""

from typing import Optional

from jose import jwt, JWTError

from core.errors import AuthenticationFailed
from core.logging import get_logger
from models.models import User
from services.user_directory import UserDirectory

logger = get_logger(__name__)


class TokenVerifier:
    def __init__(self, secret: str, algorithm: str, users: UserDirectory) -> None:
        self.secret = secret
        self.algorithm = algorithm
        self.users = users

    def decode(self, token: str) -> str:
        """Return the user id carried by a valid token."""
        if not self.secret:
            raise AuthenticationFailed("Token verification is not configured")
        try:
            payload = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except JWTError as e:
            logger.info("Rejected token: %s", e)
            raise AuthenticationFailed("Invalid authentication token") from e

        user_id = payload.get("userId") or payload.get("sub")
        if not user_id:
            raise AuthenticationFailed("Invalid authentication token")
        return str(user_id)

    async def authenticate(self, token: Optional[str]) -> User:
        if not token:
            raise AuthenticationFailed("Authentication token required")
        user_id = self.decode(token)
        user = await self.users.find_by_id(user_id)
        if user is None:
            raise AuthenticationFailed("User not found")
        return user

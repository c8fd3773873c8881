"""Token issuing, bearer authentication and role checks for the API."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Collection, Dict, Optional

from fastapi import Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwt

from .errors import AuthError, ForbiddenError, TokenExpiredError
from .models import Principal, Role, User

logger = logging.getLogger("eventkampus.security")

ALGORITHM = "HS256"
ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


class TokenService:
    """Issue and verify signed access and refresh tokens.

    Access and refresh tokens are signed with different secrets so that a
    refresh token can never be presented as an access token. Nothing is stored
    server-side; a token is valid as long as its signature and expiry hold.
    """

    def __init__(
        self,
        secret: str,
        refresh_secret: str,
        *,
        access_ttl: timedelta = timedelta(hours=1),
        refresh_ttl: timedelta = timedelta(days=7),
    ) -> None:
        if not secret or not refresh_secret:
            raise ValueError("Both token secrets must be provided")
        self._secret = secret
        self._refresh_secret = refresh_secret
        self._access_ttl = access_ttl
        self._refresh_ttl = refresh_ttl

    def issue_access_token(self, user: User) -> str:
        claims = {
            "sub": str(user.id),
            "email": user.email,
            "role": user.role.value,
            "type": ACCESS_TOKEN_TYPE,
        }
        return self._encode(claims, self._secret, self._access_ttl)

    def issue_refresh_token(self, user: User) -> str:
        claims = {"sub": str(user.id), "type": REFRESH_TOKEN_TYPE}
        return self._encode(claims, self._refresh_secret, self._refresh_ttl)

    def decode_access_token(self, token: str) -> Principal:
        payload = self._decode(token, self._secret, ACCESS_TOKEN_TYPE)
        try:
            return Principal(
                user_id=int(payload["sub"]),
                email=str(payload.get("email", "")),
                role=Role(payload["role"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise AuthError("Invalid token") from exc

    def decode_refresh_token(self, token: str) -> int:
        payload = self._decode(token, self._refresh_secret, REFRESH_TOKEN_TYPE)
        try:
            return int(payload["sub"])
        except (KeyError, TypeError, ValueError) as exc:
            raise AuthError("Invalid refresh token") from exc

    def _encode(self, claims: Dict[str, Any], secret: str, ttl: timedelta) -> str:
        now = datetime.now(timezone.utc)
        to_encode = dict(claims)
        to_encode.update({"iat": now, "exp": now + ttl})
        return jwt.encode(to_encode, secret, algorithm=ALGORITHM)

    @staticmethod
    def _decode(token: str, secret: str, expected_type: str) -> Dict[str, Any]:
        try:
            payload = jwt.decode(token, secret, algorithms=[ALGORITHM])
        except ExpiredSignatureError as exc:
            raise TokenExpiredError() from exc
        except JWTError as exc:
            raise AuthError("Invalid token") from exc
        if payload.get("type") != expected_type:
            raise AuthError("Invalid token")
        return payload


class BearerAuth:
    """FastAPI dependency resolving the bearer access token into a principal."""

    def __init__(self, tokens: TokenService) -> None:
        self._tokens = tokens
        self._bearer = HTTPBearer(auto_error=False)

    async def __call__(self, request: Request) -> Principal:
        credentials: HTTPAuthorizationCredentials | None = await self._bearer(request)  # type: ignore[assignment]
        if credentials is None or credentials.scheme.lower() != "bearer":
            raise AuthError("Access denied: missing bearer token")
        principal = authenticate(self._tokens, credentials.credentials)
        return principal


def authenticate(tokens: TokenService, token: Optional[str]) -> Principal:
    """Resolve a raw access token into a :class:`Principal`."""

    if not token:
        raise AuthError("Access denied: missing bearer token")
    try:
        return tokens.decode_access_token(token)
    except TokenExpiredError:
        raise
    except AuthError:
        logger.info("Rejected invalid access token")
        raise


def authorize(required_roles: Collection[Role], principal: Principal) -> Principal:
    """Ensure ``principal`` holds one of ``required_roles``."""

    if principal.role not in required_roles:
        logger.warning(
            "User %s with role %s denied access requiring %s",
            principal.user_id,
            principal.role.value,
            ",".join(sorted(role.value for role in required_roles)),
        )
        raise ForbiddenError("Access denied: your role is not allowed to do this")
    return principal


__all__ = [
    "ALGORITHM",
    "BearerAuth",
    "TokenService",
    "authenticate",
    "authorize",
]

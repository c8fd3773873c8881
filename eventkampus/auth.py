"""Account registration, login and token refresh."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import List, Optional

from email_validator import EmailNotValidError, validate_email

from .database import Database
from .errors import AuthError, ValidationError
from .models import Role, User
from .security import TokenService

logger = logging.getLogger("eventkampus.auth")

_UNSAFE_CHARACTERS = re.compile(r"[<>\"']")
_PASSWORD_POLICY = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)")
MIN_PASSWORD_LENGTH = 8
_INVALID_CREDENTIALS = "Invalid email or password"


def sanitize_text(value: str) -> str:
    """Strip surrounding whitespace and characters that could smuggle markup."""

    return _UNSAFE_CHARACTERS.sub("", value).strip()


def normalize_email(value: str) -> str:
    try:
        result = validate_email(value.strip(), check_deliverability=False)
    except EmailNotValidError as exc:
        raise ValidationError("Validation failed", errors=["Email is not valid"]) from exc
    return result.normalized.lower()


def parse_role(value: Optional[str]) -> Role:
    if value is None or value == "":
        return Role.ATTENDEE
    try:
        return Role(value.strip().upper())
    except ValueError as exc:
        raise ValidationError("Validation failed", errors=["Role is not valid"]) from exc


@dataclass(frozen=True)
class LoginResult:
    access_token: str
    refresh_token: str
    user: User


@dataclass(frozen=True)
class RefreshResult:
    access_token: str
    user: User


class AuthService:
    """Operations on the credential store that issue or consume tokens."""

    def __init__(self, database: Database, tokens: TokenService) -> None:
        self._db = database
        self._tokens = tokens

    def register(
        self,
        email: str,
        password: str,
        display_name: str,
        role: Optional[str] = None,
    ) -> User:
        errors: List[str] = []

        normalized_email: Optional[str] = None
        try:
            normalized_email = normalize_email(email)
        except ValidationError as exc:
            errors.extend(exc.errors)

        if len(password) < MIN_PASSWORD_LENGTH:
            errors.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        elif not _PASSWORD_POLICY.match(password):
            errors.append("Password must contain an upper-case letter, a lower-case letter and a digit")

        cleaned_name = sanitize_text(display_name)
        if not 3 <= len(cleaned_name) <= 100:
            errors.append("Display name must be 3-100 characters")

        resolved_role: Optional[Role] = None
        try:
            resolved_role = parse_role(role)
        except ValidationError as exc:
            errors.extend(exc.errors)

        if errors or normalized_email is None or resolved_role is None:
            raise ValidationError("Validation failed", errors=errors)

        user = self._db.create_user(normalized_email, password, cleaned_name, resolved_role)
        logger.info("New user %s registered as %s", user.email, user.role.value)
        return user

    def login(self, email: str, password: str) -> LoginResult:
        try:
            normalized_email = normalize_email(email)
        except ValidationError as exc:
            logger.warning("Failed login attempt with malformed email")
            raise AuthError(_INVALID_CREDENTIALS) from exc
        user = self._db.authenticate_user(normalized_email, password)
        if user is None:
            logger.warning("Failed login attempt for %s", normalized_email)
            raise AuthError(_INVALID_CREDENTIALS)

        logger.info("Successful login for %s as %s", user.email, user.role.value)
        return LoginResult(
            access_token=self._tokens.issue_access_token(user),
            refresh_token=self._tokens.issue_refresh_token(user),
            user=user,
        )

    def refresh(self, refresh_token: Optional[str]) -> RefreshResult:
        if not refresh_token:
            raise AuthError("Refresh token is missing")
        user_id = self._tokens.decode_refresh_token(refresh_token)
        user = self._db.get_user(user_id)
        if user is None:
            raise AuthError("Refresh token is not valid")
        return RefreshResult(access_token=self._tokens.issue_access_token(user), user=user)

    def current_user(self, user_id: int) -> User:
        user = self._db.get_user(user_id)
        if user is None:
            raise AuthError("User no longer exists")
        return user


__all__ = [
    "AuthService",
    "LoginResult",
    "RefreshResult",
    "normalize_email",
    "parse_role",
    "sanitize_text",
]

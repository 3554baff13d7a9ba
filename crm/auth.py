"""
Authentication: registration, login/logout, bearer-token resolution and the
password-reset flow.

The authenticated user's id is the tenant id for every business route, so
``get_current_user`` is the gate in front of all of them.
"""

import logging
import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional

import bcrypt
from fastapi import Depends, Header

from crm.config import get_settings
from crm.errors import ErrorKind, Result, ServiceError, fail, ok
from crm.models import User
from crm.repository import Repository
from crm.schemas import PublicUser
from crm.sessions import SessionStore
from crm.storage import get_repository
from crm.utils import utcnow

logger = logging.getLogger(__name__)

BEARER_PREFIX = "Bearer "
# bcrypt only looks at the first 72 bytes and recent releases reject longer input
BCRYPT_MAX_BYTES = 72
INVALID_CREDENTIALS = "Invalid email or password"


def hash_password(password: str, rounds: int = 12) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # Malformed stored hash or over-long input
        return False


def password_too_long(password: str) -> bool:
    return len(password.encode("utf-8")) > BCRYPT_MAX_BYTES


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Token from ``Bearer <token>``; anything else is None."""
    if not authorization or not authorization.startswith(BEARER_PREFIX):
        return None
    token = authorization[len(BEARER_PREFIX):].strip()
    return token or None


def to_public(user: User) -> PublicUser:
    return PublicUser.model_validate(user)


class AuthService:
    def __init__(
        self,
        repository: Repository,
        bcrypt_rounds: int = 12,
        session_ttl: timedelta = timedelta(days=30),
        reset_ttl: timedelta = timedelta(hours=1),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.bcrypt_rounds = bcrypt_rounds
        self.reset_ttl = reset_ttl
        self.clock = clock
        self.sessions = SessionStore(repository, ttl=session_ttl, clock=clock)

    def _start_session(self, user: User) -> Result:
        session, error = self.sessions.issue(user.id)
        if error is not None:
            return None, error
        return ok((to_public(user), session.token))

    def register(self, name: str, username: str, email: str, password: str) -> Result:
        """
        Create the user and a first session.

        Returns ``((PublicUser, token), None)`` or a CONFLICT when the e-mail
        or the username is taken. The two lookups are independent, and a
        registration racing past them still lands on the unique columns.
        """
        if self.repository.get_user_by_email(email) is not None:
            return fail(ErrorKind.CONFLICT, "Email is already in use")
        if self.repository.get_user_by_username(username) is not None:
            return fail(ErrorKind.CONFLICT, "Username is already in use")
        if password_too_long(password):
            return fail(ErrorKind.VALIDATION_ERROR, "Password must be at most 72 bytes")

        user, error = self.repository.create_user(
            username=username,
            name=name,
            email=email,
            password_hash=hash_password(password, self.bcrypt_rounds),
        )
        if error is not None:
            return fail(ErrorKind.CONFLICT, "Email or username is already in use")

        logger.info("User registered", extra={"user_id": user.id})
        return self._start_session(user)

    def login(self, email: str, password: str) -> Result:
        """Open a new session. Sessions from earlier logins stay valid."""
        user = self.repository.get_user_by_email(email)
        # Same message for unknown e-mail and wrong password
        if user is None or password_too_long(password) or not verify_password(password, user.password_hash):
            return fail(ErrorKind.UNAUTHENTICATED, INVALID_CREDENTIALS)
        logger.info("User logged in", extra={"user_id": user.id})
        return self._start_session(user)

    def logout(self, token: str) -> None:
        self.sessions.revoke(token)

    def get_user_by_token(self, token: str) -> Optional[PublicUser]:
        user_id = self.sessions.resolve(token)
        if user_id is None:
            return None
        user = self.repository.get_user(user_id)
        return to_public(user) if user is not None else None

    def authenticate_request(self, authorization: Optional[str]) -> Optional[PublicUser]:
        token = extract_bearer_token(authorization)
        if token is None:
            return None
        return self.get_user_by_token(token)

    def request_password_reset(self, email: str) -> Result:
        """Store a fresh one-hour reset token on the user, replacing any earlier one."""
        user = self.repository.get_user_by_email(email)
        if user is None:
            return fail(ErrorKind.NOT_FOUND, "Email not found")

        reset_token = secrets.token_urlsafe(32)
        self.repository.update_user(
            user.id,
            reset_token=reset_token,
            reset_token_expiry=self.clock() + self.reset_ttl,
        )
        logger.info("Password reset requested", extra={"user_id": user.id})
        return ok(reset_token)

    def reset_password(self, reset_token: str, new_password: str) -> Result:
        """Set the new password, burn the reset token and log the user out everywhere."""
        user = self.repository.get_user_by_reset_token(reset_token) if reset_token else None
        if user is None or user.reset_token_expiry is None or user.reset_token_expiry < self.clock():
            return fail(ErrorKind.INVALID_TOKEN, "Invalid or expired reset token")
        if password_too_long(new_password):
            return fail(ErrorKind.VALIDATION_ERROR, "Password must be at most 72 bytes")

        self.repository.update_user(
            user.id,
            password_hash=hash_password(new_password, self.bcrypt_rounds),
            reset_token=None,
            reset_token_expiry=None,
        )
        self.sessions.revoke_all(user.id)
        logger.info("Password reset completed", extra={"user_id": user.id})
        return ok(True)


# =============================================================================
# FastAPI dependencies
# =============================================================================

def get_auth_service(repository: Repository = Depends(get_repository)) -> AuthService:
    settings = get_settings()
    return AuthService(
        repository,
        bcrypt_rounds=settings.BCRYPT_ROUNDS,
        session_ttl=timedelta(days=settings.SESSION_TTL_DAYS),
        reset_ttl=timedelta(minutes=settings.RESET_TOKEN_TTL_MINUTES),
    )


def get_bearer_token(authorization: Optional[str] = Header(None)) -> Optional[str]:
    return extract_bearer_token(authorization)


def get_current_user(
    authorization: Optional[str] = Header(None),
    auth: AuthService = Depends(get_auth_service),
) -> PublicUser:
    user = auth.authenticate_request(authorization)
    if user is None:
        raise ServiceError(ErrorKind.UNAUTHENTICATED, "Authentication required").to_http()
    return user

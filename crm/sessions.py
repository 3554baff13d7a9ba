"""
Session store: opaque bearer tokens mapped to a user id and a fixed expiry.

A session is created on login/register and only ever deleted: by logout, by
the expiry check on lookup, or in bulk when the owner resets the password.
Expiry is checked lazily on every lookup; no background sweep is needed for
correctness.
"""

import logging
import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional

from crm.errors import Result
from crm.repository import Repository
from crm.utils import utcnow

logger = logging.getLogger(__name__)


def generate_token() -> str:
    """256 bits from the OS CSPRNG, URL-safe."""
    return secrets.token_urlsafe(32)


class SessionStore:
    def __init__(
        self,
        repository: Repository,
        ttl: timedelta = timedelta(days=30),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.ttl = ttl
        self.clock = clock

    def issue(self, user_id: str) -> Result:
        """Create a session for ``user_id``. Earlier sessions stay valid."""
        return self.repository.create_session(
            user_id=user_id,
            token=generate_token(),
            expires_at=self.clock() + self.ttl,
        )

    def resolve(self, token: str) -> Optional[str]:
        """
        Return the user id behind ``token``, or None.

        An expired session is deleted as a side effect, so a second lookup
        of the same token finds nothing at all.
        """
        session = self.repository.get_session(token)
        if session is None:
            return None
        if session.expires_at < self.clock():
            logger.info("Session expired, deleting", extra={"user_id": session.user_id})
            self.repository.delete_session(token)
            return None
        return session.user_id

    def revoke(self, token: str) -> None:
        # Unknown tokens are fine, logout is idempotent
        self.repository.delete_session(token)

    def revoke_all(self, user_id: str) -> int:
        count = self.repository.delete_user_sessions(user_id)
        logger.info("Revoked all sessions", extra={"user_id": user_id, "count": count})
        return count

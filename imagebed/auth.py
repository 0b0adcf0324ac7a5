import hashlib
import logging
from secrets import compare_digest
from typing import Optional

from .errors import AuthError
from .logs import sanitize_log_value

logger = logging.getLogger("imagebed.auth")

# Shared with the deployment tooling that precomputes ADMIN_PASSWORD_HASH.
PASSWORD_SALT = "your_static_salt_for_image_bed"


def hash_password(password: str) -> str:
    """Return the hex SHA-256 digest of *password* followed by the fixed salt."""

    return hashlib.sha256((password + PASSWORD_SALT).encode("utf-8")).hexdigest()


class AuthGate:
    """Verifies listing passwords against the precomputed admin hash."""

    def __init__(self, password_hash: str) -> None:
        self._password_hash = password_hash

    def __repr__(self) -> str:
        return "AuthGate(password_hash=<redacted>)"

    def verify(self, candidate: Optional[str]) -> bool:
        if not isinstance(candidate, str):
            return False
        return compare_digest(hash_password(candidate), self._password_hash)

    def require(self, candidate: Optional[str], source_address: Optional[str] = None) -> None:
        if not self.verify(candidate):
            logger.warning(
                "list_auth_failed ip=%s", sanitize_log_value(source_address or "unknown")
            )
            raise AuthError()

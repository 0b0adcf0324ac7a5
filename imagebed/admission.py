import logging
from typing import Mapping, Optional

from .errors import AdmissionDenied
from .logs import sanitize_log_value

logger = logging.getLogger("imagebed.admission")


def resolve_client_address(
    headers: Mapping[str, str],
    remote_addr: Optional[str],
    trust_forwarded_for: bool = True,
) -> str:
    """Return the caller address, preferring the first X-Forwarded-For hop.

    The service normally runs behind a reverse proxy that records the real
    client in ``X-Forwarded-For``.
    """

    if trust_forwarded_for:
        forwarded = headers.get("X-Forwarded-For", "")
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    return remote_addr or ""


class AdmissionGate:
    def __init__(self, allowed_address: str) -> None:
        self.allowed_address = allowed_address

    def is_allowed(self, source_address: str) -> bool:
        return source_address == self.allowed_address

    def authorize(self, source_address: str) -> None:
        """Raise :class:`AdmissionDenied` unless *source_address* is the allowed one."""

        if not self.is_allowed(source_address):
            logger.warning("upload_denied ip=%s", sanitize_log_value(source_address))
            raise AdmissionDenied(source_address)

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from .auth import hash_password
from .errors import ConfigError

logger = logging.getLogger("imagebed.config")

DEFAULT_UPLOADS_DIR = Path("uploads")

MILLIS_PER_DAY = 24 * 60 * 60 * 1000
# Retention months are fixed at 30 days to match the existing cleanup tooling.
DAYS_PER_MONTH = 30

DEFAULT_CLEANUP_INTERVAL_MINUTES = 24 * 60
DEFAULT_MAX_UPLOAD_SIZE_MB = 500
DEFAULT_PORT = 3000

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class Settings:
    """Process-wide configuration, built once at startup."""

    allowed_ip: str
    admin_password_hash: str
    retention_months: int = 0
    cleanup_interval_minutes: int = DEFAULT_CLEANUP_INTERVAL_MINUTES
    uploads_dir: Path = DEFAULT_UPLOADS_DIR
    logs_dir: Optional[Path] = None
    max_upload_size_mb: int = DEFAULT_MAX_UPLOAD_SIZE_MB
    trust_forwarded_for: bool = True
    log_level: str = "INFO"
    port: int = DEFAULT_PORT

    def __repr__(self) -> str:
        # Keep the credential hash out of logs and tracebacks.
        return (
            f"Settings(allowed_ip={self.allowed_ip!r}, retention_months={self.retention_months}, "
            f"cleanup_interval_minutes={self.cleanup_interval_minutes}, uploads_dir={str(self.uploads_dir)!r})"
        )

    @property
    def retention_max_age_ms(self) -> int:
        return months_to_millis(self.retention_months)

    @property
    def retention_enabled(self) -> bool:
        return self.retention_max_age_ms > 0

    @property
    def max_content_length(self) -> int:
        return self.max_upload_size_mb * 1024 * 1024


def months_to_millis(months: int) -> int:
    return max(months, 0) * DAYS_PER_MONTH * MILLIS_PER_DAY


def _resolve_env_path(value: Optional[str], default: Optional[Path]) -> Optional[Path]:
    """Resolve an environment-provided path or fall back to *default*."""

    if value:
        return Path(value).expanduser().resolve()
    return default.resolve() if default is not None else None


def _safe_int_env(environ: Mapping[str, str], key: str, default: int, min_value: int = 1) -> int:
    """Safely parse integer environment variable with error handling."""

    raw_value = environ.get(key)
    if raw_value is None or raw_value.strip() == "":
        return default
    try:
        return max(min_value, int(raw_value))
    except (TypeError, ValueError):
        logger.warning("Invalid value for %s: %s. Using default: %d", key, raw_value, default)
        return default


def _get_bool_env(environ: Mapping[str, str], key: str, default: bool) -> bool:
    raw_value = environ.get(key)
    if raw_value is None:
        return default
    normalized = raw_value.strip().lower()
    if normalized in _TRUTHY:
        return True
    if normalized in _FALSY:
        return False
    logger.warning("Invalid value for %s: %s. Using default: %s", key, raw_value, default)
    return default


def _parse_retention_months(environ: Mapping[str, str]) -> int:
    raw_value = (environ.get("CLEANUP_MONTHS") or "").strip()
    if not raw_value:
        return 0
    try:
        months = int(raw_value)
    except ValueError:
        logger.warning("Invalid value for CLEANUP_MONTHS: %s. Retention disabled.", raw_value)
        return 0
    if months < 0:
        raise ConfigError("CLEANUP_MONTHS must be zero or a positive number of months.")
    return months


def _resolve_password_hash(environ: Mapping[str, str]) -> str:
    raw_password = environ.get("ADMIN_RAW_PASSWORD")
    if raw_password:
        return hash_password(raw_password)

    precomputed = (environ.get("ADMIN_PASSWORD_HASH") or "").strip().lower()
    if precomputed:
        return precomputed

    raise ConfigError(
        "ADMIN_RAW_PASSWORD or ADMIN_PASSWORD_HASH must be set in the environment."
    )


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build :class:`Settings` from *environ* (``os.environ`` by default).

    Raises :class:`ConfigError` when the admission address or the admin
    credential is missing.
    """

    environ = os.environ if environ is None else environ

    allowed_ip = (environ.get("ALLOWED_IP") or "").strip()
    if not allowed_ip:
        raise ConfigError("ALLOWED_IP must be set in the environment.")

    settings = Settings(
        allowed_ip=allowed_ip,
        admin_password_hash=_resolve_password_hash(environ),
        retention_months=_parse_retention_months(environ),
        cleanup_interval_minutes=_safe_int_env(
            environ, "CLEANUP_INTERVAL_MINUTES", DEFAULT_CLEANUP_INTERVAL_MINUTES
        ),
        uploads_dir=_resolve_env_path(environ.get("IMAGEBED_UPLOADS_DIR"), DEFAULT_UPLOADS_DIR),
        logs_dir=_resolve_env_path(environ.get("IMAGEBED_LOGS_DIR"), None),
        max_upload_size_mb=_safe_int_env(environ, "MAX_UPLOAD_SIZE_MB", DEFAULT_MAX_UPLOAD_SIZE_MB),
        trust_forwarded_for=_get_bool_env(environ, "TRUST_FORWARDED_FOR", True),
        log_level=(environ.get("LOG_LEVEL") or "INFO").upper(),
        port=_safe_int_env(environ, "PORT", DEFAULT_PORT),
    )
    logger.info(
        "config_loaded allowed_ip=%s retention_months=%d uploads_dir=%s",
        settings.allowed_ip,
        settings.retention_months,
        settings.uploads_dir,
    )
    return settings

import logging
import re
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

from flask import g, has_request_context

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
LOG_FILE_MAX_BYTES = 5 * 1024 * 1024  # 5 MB max log file size
LOG_FILE_BACKUP_COUNT = 3  # Number of log file backups to keep

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f-\x9f]")
_NAMED_ESCAPES = {"\n": "\\n", "\r": "\\r", "\t": "\\t"}


def _escape_control(match: "re.Match[str]") -> str:
    char = match.group()
    return _NAMED_ESCAPES.get(char, f"\\x{ord(char):02x}")


def sanitize_log_value(value: Any) -> Any:
    """Escape control characters so a client-supplied value cannot forge log lines."""

    if not isinstance(value, str):
        return value
    return _CONTROL_CHARS.sub(_escape_control, value)


def configure_logging(level_name: str = "INFO", logs_dir: Optional[Path] = None) -> Optional[Path]:
    """Configure root logging and, when *logs_dir* is set, a rotating file.

    Returns the log file path if file logging is active.
    """

    numeric_level = getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(level=numeric_level, format=LOG_FORMAT)
    logging.getLogger("imagebed").setLevel(numeric_level)

    if logs_dir is None:
        return None

    logs_dir.mkdir(parents=True, exist_ok=True)
    log_path = logs_dir / "application.log"
    root_logger = logging.getLogger()
    formatter = logging.Formatter(LOG_FORMAT)

    for handler in root_logger.handlers:
        if isinstance(handler, RotatingFileHandler) and getattr(handler, "baseFilename", "") == str(log_path):
            handler.setLevel(numeric_level)
            handler.setFormatter(formatter)
            return log_path

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setLevel(numeric_level)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)
    return log_path


class RequestLogAdapter(logging.LoggerAdapter):
    """Prefixes records with the current request id inside a request context."""

    def process(self, msg, kwargs):
        request_id = getattr(g, "request_id", None) if has_request_context() else None
        if request_id:
            msg = f"request_id={sanitize_log_value(request_id)} {msg}"
        return msg, kwargs


lifecycle_logger = RequestLogAdapter(logging.getLogger("imagebed.lifecycle"), {})

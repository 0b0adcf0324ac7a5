from typing import Optional


class ImageBedError(Exception):
    """Base class for request-scoped errors returned to the caller as JSON."""

    status_code = 500
    default_message = "Internal server error."

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self)

    def to_payload(self) -> dict:
        return {"message": self.message}


class AdmissionDenied(ImageBedError):
    """Raised when an upload arrives from an address other than the allowed one."""

    status_code = 403

    def __init__(self, source_address: str) -> None:
        super().__init__(
            f"Sorry, your IP address ({source_address}) is not authorized to upload files."
        )
        self.source_address = source_address


class ValidationError(ImageBedError):
    status_code = 400
    default_message = "Invalid request."


class AuthError(ImageBedError):
    status_code = 401
    default_message = "Incorrect password."


class NotFound(ImageBedError):
    status_code = 404
    default_message = "Not found."

    def __init__(self, name: Optional[str] = None) -> None:
        super().__init__()
        self.name = name


class StorageError(ImageBedError):
    status_code = 500
    default_message = "Storage operation failed."


class NameConflict(StorageError):
    """Raised when a put would overwrite an existing object."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Object already exists: {name}")
        self.name = name


class ConfigError(RuntimeError):
    """Raised at startup when required configuration is missing or invalid."""

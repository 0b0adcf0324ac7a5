import logging
import os
import time
from dataclasses import dataclass
from typing import BinaryIO, Callable, Iterator, Optional

from .errors import ValidationError
from .storage import ObjectStore

logger = logging.getLogger("imagebed.ingest")

UPLOAD_FIELD = "image"
PUBLIC_PREFIX = "/uploads"
MAX_NAME_ATTEMPTS = 1000

NO_FILE_MESSAGE = "No file selected or file upload failed."


def _now_ms() -> int:
    return int(time.time() * 1000)


def build_object_name(field_id: str, capture_ms: int, original_name: str) -> str:
    """Return ``<field>-<millis><ext>`` using the original file's extension."""

    extension = os.path.splitext(original_name)[1].lower()
    if any(char in extension for char in ("/", "\\", "\x00")):
        extension = ""
    return f"{field_id}-{capture_ms}{extension}"


def public_url(name: str) -> str:
    return f"{PUBLIC_PREFIX}/{name}"


@dataclass(frozen=True)
class StoredObjectRef:
    name: str
    size: int

    @property
    def url(self) -> str:
        return public_url(self.name)


class UploadIngest:
    """Names incoming uploads and writes them through the object store."""

    def __init__(
        self,
        store: ObjectStore,
        field_id: str = UPLOAD_FIELD,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self.store = store
        self.field_id = field_id
        self._clock = clock

    def candidate_names(self, original_name: str) -> Iterator[str]:
        # Uploads landing in the same millisecond move to the next free one.
        capture_ms = self._clock()
        for offset in range(MAX_NAME_ATTEMPTS):
            yield build_object_name(self.field_id, capture_ms + offset, original_name)

    def ingest(self, stream: Optional[BinaryIO], original_name: Optional[str]) -> StoredObjectRef:
        """Store one uploaded file and return a reference to it.

        Raises :class:`ValidationError` when no file was submitted and
        :class:`StorageError` when the write fails.
        """

        if stream is None or not original_name:
            raise ValidationError(NO_FILE_MESSAGE)

        stored = self.store.put_first_free(self.candidate_names(original_name), stream)
        logger.info("upload_ingested name=%s size=%d", stored.name, stored.size)
        return StoredObjectRef(name=stored.name, size=stored.size)

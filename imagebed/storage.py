import logging
import os
import re
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Iterable, List, Optional

from .errors import NameConflict, NotFound, StorageError

logger = logging.getLogger("imagebed.storage")

CHUNK_SIZE_BYTES = 1024 * 1024  # 1 MB chunks for streaming
TEMP_PREFIX = "."
TEMP_SUFFIX = ".tmp"

IMAGE_EXTENSIONS = frozenset({".jpg", ".jpeg", ".png", ".gif", ".bmp", ".webp", ".svg"})

# Generated names end in "-<millis><ext>"; the timestamp doubles as creation time.
_NAME_TIMESTAMP = re.compile(r"-(?P<millis>\d+)(?:\.[^.]*)?$")


def extension_of(name: str) -> str:
    return os.path.splitext(name)[1].lower()


def is_image_name(name: str) -> bool:
    return extension_of(name) in IMAGE_EXTENSIONS


def embedded_timestamp_ms(name: str) -> Optional[int]:
    """Return the capture timestamp embedded in a generated object name."""

    match = _NAME_TIMESTAMP.search(name)
    if match is None:
        return None
    return int(match.group("millis"))


def is_valid_name(name: str) -> bool:
    if not name or name in {".", ".."}:
        return False
    if "/" in name or "\\" in name or "\x00" in name:
        return False
    # Hidden names are reserved for in-flight temporary files.
    return not name.startswith(TEMP_PREFIX)


@dataclass(frozen=True)
class StoredObject:
    name: str
    size: int
    created_at: int

    @property
    def extension(self) -> str:
        return extension_of(self.name)

    @property
    def is_image(self) -> bool:
        return self.extension in IMAGE_EXTENSIONS


class ObjectStore:
    """Flat-directory blob store keyed by object name.

    Objects are written to a hidden temporary file and published with a hard
    link, so readers never observe a partial object and an existing name is
    never overwritten.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def __repr__(self) -> str:
        return f"ObjectStore(root={str(self.root)!r})"

    def ensure_root(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, name: str) -> Path:
        if not is_valid_name(name):
            raise NotFound(name)
        return self.root / name

    def _to_object(self, name: str, stat_result: os.stat_result) -> StoredObject:
        created_at = embedded_timestamp_ms(name)
        if created_at is None:
            created_at = int(stat_result.st_mtime * 1000)
        return StoredObject(name=name, size=stat_result.st_size, created_at=created_at)

    def exists(self, name: str) -> bool:
        try:
            return self._path(name).is_file()
        except NotFound:
            return False

    def put(self, name: str, stream: BinaryIO, chunk_size: int = CHUNK_SIZE_BYTES) -> StoredObject:
        """Stream *stream* into a new object called *name*.

        Raises :class:`NameConflict` if *name* is taken and
        :class:`StorageError` on any I/O failure; neither leaves a visible
        object behind.
        """

        return self.put_first_free([name], stream, chunk_size=chunk_size)

    def put_first_free(
        self,
        candidates: Iterable[str],
        stream: BinaryIO,
        chunk_size: int = CHUNK_SIZE_BYTES,
    ) -> StoredObject:
        """Store *stream* under the first name in *candidates* not already taken.

        The payload is written once; only publication is retried, so the
        stream does not need to be seekable.
        """

        temp_path = self.root / f"{TEMP_PREFIX}{uuid.uuid4().hex}{TEMP_SUFFIX}"
        name = None
        written = 0
        try:
            self.ensure_root()
            with temp_path.open("xb") as destination:
                while True:
                    chunk = stream.read(chunk_size)
                    if not chunk:
                        break
                    destination.write(chunk)
                    written += len(chunk)
                destination.flush()
                os.fsync(destination.fileno())
                stat_result = os.fstat(destination.fileno())

            for name in candidates:
                if not is_valid_name(name):
                    raise StorageError(f"Invalid object name: {name!r}")
                target = self.root / name
                try:
                    os.link(temp_path, target)
                except FileExistsError:
                    logger.debug("object_name_taken name=%s", name)
                    continue
                break
            else:
                raise NameConflict(name or "")
        except OSError as error:
            logger.error("object_write_failed name=%s error=%s", name, error)
            raise StorageError("Failed to store uploaded file.") from error
        finally:
            try:
                temp_path.unlink(missing_ok=True)
            except OSError as error:
                logger.warning("temp_file_remove_failed path=%s error=%s", temp_path, error)

        logger.info("object_stored name=%s size=%d", name, written)
        return self._to_object(name, stat_result)

    def open(self, name: str) -> BinaryIO:
        path = self._path(name)
        try:
            return path.open("rb")
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError):
            raise NotFound(name) from None
        except OSError as error:
            raise StorageError("Failed to read stored file.") from error

    def get(self, name: str) -> bytes:
        with self.open(name) as handle:
            try:
                return handle.read()
            except OSError as error:
                raise StorageError("Failed to read stored file.") from error

    def stat(self, name: str) -> StoredObject:
        path = self._path(name)
        try:
            stat_result = path.stat()
        except (FileNotFoundError, NotADirectoryError):
            raise NotFound(name) from None
        except OSError as error:
            raise StorageError(f"Failed to stat {name}.") from error
        if not path.is_file():
            raise NotFound(name)
        return self._to_object(name, stat_result)

    def snapshot(self) -> List[str]:
        """Return the names of all committed objects at this instant."""

        try:
            with os.scandir(self.root) as entries:
                return sorted(
                    entry.name
                    for entry in entries
                    if is_valid_name(entry.name) and entry.is_file()
                )
        except FileNotFoundError:
            return []
        except OSError as error:
            logger.error("object_snapshot_failed root=%s error=%s", self.root, error)
            raise StorageError("Could not read the upload directory.") from error

    def iter_objects(self, names: Optional[Iterable[str]] = None) -> Iterable[StoredObject]:
        """Yield metadata for *names*, skipping objects removed since the snapshot."""

        for name in self.snapshot() if names is None else names:
            try:
                yield self.stat(name)
            except NotFound:
                logger.debug("object_vanished name=%s", name)

    def list(self) -> List[StoredObject]:
        """Return every stored object with a recognized image extension."""

        return list(self.iter_objects(name for name in self.snapshot() if is_image_name(name)))

    def delete(self, name: str) -> None:
        path = self._path(name)
        try:
            path.unlink()
        except FileNotFoundError:
            raise NotFound(name) from None
        except OSError as error:
            raise StorageError(f"Failed to delete {name}.") from error
        logger.info("object_deleted name=%s", name)

    def cleanup_temp_files(self, max_age_seconds: int = 3600) -> int:
        """Remove temporary files abandoned by interrupted uploads."""

        removed = 0
        cutoff = time.time() - max_age_seconds
        try:
            temp_files = list(self.root.glob(f"{TEMP_PREFIX}*{TEMP_SUFFIX}"))
        except OSError as error:
            logger.warning("temp_cleanup_scan_failed root=%s error=%s", self.root, error)
            return 0

        for temp_file in temp_files:
            try:
                if temp_file.stat().st_mtime < cutoff:
                    temp_file.unlink()
                    removed += 1
                    logger.info("temp_file_removed path=%s", temp_file)
            except FileNotFoundError:
                continue
            except OSError as error:
                logger.warning("temp_cleanup_failed path=%s error=%s", temp_file, error)

        return removed

"""
Storage abstraction layer for the church portal.
Uploaded bytes live in a flat content directory under generated unique names;
metadata is registered separately in the archivo table.
"""
import errno
import logging
import os
import secrets
import time
from abc import ABC, abstractmethod
from typing import BinaryIO, List, Optional, Tuple

from churchportal.config import get_max_upload_bytes, get_uploads_dir
from churchportal.errors import PayloadTooLarge, StorageIOError, UnsupportedType, ValidationError
from churchportal.filetypes import get_extension, is_allowed, normalize_mime

logger = logging.getLogger(__name__)

PUBLIC_PREFIX = "/uploads/"
CHUNK_SIZE = 1024 * 1024
# Room for multipart boundaries and part headers around the file bytes.
MULTIPART_OVERHEAD = 64 * 1024


class StorageAdapter(ABC):
    """Abstract base class for content stores."""

    @abstractmethod
    def save_upload(self, stream: BinaryIO, filename: str, content_type: str,
                    max_bytes: Optional[int] = None) -> dict:
        """Validate and persist an upload, returning its stored reference."""
        pass

    @abstractmethod
    def exists(self, reference: str) -> bool:
        pass

    @abstractmethod
    def path_for(self, reference: str) -> str:
        pass

    @abstractmethod
    def delete(self, reference: str) -> bool:
        """Remove a stored object. Returns False if it was already gone."""
        pass

    @abstractmethod
    def list_stored(self) -> List[Tuple[str, float]]:
        """List ``(stored name, modification time)`` for every stored object."""
        pass


def stored_name(reference: str) -> str:
    """
    Reduce a stored reference (``/uploads/<name>`` or a bare name) to the
    file name on disk. Path components are discarded.
    """
    return os.path.basename((reference or "").replace("\\", "/"))


def public_reference(name: str) -> str:
    return PUBLIC_PREFIX + name


def check_declared_length(content_length: Optional[str], max_bytes: int) -> None:
    """
    Reject a request whose declared body size cannot fit under the upload cap.
    Chunked requests carry no length and are limited while copying instead.
    """
    if not content_length:
        return
    try:
        declared = int(content_length)
    except ValueError:
        raise ValidationError("Invalid Content-Length header.")
    if declared > max_bytes + MULTIPART_OVERHEAD:
        logger.warning("Upload rejected before reading: declared %d bytes, limit %d", declared, max_bytes)
        raise PayloadTooLarge(max_bytes)


def generate_stored_name(original_filename: str) -> str:
    """Timestamp plus random suffix, keeping the original extension."""
    millis = int(time.time() * 1000)
    return f"file-{millis}-{secrets.token_hex(6)}{get_extension(original_filename)}"


class FilesystemStorageAdapter(StorageAdapter):
    """Stores uploads in a single flat directory on the local filesystem."""

    def __init__(self, storage_path: str):
        self.storage_path = storage_path
        os.makedirs(storage_path, exist_ok=True)

    def save_upload(self, stream: BinaryIO, filename: str, content_type: str,
                    max_bytes: Optional[int] = None) -> dict:
        """
        Stream an upload to disk after checking it against the allow-list.

        The size limit is enforced while copying; a payload of exactly
        ``max_bytes`` is accepted. Partial files are removed on failure.
        """
        if max_bytes is None:
            max_bytes = get_max_upload_bytes()

        extension = get_extension(filename)
        if not is_allowed(filename, content_type):
            logger.warning("Upload rejected: mime=%s extension=%s", content_type, extension)
            raise UnsupportedType(normalize_mime(content_type), extension)

        handle, name = self._open_unique(filename)
        target = os.path.join(self.storage_path, name)
        total = 0
        try:
            with handle:
                while True:
                    chunk = stream.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    total += len(chunk)
                    if total > max_bytes:
                        raise PayloadTooLarge(max_bytes)
                    handle.write(chunk)
        except PayloadTooLarge:
            self._discard(target)
            logger.warning("Upload rejected: %s exceeds %d bytes", filename, max_bytes)
            raise
        except OSError as e:
            self._discard(target)
            logger.error("Failed to write upload %s: %s", target, e)
            raise StorageIOError("Could not store the uploaded file.") from e

        logger.info("Stored upload %s as %s (%d bytes)", filename, name, total)
        return {
            'file_name': name,
            'file_path': public_reference(name),
            'size': total,
        }

    def exists(self, reference: str) -> bool:
        name = stored_name(reference)
        return bool(name) and os.path.isfile(self.path_for(name))

    def path_for(self, reference: str) -> str:
        return os.path.join(self.storage_path, stored_name(reference))

    def delete(self, reference: str) -> bool:
        path = self.path_for(reference)
        try:
            os.remove(path)
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageIOError(f"Could not delete stored file {stored_name(reference)}: {e}") from e
        return True

    def list_stored(self) -> List[Tuple[str, float]]:
        entries = []
        with os.scandir(self.storage_path) as it:
            for entry in it:
                if entry.is_file():
                    entries.append((entry.name, entry.stat().st_mtime))
        return entries

    def _open_unique(self, filename: str):
        """Exclusively create a new file; never overwrites an existing upload."""
        for _ in range(5):
            name = generate_stored_name(filename)
            try:
                return open(os.path.join(self.storage_path, name), "xb"), name
            except FileExistsError:
                continue
            except OSError as e:
                logger.error("Failed to create upload file in %s: %s", self.storage_path, e)
                raise StorageIOError("Could not store the uploaded file.") from e
        raise StorageIOError("Could not allocate a unique name for the upload.")

    def _discard(self, path: str) -> None:
        try:
            os.remove(path)
        except OSError as e:
            if e.errno != errno.ENOENT:
                logger.error("Failed to remove partial upload %s: %s", path, e)


def get_storage_adapter() -> StorageAdapter:
    """
    Factory function for the content store.
    Used as a FastAPI dependency so tests can substitute their own directory.
    """
    return FilesystemStorageAdapter(get_uploads_dir())

import logging
import os
import shutil
import tempfile
import uuid
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BlobHandle:
    handle_id: str
    url: str
    path: str
    mime_type: str = "application/octet-stream"


class LocalBlobStore:
    """Materializes downloaded blobs as temp files addressable by file:// url."""

    def __init__(self, root_dir=None):
        self.root_dir = root_dir or tempfile.mkdtemp(prefix="stormbox-blobs-")
        os.makedirs(self.root_dir, exist_ok=True)
        self._handles = {}

    def create(self, data: bytes, mime_type: str = "application/octet-stream") -> BlobHandle:
        handle_id = uuid.uuid4().hex
        path = os.path.join(self.root_dir, handle_id)
        with open(path, "wb") as f:
            f.write(data or b"")
        handle = BlobHandle(
            handle_id=handle_id,
            url=Path(path).resolve().as_uri(),
            path=path,
            mime_type=mime_type or "application/octet-stream",
        )
        self._handles[handle_id] = handle
        return handle

    def release(self, handle: BlobHandle) -> None:
        if self._handles.pop(handle.handle_id, None) is None:
            return
        try:
            os.remove(handle.path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("unable to remove blob handle %s: %s", handle.path, exc)

    def is_open(self, handle: BlobHandle) -> bool:
        return handle.handle_id in self._handles

    @property
    def open_count(self) -> int:
        return len(self._handles)

    def close(self):
        for handle in list(self._handles.values()):
            self.release(handle)
        shutil.rmtree(self.root_dir, ignore_errors=True)


__all__ = ["BlobHandle", "LocalBlobStore"]

"""
File Blob Store

Durable backing store for data volumes, rooted on a network share that
every instance can reach (the DataConnectionString setting).

Layout:
    <root>/<container>/                 container
    <root>/<container>/<blob>/blob.json header (size limit, created_at)
    <root>/<container>/<blob>/.lease    exclusive write lease (flock)
    <root>/<container>/<blob>/volume/   volume contents

A blob is writable by one holder at a time: the lease is a non-blocking
exclusive flock held for as long as the volume stays mounted.
"""

import fcntl
import json
import logging
import os
from datetime import datetime
from pathlib import Path

logger = logging.getLogger(__name__)

BLOB_HEADER_FILE = "blob.json"
LEASE_FILE = ".lease"
VOLUME_DIR = "volume"


class BlobStoreError(Exception):
    """Raised when a container or blob operation fails."""


class BlobLeaseError(BlobStoreError):
    """The blob's write lease is held by another process."""


class BlobLease:
    """An acquired exclusive write lease. Release exactly once."""

    def __init__(self, path: Path, fd: int):
        self.path = path
        self._fd = fd

    @property
    def held(self) -> bool:
        return self._fd is not None

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None


class FileBlobStore:

    def __init__(self, root: str):
        self.root = Path(root)

    def container_path(self, container_name: str) -> Path:
        return self.root / container_name

    def blob_path(self, container_name: str, blob_name: str) -> Path:
        return self.container_path(container_name) / blob_name

    def volume_path(self, container_name: str, blob_name: str) -> Path:
        return self.blob_path(container_name, blob_name) / VOLUME_DIR

    def create_container_if_not_exists(self, container_name: str) -> bool:
        """Returns True when the container was created by this call."""
        path = self.container_path(container_name)
        try:
            path.mkdir(parents=True, exist_ok=False)
            return True
        except FileExistsError:
            return False
        except OSError as e:
            raise BlobStoreError(f"Cannot create container {container_name}: {e}") from e

    def create_blob_if_not_exists(self, container_name: str, blob_name: str, size_limit_mb: int) -> bool:
        """Returns True when the blob was created by this call."""
        container = self.container_path(container_name)
        if not container.is_dir():
            raise BlobStoreError(f"Container {container_name} does not exist")

        blob = self.blob_path(container_name, blob_name)
        header = blob / BLOB_HEADER_FILE
        if header.exists():
            return False

        try:
            (blob / VOLUME_DIR).mkdir(parents=True, exist_ok=True)
            header.write_text(json.dumps({
                "blob_name": blob_name,
                "size_limit_mb": int(size_limit_mb),
                "created_at": datetime.utcnow().isoformat(),
            }, indent=2))
        except OSError as e:
            raise BlobStoreError(f"Cannot create blob {container_name}/{blob_name}: {e}") from e
        return True

    def read_header(self, container_name: str, blob_name: str) -> dict:
        header = self.blob_path(container_name, blob_name) / BLOB_HEADER_FILE
        try:
            return json.loads(header.read_text())
        except (OSError, ValueError) as e:
            raise BlobStoreError(f"Cannot read header of {container_name}/{blob_name}: {e}") from e

    def acquire_lease(self, container_name: str, blob_name: str) -> BlobLease:
        lease_path = self.blob_path(container_name, blob_name) / LEASE_FILE
        try:
            fd = os.open(lease_path, os.O_RDWR | os.O_CREAT, 0o600)
        except OSError as e:
            raise BlobStoreError(f"Cannot open lease for {container_name}/{blob_name}: {e}") from e

        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as e:
            os.close(fd)
            raise BlobLeaseError(f"Write lease on {container_name}/{blob_name} is held by another process") from e
        except OSError as e:
            os.close(fd)
            raise BlobStoreError(f"Cannot lock {container_name}/{blob_name}: {e}") from e

        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        return BlobLease(lease_path, fd)

"""
Data Volume Manager

Attaches the durable per-ordinal data volume and exposes it as a local
directory for mongod's data files.

Attach steps:
1. Ensure the backing container exists (already-exists is not an error)
2. Ensure the backing blob of the requested size exists (idempotent)
3. Initialize the local cache region from the local resource
4. Mount: take the exclusive write lease and link the volume locally

A mount failure is fatal and propagates as VolumeMountError so the
instance recycles. Detach never raises.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from fabric.environment import LocalResource
from mongorole.blob_store import BlobLease, BlobStoreError, FileBlobStore
from mongorole.config import DATA_BLOB_FORMAT, DATA_CONTAINER_PREFIX, DATA_SUBDIRECTORY
from mongorole.database import RoleRecorder
from mongorole.errors import VolumeMountError
from mongorole.models import RoleEventType

logger = logging.getLogger(__name__)

CACHE_SUBDIRECTORY = "drivecache"
MOUNTS_SUBDIRECTORY = "mounts"


def container_name_for(replica_set_name: str) -> str:
    """Container holding every data blob of one replica set."""
    return DATA_CONTAINER_PREFIX + re.sub(r"[^a-z0-9]", "", replica_set_name.lower())


def blob_name_for(ordinal: int) -> str:
    return DATA_BLOB_FORMAT.format(ordinal)


@dataclass
class MountedVolume:
    container_name: str
    blob_name: str
    local_mount_path: str
    size_limit_mb: int
    lease: Optional[BlobLease] = field(default=None, repr=False, compare=False)
    attachment_id: Optional[int] = field(default=None, repr=False, compare=False)

    @property
    def mounted(self) -> bool:
        return self.lease is not None and self.lease.held


class VolumeManager:
    """
    Manages the data volume lifecycle: attach, data directory, detach.
    """

    def __init__(self, store: FileBlobStore, recorder: Optional[RoleRecorder] = None):
        """
        Initialize volume manager.

        Args:
            store: Backing blob store on the shared network location
            recorder: Optional local database recorder for attach history
        """
        self.store = store
        self.recorder = recorder

    # ========================================================================
    # ATTACH
    # ========================================================================

    def attach(
        self,
        container_name: str,
        blob_name: str,
        size_limit_mb: int,
        cache: LocalResource,
    ) -> MountedVolume:
        logger.info(f"Attaching volume {container_name}/{blob_name} ({size_limit_mb}MB) from {self.store.root}")

        try:
            if self.store.create_container_if_not_exists(container_name):
                logger.info(f"Created container {container_name}")
            else:
                logger.info(f"Container {container_name} already exists")
        except BlobStoreError as e:
            logger.info(f"Container creation failed with {e}")

        try:
            if self.store.create_blob_if_not_exists(container_name, blob_name, size_limit_mb):
                logger.info(f"Created blob {container_name}/{blob_name}")
            else:
                logger.info(f"Blob {container_name}/{blob_name} already exists")
        except BlobStoreError as e:
            logger.info(f"Blob creation failed with {e}")

        # An existing blob keeps the size it was created with
        try:
            size_limit_mb = int(self.store.read_header(container_name, blob_name).get("size_limit_mb", size_limit_mb))
        except (BlobStoreError, TypeError, ValueError) as e:
            logger.info(f"Cannot read blob header, assuming {size_limit_mb}MB: {e}")

        try:
            cache_root = self._initialize_cache(cache)
        except OSError as e:
            logger.critical(f"Failed to initialize cache at {cache.root_path}: {e}")
            raise VolumeMountError(f"Failed to initialize cache at {cache.root_path}: {e}") from e

        lease = None
        try:
            logger.info("Trying to mount blob as data volume")
            lease = self.store.acquire_lease(container_name, blob_name)
            mount_path = self._link_mount(cache_root, container_name, blob_name)
        except (BlobStoreError, OSError) as e:
            if lease is not None:
                lease.release()
            logger.critical(f"Failed to mount data volume {container_name}/{blob_name}: {e}")
            raise VolumeMountError(f"Failed to mount {container_name}/{blob_name}: {e}") from e

        logger.info(f"Write lease acquired on data volume, mounted as {mount_path}")

        volume = MountedVolume(
            container_name=container_name,
            blob_name=blob_name,
            local_mount_path=str(mount_path),
            size_limit_mb=size_limit_mb,
            lease=lease,
        )
        if self.recorder:
            volume.attachment_id = self.recorder.record_attach(
                container_name, blob_name, volume.local_mount_path, size_limit_mb
            )
            self.recorder.log_event(
                RoleEventType.VOLUME_ATTACH,
                f"Mounted {container_name}/{blob_name} at {volume.local_mount_path}",
            )
        return volume

    def _initialize_cache(self, cache: LocalResource) -> Path:
        cache_root = Path(cache.root_path.rstrip("/\\"))
        cache_dir = cache_root / CACHE_SUBDIRECTORY
        cache_dir.mkdir(parents=True, exist_ok=True)
        (cache_dir / "cache.json").write_text(json.dumps({"maximum_size_mb": cache.maximum_size_mb}))
        logger.info(f"Initialized cache at {cache_dir} ({cache.maximum_size_mb}MB)")
        return cache_root

    def _link_mount(self, cache_root: Path, container_name: str, blob_name: str) -> Path:
        target = self.store.volume_path(container_name, blob_name)
        target.mkdir(parents=True, exist_ok=True)

        mounts = cache_root / MOUNTS_SUBDIRECTORY
        mounts.mkdir(parents=True, exist_ok=True)
        mount_path = mounts / f"{container_name}-{Path(blob_name).stem}"

        # Left behind by an instance that died without detaching
        if mount_path.is_symlink():
            mount_path.unlink()
        mount_path.symlink_to(target.resolve(), target_is_directory=True)
        return mount_path

    # ========================================================================
    # DATA DIRECTORY
    # ========================================================================

    def data_directory(self, volume: MountedVolume) -> str:
        data_dir = Path(volume.local_mount_path) / DATA_SUBDIRECTORY
        try:
            data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.critical(f"Cannot create data directory {data_dir}: {e}")
            raise VolumeMountError(f"Cannot create data directory {data_dir}: {e}") from e
        logger.info(f"Data directory is {data_dir}")
        return str(data_dir)

    # ========================================================================
    # DETACH
    # ========================================================================

    def detach(self, volume: Optional[MountedVolume]) -> bool:
        """Unmount; returns False on failure, never raises."""
        if volume is None:
            return True

        error = None
        try:
            logger.info(f"Unmount called on data volume {volume.local_mount_path}")
            mount_path = Path(volume.local_mount_path)
            if mount_path.is_symlink():
                mount_path.unlink()
            if volume.lease is not None:
                volume.lease.release()
            logger.info("Unmount completed on data volume")
        except Exception as e:
            error = str(e)
            logger.warning(f"Unmount failed for {volume.local_mount_path}: {e}", exc_info=True)

        if self.recorder:
            self.recorder.record_detach(volume.attachment_id, error)
            self.recorder.log_event(
                RoleEventType.VOLUME_DETACH,
                f"Unmounted {volume.container_name}/{volume.blob_name}"
                + (f" with error: {error}" if error else ""),
            )
        return error is None

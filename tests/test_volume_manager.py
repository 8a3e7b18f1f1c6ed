import os
from pathlib import Path

import pytest

from fabric.environment import LocalResource
from mongorole.blob_store import BlobLeaseError, BlobStoreError, FileBlobStore
from mongorole.database import RoleRecorder, init_role_database
from mongorole.errors import VolumeMountError
from mongorole.models import AttachmentStatus, RoleEventType
from mongorole.volume_manager import VolumeManager, blob_name_for, container_name_for


@pytest.fixture
def store(tmp_path):
    return FileBlobStore(str(tmp_path / "blobstore"))


@pytest.fixture
def cache(tmp_path):
    root = tmp_path / "cache"
    root.mkdir()
    return LocalResource(name="MongodLocalCacheDir", root_path=str(root) + "/", maximum_size_mb=128)


@pytest.fixture
def recorder():
    _, SessionLocal = init_role_database(None)
    return RoleRecorder(SessionLocal, ordinal=0)


def test_names_are_reproducible():
    assert container_name_for("rs") == "mongoddatadrivers"
    assert container_name_for("My-Replica_Set.1") == "mongoddatadrivemyreplicaset1"
    assert blob_name_for(0) == "mongoddblobdrive0.vhd"
    assert blob_name_for(7) == blob_name_for(7)


def test_attach_creates_container_and_blob(store, cache):
    manager = VolumeManager(store)
    volume = manager.attach("mongoddatadrivers", "mongoddblobdrive0.vhd", 64, cache)

    assert volume.mounted
    assert store.container_path("mongoddatadrivers").is_dir()
    assert store.read_header("mongoddatadrivers", "mongoddblobdrive0.vhd")["size_limit_mb"] == 64
    assert Path(volume.local_mount_path).is_symlink()
    assert (Path(cache.root_path) / "drivecache" / "cache.json").exists()

    manager.detach(volume)


def test_reattach_reuses_existing_blob_and_keeps_data(store, cache):
    manager = VolumeManager(store)
    volume = manager.attach("mongoddatadrivers", "mongoddblobdrive1.vhd", 64, cache)
    data_dir = Path(manager.data_directory(volume))
    (data_dir / "collection.wt").write_text("payload")
    assert manager.detach(volume) is True

    # A later attach with a different size keeps the existing blob
    again = manager.attach("mongoddatadrivers", "mongoddblobdrive1.vhd", 512, cache)
    assert store.read_header("mongoddatadrivers", "mongoddblobdrive1.vhd")["size_limit_mb"] == 64
    assert (Path(manager.data_directory(again)) / "collection.wt").read_text() == "payload"
    manager.detach(again)


def test_data_directory_is_created_under_mount(store, cache):
    manager = VolumeManager(store)
    volume = manager.attach("c", "mongoddblobdrive0.vhd", 64, cache)

    data_dir = manager.data_directory(volume)
    assert data_dir == os.path.join(volume.local_mount_path, "data")
    assert os.path.isdir(data_dir)
    # Second call on an existing directory is fine
    assert manager.data_directory(volume) == data_dir
    manager.detach(volume)


def test_attach_fails_when_lease_is_held(store, cache):
    manager = VolumeManager(store)
    holder = manager.attach("c", "mongoddblobdrive0.vhd", 64, cache)

    with pytest.raises(VolumeMountError):
        manager.attach("c", "mongoddblobdrive0.vhd", 64, cache)

    manager.detach(holder)
    # Released lease can be taken again
    store.acquire_lease("c", "mongoddblobdrive0.vhd").release()


def test_attach_survives_stale_mount_link(store, cache):
    manager = VolumeManager(store)
    volume = manager.attach("c", "mongoddblobdrive0.vhd", 64, cache)
    # Simulate a crash: lease released but the link left behind
    volume.lease.release()

    again = manager.attach("c", "mongoddblobdrive0.vhd", 64, cache)
    assert again.mounted
    manager.detach(again)


def test_detach_never_raises(store, cache):
    manager = VolumeManager(store)
    volume = manager.attach("c", "mongoddblobdrive0.vhd", 64, cache)

    class BrokenLease:
        held = True

        def release(self):
            raise OSError("device busy")

    volume.lease = BrokenLease()
    assert manager.detach(volume) is False
    assert manager.detach(None) is True


def test_lease_conflict_is_reported(store):
    store.create_container_if_not_exists("c")
    store.create_blob_if_not_exists("c", "b", 1)
    lease = store.acquire_lease("c", "b")
    with pytest.raises(BlobLeaseError):
        store.acquire_lease("c", "b")
    lease.release()
    assert not lease.held


def test_blob_requires_container(store):
    with pytest.raises(BlobStoreError):
        store.create_blob_if_not_exists("missing", "b", 1)


def test_container_creation_is_idempotent(store):
    assert store.create_container_if_not_exists("c") is True
    assert store.create_container_if_not_exists("c") is False


def test_attach_and_detach_are_recorded(store, cache, recorder):
    manager = VolumeManager(store, recorder)
    volume = manager.attach("c", "mongoddblobdrive0.vhd", 64, cache)

    current = recorder.current_attachment()
    assert current is not None
    assert current.id == volume.attachment_id
    assert current.status == AttachmentStatus.ATTACHED.value

    manager.detach(volume)
    assert recorder.current_attachment() is None

    event_types = [event.event_type for event in recorder.recent_events()]
    assert event_types[:2] == [RoleEventType.VOLUME_DETACH.value, RoleEventType.VOLUME_ATTACH.value]


def test_reattach_adopts_existing_blob_size(store, cache):
    manager = VolumeManager(store)
    manager.detach(manager.attach("c", "mongoddblobdrive0.vhd", 64, cache))

    again = manager.attach("c", "mongoddblobdrive0.vhd", 512, cache)
    assert again.size_limit_mb == 64
    manager.detach(again)


def test_unusable_cache_resource_is_a_mount_failure(store, tmp_path):
    blocker = tmp_path / "not-a-directory"
    blocker.write_text("")
    cache = LocalResource(name="MongodLocalCacheDir", root_path=str(blocker) + "/", maximum_size_mb=128)

    with pytest.raises(VolumeMountError):
        VolumeManager(store).attach("c", "mongoddblobdrive0.vhd", 64, cache)
    # Nothing was leased
    store.acquire_lease("c", "mongoddblobdrive0.vhd").release()


def test_data_directory_failure_is_a_mount_failure(store, cache):
    manager = VolumeManager(store)
    volume = manager.attach("c", "mongoddblobdrive0.vhd", 64, cache)
    (Path(volume.local_mount_path) / "data").write_text("in the way")

    with pytest.raises(VolumeMountError):
        manager.data_directory(volume)
    manager.detach(volume)

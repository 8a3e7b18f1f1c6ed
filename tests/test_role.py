import threading
from pathlib import Path

import pytest

from fabric.emulator import EmulatedEnvironment
from mongorole.blob_store import FileBlobStore
from mongorole.errors import ProcessLaunchError, VolumeMountError
from mongorole.role import MongoDBRole
from tests.conftest import FakeMongodClient, make_deployment


@pytest.fixture
def make_role(tmp_path, role_root):
    roles = []

    def _make(client=None, **deployment):
        deployment.setdefault("instances", 3)
        environment = EmulatedEnvironment(make_deployment(tmp_path, **deployment))
        clients = []

        def factory(host, port):
            fake = client or FakeMongodClient(host, port)
            clients.append(fake)
            return fake

        role = MongoDBRole(
            environment,
            role_root=str(role_root),
            poll_interval=0.02,
            listen_poll_interval=0.01,
            listen_timeout=5,
            shutdown_timeout=0.2,
            client_factory=factory,
        )
        roles.append(role)
        return role, environment, clients

    yield _make
    for role in roles:
        role.on_stop()


def test_leader_start_forms_replica_set(make_role):
    role, _, clients = make_role(ordinal=0)

    assert role.on_start() is True
    client = clients[0]
    assert client.port == 27017
    assert client.args_of("replSetInitiate") == [("rs", ["127.0.0.1:27017"])]
    assert client.args_of("replSetReconfig") == [
        ("rs", ["127.0.0.1:27017", "127.0.0.1:27018", "127.0.0.1:27019"]),
    ]
    assert role.state.replica_set.recorded_member_count == 3

    status = role.status()
    assert status["started"] and status["process_alive"]
    assert status["identity"]["is_leader"] is True
    assert status["volume"]["blob_name"] == "mongoddblobdrive0.vhd"
    assert status["volume"]["attached_at"] is not None
    assert status["replica_set"]["phase"] == "INITIALIZED"


def test_follower_start_never_touches_membership(make_role):
    role, _, clients = make_role(ordinal=2)

    assert role.on_start() is True
    assert clients[0].port == 27019
    assert clients[0].count("replSetInitiate") == 0
    assert clients[0].count("replSetReconfig") == 0
    assert role.status()["identity"]["is_leader"] is False


def test_mongod_is_launched_with_computed_arguments(make_role, tmp_path):
    role, _, _ = make_role(ordinal=1)
    role.on_start()

    process = role.supervisor.process
    args = process.args
    assert process.binary_path.endswith("MongoDBBinaries/bin/mongod")
    assert args[args.index("--port") + 1] == "27018"
    assert args[args.index("--replSet") + 1] == "rs"
    assert "-v" in args
    assert args[-2:] == ["--bind_ip", "127.0.0.1"]
    assert Path(args[args.index("--dbpath") + 1]).is_dir()
    assert args[args.index("--logpath") + 1].endswith("mongod.log")


def test_restart_reuses_data_volume(make_role, tmp_path):
    role, _, _ = make_role(ordinal=0)
    role.on_start()
    data_dir = Path(role.volume_manager.data_directory(role.volume))
    (data_dir / "marker").write_text("kept")
    role.on_stop()

    again, _, _ = make_role(ordinal=0)
    again.on_start()
    assert (Path(again.volume_manager.data_directory(again.volume)) / "marker").read_text() == "kept"


def test_stop_steps_down_then_shuts_down_then_detaches(make_role):
    role, _, clients = make_role(ordinal=0)
    role.on_start()
    mount_path = Path(role.volume.local_mount_path)

    results = role.on_stop()

    assert [r.name for r in results] == ["step-down", "shutdown", "reap", "detach"]
    assert all(r.ok for r in results)
    names = [call[0] for call in clients[0].calls]
    assert names.index("replSetStepDown") < names.index("shutdown")
    assert not role.supervisor.is_alive()
    assert not mount_path.exists()
    assert role.on_stop() == []


def test_stop_after_crash_skips_commands_but_detaches(make_role, tmp_path):
    role, _, clients = make_role(ordinal=0)
    role.on_start()
    role.supervisor.process.handle.kill()
    role.supervisor.process.handle.wait()
    calls_before = list(clients[0].calls)

    results = {r.name: r.ok for r in role.on_stop()}

    assert results == {"step-down": False, "shutdown": False, "reap": True, "detach": True}
    assert clients[0].calls == calls_before
    # Lease is free again
    store = FileBlobStore(str(tmp_path / "blobstore"))
    store.acquire_lease("mongoddatadrivers", "mongoddblobdrive0.vhd").release()


def test_failed_shutdown_does_not_block_detach(make_role):
    role, _, clients = make_role(ordinal=0)
    role.on_start()
    clients[0].fail.update({"replSetStepDown", "shutdown"})

    results = {r.name: r.ok for r in role.on_stop()}
    assert results["step-down"] is False
    assert results["shutdown"] is False
    assert results["detach"] is True
    assert not role.volume.mounted


def test_missing_replica_set_name_skips_startup(make_role):
    role, _, clients = make_role(settings={"ReplicaSetName": ""})
    assert role.on_start() is False
    assert clients == []


def test_malformed_instance_name_skips_startup(tmp_path, role_root):
    deployment = make_deployment(tmp_path)
    deployment["instance_id"] = "deployment.MongoDBRole_IN_"
    role = MongoDBRole(EmulatedEnvironment(deployment), role_root=str(role_root),
                       client_factory=FakeMongodClient)
    assert role.on_start() is False
    assert role.supervisor is None


def test_mount_failure_is_fatal(make_role, tmp_path):
    store = FileBlobStore(str(tmp_path / "blobstore"))
    store.create_container_if_not_exists("mongoddatadrivers")
    store.create_blob_if_not_exists("mongoddatadrivers", "mongoddblobdrive0.vhd", 64)
    lease = store.acquire_lease("mongoddatadrivers", "mongoddblobdrive0.vhd")
    try:
        role, _, _ = make_role(ordinal=0)
        with pytest.raises(VolumeMountError):
            role.on_start()
        assert role.supervisor.process is None
    finally:
        lease.release()


def test_missing_binary_is_fatal(make_role):
    role, _, _ = make_role(ordinal=0, settings={"MongoDBBinaryFolder": "nowhere"})
    with pytest.raises(ProcessLaunchError):
        role.on_start()


def test_run_returns_when_mongod_exits_and_recycle_is_on(make_role):
    role, _, _ = make_role(ordinal=1)
    role.on_start()
    role.supervisor.process.handle.kill()

    thread = threading.Thread(target=role.run)
    thread.start()
    thread.join(timeout=5)
    assert not thread.is_alive()


def test_run_keeps_instance_up_when_recycle_is_off(make_role):
    role, _, _ = make_role(ordinal=1, settings={"RecycleOnExit": "false"})
    role.on_start()
    role.supervisor.process.handle.kill()
    role.supervisor.process.handle.wait()

    thread = threading.Thread(target=role.run)
    thread.start()
    thread.join(timeout=0.2)
    assert thread.is_alive()

    role.on_stop()
    thread.join(timeout=5)
    assert not thread.is_alive()


def test_leader_retries_initiate_on_poll(make_role):
    client = FakeMongodClient(port=27017)
    client.fail.add("replSetInitiate")
    role, _, _ = make_role(client=client, ordinal=0)
    role.on_start()
    assert not role.state.replica_set.initialized

    client.fail.clear()
    thread = threading.Thread(target=role.run)
    thread.start()
    try:
        for _ in range(250):
            if role.state.replica_set.recorded_member_count == 3:
                break
            threading.Event().wait(0.02)
        assert role.state.replica_set.initialized
        assert role.state.replica_set.recorded_member_count == 3
    finally:
        role.on_stop()
        thread.join(timeout=5)


def test_live_setting_change_through_environment(make_role):
    role, environment, clients = make_role(ordinal=0)
    role.on_start()

    assert environment.apply_changes(settings={"MongodLogVerbosity": "-vvvv"}) is False
    assert role.watcher.drain()
    assert clients[0].args_of("setLogLevel") == [(4,)]

    assert environment.apply_changes(settings={"MaxDBDriveSizeInMB": "2048"}) is True


def test_events_are_recorded(make_role):
    role, _, _ = make_role(ordinal=0)
    role.on_start()
    role.on_stop()

    event_types = {event.event_type for event in role.recorder.recent_events()}
    assert {"ROLE_START", "VOLUME_ATTACH", "PROCESS_LAUNCH", "RS_INITIATE", "RS_RECONFIG", "ROLE_STOP"} <= event_types


class StopOnFirstPing(FakeMongodClient):
    """Calls `on_first_ping` from inside the first ping, like a signal arriving mid-startup."""

    on_first_ping = None
    stop_results = None

    def ping(self):
        if self.on_first_ping is not None:
            callback, self.on_first_ping = self.on_first_ping, None
            self.stop_results = callback()
            return False
        return self.listening


def test_stop_before_start_launches_nothing(make_role):
    role, _, clients = make_role(ordinal=0)
    role.on_stop()

    assert role.on_start() is False
    assert clients == []
    assert role.supervisor is None
    assert role.volume is None


def test_stop_during_startup_tears_down_what_was_started(make_role, tmp_path):
    client = StopOnFirstPing(port=27017)
    role, _, _ = make_role(client=client, ordinal=0)
    client.on_first_ping = role.on_stop

    assert role.on_start() is False

    # The stop itself was deferred; startup tore everything down
    assert client.stop_results == []
    assert not role.started
    assert role.supervisor.process is not None
    assert not role.supervisor.is_alive()
    assert not role.volume.mounted
    assert client.count("replSetInitiate") == 0
    assert not role.watcher.running
    store = FileBlobStore(str(tmp_path / "blobstore"))
    store.acquire_lease("mongoddatadrivers", "mongoddblobdrive0.vhd").release()
    assert role.on_stop() == []

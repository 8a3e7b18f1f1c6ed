import stat
from pathlib import Path

import pytest

from fabric.emulator import EmulatedEnvironment
from mongorole.errors import DatabaseCommandError


class FakeMongodClient:
    """Records every command; fails the ones named in `fail`."""

    def __init__(self, host="127.0.0.1", port=27017, initialized=False, member_count=0):
        self.host = host
        self.port = port
        self.initialized = initialized
        self.member_count = member_count
        self.primary = True
        self.listening = True
        self.fail = set()
        self.calls = []

    @property
    def address(self):
        return f"{self.host}:{self.port}"

    def _call(self, name, *args):
        self.calls.append((name,) + args)
        if name in self.fail:
            raise DatabaseCommandError(name, RuntimeError(f"{name} refused"))

    def count(self, name):
        return sum(1 for call in self.calls if call[0] == name)

    def args_of(self, name):
        return [call[1:] for call in self.calls if call[0] == name]

    def ping(self):
        return self.listening

    def get_replica_set_status(self):
        self._call("replSetGetStatus")
        if not self.initialized:
            return None
        return {"set": "rs", "members": [{"_id": i} for i in range(self.member_count)]}

    def get_member_count(self):
        return self.member_count

    def initiate(self, replica_set_name, members):
        self._call("replSetInitiate", replica_set_name, list(members))
        self.initialized = True
        self.member_count = len(members)
        return len(members)

    def reconfigure(self, replica_set_name, members):
        self._call("replSetReconfig", replica_set_name, list(members))
        self.member_count = len(members)
        return len(members)

    def set_log_level(self, level):
        self._call("setLogLevel", level)

    def step_down(self, seconds=60):
        self._call("replSetStepDown", seconds)
        return self.primary

    def shutdown(self, force=False):
        self._call("shutdown")

    def close(self):
        pass


def make_deployment(tmp_path: Path, ordinal=0, instances=1, settings=None, port=27017):
    base_settings = {
        "ReplicaSetName": "rs",
        "MongodLogVerbosity": "-v",
        "RecycleOnExit": "true",
        "ExemptConfigurationItems": "MongodLogVerbosity,RecycleOnExit",
        "MaxDBDriveSizeInMB": "64",
        "MongoDBBinaryFolder": "MongoDBBinaries/bin",
        "DataConnectionString": str(tmp_path / "blobstore"),
    }
    base_settings.update(settings or {})
    return {
        "deployment_id": "test",
        "role_name": "MongoDBRole",
        "instance_ordinal": ordinal,
        "roles": {
            "MongoDBRole": {
                "instances": instances,
                "endpoints": {"MongodPort": {"host": "127.0.0.1", "port": port}},
            },
            "WebRole": {"instances": 2, "endpoints": {}},
        },
        "settings": base_settings,
        "local_resources": {
            "MongodLocalCacheDir": {"path": str(tmp_path / "cache"), "size_mb": 128},
            "MongodLogDir": {"path": str(tmp_path / "logs"), "size_mb": 32},
        },
    }


@pytest.fixture
def fake_client():
    return FakeMongodClient()


@pytest.fixture
def environment_factory(tmp_path):
    def _factory(**kwargs):
        return EmulatedEnvironment(make_deployment(tmp_path, **kwargs))
    return _factory


@pytest.fixture
def role_root(tmp_path):
    """A role root whose mongod is a shell script that just sleeps."""
    root = tmp_path / "approot"
    bin_dir = root / "MongoDBBinaries" / "bin"
    bin_dir.mkdir(parents=True)
    mongod = bin_dir / "mongod"
    mongod.write_text("#!/bin/sh\nexec sleep 60\n")
    mongod.chmod(mongod.stat().st_mode | stat.S_IEXEC | stat.S_IXGRP | stat.S_IXOTH)
    return root

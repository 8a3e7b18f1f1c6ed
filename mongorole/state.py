"""
Shared role state.

The startup path, the liveness loop and the watcher thread all read and
write the same configuration snapshot and replica-set descriptor. Writes go
through `state.lock`, which is only ever held for in-memory updates, never
across a mongod command. The snapshot is immutable, so reading it takes no
lock at all.
"""

import threading
from dataclasses import dataclass
from typing import Optional

from mongorole.settings import ConfigurationSnapshot


@dataclass
class ReplicaSetDescriptor:
    name: str
    recorded_member_count: int = 0
    initialized: bool = False


class RoleState:

    def __init__(self, replica_set_name: str, snapshot: Optional[ConfigurationSnapshot] = None):
        self.lock = threading.RLock()
        self._snapshot = snapshot or ConfigurationSnapshot()
        self._replica_set = ReplicaSetDescriptor(name=replica_set_name)

    @property
    def snapshot(self) -> ConfigurationSnapshot:
        return self._snapshot

    def replace_snapshot(self, snapshot: ConfigurationSnapshot) -> None:
        with self.lock:
            self._snapshot = snapshot

    @property
    def replica_set(self) -> ReplicaSetDescriptor:
        """A copy of the descriptor; mutate through record_* methods."""
        with self.lock:
            rs = self._replica_set
            return ReplicaSetDescriptor(rs.name, rs.recorded_member_count, rs.initialized)

    def record_initialized(self, member_count: int) -> None:
        with self.lock:
            self._replica_set.initialized = True
            self._replica_set.recorded_member_count = member_count

    def record_member_count(self, member_count: int) -> None:
        with self.lock:
            self._replica_set.recorded_member_count = member_count

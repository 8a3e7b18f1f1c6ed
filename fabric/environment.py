"""
Role environment interface.

The role supervisor never talks to the hosting platform directly. It reads
settings, endpoints and local resources through this interface and receives
change notifications through the two callback channels:

- changing: called with the pending changes before they are applied. Any
  callback returning True cancels the whole batch.
- changed: called with the accepted changes after they are applied.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Union

logger = logging.getLogger(__name__)


class RoleEnvironmentError(Exception):
    """Raised when the hosting environment cannot answer a query."""


@dataclass(frozen=True)
class SettingChange:
    """A configuration setting whose value changed."""
    setting_name: str


@dataclass(frozen=True)
class TopologyChange:
    """The instance count of a role changed."""
    role_name: str


Change = Union[SettingChange, TopologyChange]

ChangingCallback = Callable[[Sequence[Change]], bool]
ChangedCallback = Callable[[Sequence[Change]], None]


@dataclass(frozen=True)
class InstanceEndpoint:
    host: str
    port: int


@dataclass(frozen=True)
class LocalResource:
    """Scratch storage reserved for this instance on its local disk."""
    name: str
    root_path: str
    maximum_size_mb: int


class RoleEnvironment:
    """
    Base class for hosting environments.

    Subclasses implement the query methods; subscription bookkeeping and
    notification fan-out are shared.
    """

    def __init__(self):
        self._subscribers_lock = threading.Lock()
        self._changing_callbacks: List[ChangingCallback] = []
        self._changed_callbacks: List[ChangedCallback] = []

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def current_instance_id(self) -> str:
        raise NotImplementedError

    @property
    def current_role_name(self) -> str:
        raise NotImplementedError

    @property
    def is_emulated(self) -> bool:
        raise NotImplementedError

    def get_setting(self, name: str) -> Optional[str]:
        raise NotImplementedError

    def get_instance_endpoint(self, name: str) -> InstanceEndpoint:
        raise NotImplementedError

    def get_local_resource(self, name: str) -> LocalResource:
        raise NotImplementedError

    def role_instance_count(self, role_name: Optional[str] = None) -> int:
        raise NotImplementedError

    def role_instance_endpoint(self, role_name: str, ordinal: int, endpoint_name: str) -> InstanceEndpoint:
        """Endpoint advertised by instance ``ordinal`` of ``role_name``."""
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def subscribe(
        self,
        changing: Optional[ChangingCallback] = None,
        changed: Optional[ChangedCallback] = None,
    ) -> None:
        with self._subscribers_lock:
            if changing is not None:
                self._changing_callbacks.append(changing)
            if changed is not None:
                self._changed_callbacks.append(changed)

    def unsubscribe(
        self,
        changing: Optional[ChangingCallback] = None,
        changed: Optional[ChangedCallback] = None,
    ) -> None:
        with self._subscribers_lock:
            if changing in self._changing_callbacks:
                self._changing_callbacks.remove(changing)
            if changed in self._changed_callbacks:
                self._changed_callbacks.remove(changed)

    def close(self) -> None:
        """Release any resources held by the environment."""

    def _notify_changing(self, changes: Sequence[Change]) -> bool:
        """Return True if any subscriber cancels the change batch."""
        with self._subscribers_lock:
            callbacks = list(self._changing_callbacks)
        cancel = False
        for callback in callbacks:
            if callback(changes):
                cancel = True
        return cancel

    def _notify_changed(self, changes: Sequence[Change]) -> None:
        with self._subscribers_lock:
            callbacks = list(self._changed_callbacks)
        for callback in callbacks:
            try:
                callback(changes)
            except Exception as e:
                logger.error(f"Change subscriber failed: {e}", exc_info=True)

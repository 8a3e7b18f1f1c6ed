"""
Configuration / Topology Watcher

Receives the environment's change notifications and applies them to the
running role.

- on_changing runs on the delivery thread and answers synchronously: the
  batch is cancelled if any changed setting is not in the exempt list, so
  the platform restarts the instance to apply it.
- on_changed only enqueues. A background thread drains the queue and
  applies each batch in arrival order: log verbosity is pushed live to
  mongod, the recycle flag and exempt list are re-read, and instance-count
  changes of the database role are handed to the coordinator.
"""

import logging
import queue
import threading
import time
from typing import Optional, Sequence

from fabric.environment import (
    Change,
    RoleEnvironment,
    RoleEnvironmentError,
    SettingChange,
    TopologyChange,
)
from mongorole.config import EXEMPT_SETTINGS_SETTING, LOG_VERBOSITY_SETTING, RECYCLE_SETTING
from mongorole.coordinator import ReplicaSetCoordinator
from mongorole.database import RoleRecorder
from mongorole.errors import DatabaseCommandError
from mongorole.models import RoleEventType
from mongorole.mongod_client import MongodClient
from mongorole.settings import (
    log_level_number,
    parse_exempt_settings,
    parse_log_verbosity,
    parse_recycle_flag,
)
from mongorole.state import RoleState

logger = logging.getLogger(__name__)

_STOP = object()


class ConfigTopologyWatcher:

    def __init__(
        self,
        environment: RoleEnvironment,
        state: RoleState,
        coordinator: ReplicaSetCoordinator,
        client: MongodClient,
        recorder: Optional[RoleRecorder] = None,
    ):
        self.environment = environment
        self.state = state
        self.coordinator = coordinator
        self.client = client
        self.recorder = recorder

        self._queue: "queue.Queue" = queue.Queue()
        self.running = False
        self.thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Subscribe to the environment and start the apply thread"""
        if self.running:
            logger.warning("Config watcher already running")
            return

        self.running = True
        self.thread = threading.Thread(target=self._run, name="config-watcher", daemon=True)
        self.thread.start()
        self.environment.subscribe(changing=self.on_changing, changed=self.on_changed)

        logger.info("Config watcher started")

    def stop(self) -> None:
        if not self.running:
            return

        self.environment.unsubscribe(changing=self.on_changing, changed=self.on_changed)
        self.running = False
        self._queue.put(_STOP)
        if self.thread and self.thread.is_alive():
            self.thread.join(timeout=5)

        logger.info("Config watcher stopped")

    def drain(self, timeout: float = 5.0) -> bool:
        """Wait until every queued batch has been applied."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            with self._queue.all_tasks_done:
                if self._queue.unfinished_tasks == 0:
                    return True
            time.sleep(0.01)
        return False

    def _run(self) -> None:
        while True:
            batch = self._queue.get()
            try:
                if batch is _STOP:
                    return
                self.apply_changes(batch)
            except Exception as e:
                logger.error(f"Applying changes failed: {e}", exc_info=True)
            finally:
                self._queue.task_done()

    # ------------------------------------------------------------------
    # Notification channels
    # ------------------------------------------------------------------

    def on_changing(self, changes: Sequence[Change]) -> bool:
        """Return True to cancel the batch."""
        exempt = self.state.snapshot.exempt_setting_names
        blocking = [
            change.setting_name
            for change in changes
            if isinstance(change, SettingChange) and change.setting_name not in exempt
        ]
        cancel = bool(blocking)
        logger.info(f"Role config changing. Cancel set to {cancel}" + (f" (non-exempt: {blocking})" if cancel else ""))
        return cancel

    def on_changed(self, changes: Sequence[Change]) -> None:
        self._queue.put(list(changes))

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    def apply_changes(self, changes: Sequence[Change]) -> None:
        for change in changes:
            if isinstance(change, SettingChange):
                self._apply_setting(change.setting_name)
        for change in changes:
            if isinstance(change, TopologyChange):
                self._apply_topology(change.role_name)

    def _apply_setting(self, setting_name: str) -> None:
        try:
            value = self.environment.get_setting(setting_name)
        except RoleEnvironmentError as e:
            logger.warning(f"Cannot read setting {setting_name}: {e}")
            return

        logger.info(f"Setting {setting_name} now has value {value}")
        if self.recorder:
            self.recorder.log_event(RoleEventType.CONFIG_CHANGE, f"{setting_name}={value}")

        if setting_name == LOG_VERBOSITY_SETTING:
            self._apply_log_verbosity(value)
        elif setting_name == RECYCLE_SETTING:
            with self.state.lock:
                snapshot = self.state.snapshot
                self.state.replace_snapshot(snapshot.with_recycle_on_exit(parse_recycle_flag(value)))
        elif setting_name == EXEMPT_SETTINGS_SETTING:
            with self.state.lock:
                snapshot = self.state.snapshot
                self.state.replace_snapshot(snapshot.with_exempt_setting_names(parse_exempt_settings(value)))

    def _apply_log_verbosity(self, value: Optional[str]) -> None:
        level = parse_log_verbosity(value)
        if level is None:
            logger.info(f"Unrecognized log verbosity '{value}', keeping current level")
            return

        if level == self.state.snapshot.log_verbosity:
            return
        # Only the watcher thread changes verbosity, so the command runs unlocked
        try:
            self.client.set_log_level(log_level_number(level))
        except DatabaseCommandError as e:
            logger.warning(f"Failed to push log level {level} to mongod: {e}")
            return
        with self.state.lock:
            self.state.replace_snapshot(self.state.snapshot.with_log_verbosity(level))
        logger.info(f"Mongod log verbosity changed to {level}")

    def _apply_topology(self, role_name: str) -> None:
        try:
            instance_count = self.environment.role_instance_count(role_name)
        except RoleEnvironmentError as e:
            logger.warning(f"Cannot read instance count of {role_name}: {e}")
            return

        logger.info(f"Role {role_name} now has {instance_count} instance(s)")
        if self.recorder:
            self.recorder.log_event(RoleEventType.TOPOLOGY_CHANGE, f"{role_name} has {instance_count} instance(s)")
        self.coordinator.on_topology_change(role_name, instance_count)

"""
MongoDB Role Entry Point

Lifecycle of one database instance, identical on every instance:

on_start:
1. Resolve identity (ordinal, endpoint) and open the local role database
2. Subscribe the config/topology watcher
3. Attach the durable data volume          (fatal on failure)
4. Launch mongod and wait until it listens  (fatal on failure)
5. Ordinal 0 only: detect-or-initiate the replica set, then reconcile
   membership with the current instance count

run:
    Poll mongod liveness every 15 seconds. Return once it has exited,
    unless recycle-on-exit is off, in which case keep the instance up for
    diagnostics until stopped.

on_stop:
    step-down -> shutdown -> reap -> detach, every step best-effort.
    A stop that arrives while on_start is still running is deferred:
    on_start notices it at its next checkpoint and tears down whatever
    it has brought up so far.
"""

import logging
import os
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from fabric.environment import RoleEnvironment, RoleEnvironmentError
from mongorole.blob_store import FileBlobStore
from mongorole.config import (
    BINARY_FOLDER_SETTING,
    DATA_CONNECTION_SETTING,
    DEFAULT_BINARY_FOLDER,
    DEFAULT_MAX_DRIVE_SIZE_MB,
    EXEMPT_SETTINGS_SETTING,
    LISTEN_POLL_INTERVAL_SECONDS,
    LOCAL_CACHE_RESOURCE,
    LOG_DIR_RESOURCE,
    LOG_VERBOSITY_SETTING,
    MAX_DRIVE_SIZE_SETTING,
    MONGOD_BINARY_NAME,
    MONGOD_LOG_FILE_NAME,
    RECYCLE_SETTING,
    REPLICA_SET_NAME_SETTING,
    ROLE_ROOT,
    RUN_POLL_INTERVAL_SECONDS,
)
from mongorole.coordinator import ReplicaSetCoordinator
from mongorole.database import RoleRecorder, init_role_database
from mongorole.errors import MalformedInstanceName, VolumeMountError
from mongorole.identity import RoleContext, member_endpoints, resolve_identity
from mongorole.models import RoleEventType
from mongorole.mongod_client import MongodClient
from mongorole.process_supervisor import ProcessSupervisor, build_command_line
from mongorole.settings import (
    ConfigurationSnapshot,
    parse_exempt_settings,
    parse_log_verbosity,
    parse_recycle_flag,
)
from mongorole.state import RoleState
from mongorole.teardown import BestEffortStep, StepResult, run_best_effort
from mongorole.volume_manager import MountedVolume, VolumeManager, blob_name_for, container_name_for
from mongorole.watcher import ConfigTopologyWatcher

logger = logging.getLogger(__name__)

LOCAL_MONGOD_HOST = "127.0.0.1"
DEV_STORAGE_SUBDIRECTORY = "devstorage"


class MongoDBRole:
    """
    Supervises the mongod of this instance and, on ordinal 0, the replica set.
    """

    def __init__(
        self,
        environment: RoleEnvironment,
        role_root: str = ROLE_ROOT,
        poll_interval: float = RUN_POLL_INTERVAL_SECONDS,
        listen_poll_interval: float = LISTEN_POLL_INTERVAL_SECONDS,
        listen_timeout: Optional[float] = None,
        shutdown_timeout: float = 30.0,
        reconcile_on_poll: bool = True,
        client_factory: Callable[[str, int], MongodClient] = MongodClient,
    ):
        """
        Args:
            environment: Hosting environment (FabricClient or EmulatedEnvironment)
            role_root: Directory the binary folder setting is relative to
            poll_interval: Seconds between liveness polls in run()
            listen_poll_interval: Seconds between pings while mongod starts
            listen_timeout: Give up waiting for mongod after this many seconds (None = wait forever)
            shutdown_timeout: Seconds to wait for mongod to exit during stop
            reconcile_on_poll: Let the leader retry initiate/reconfigure on each poll
            client_factory: Builds the mongod command client from (host, port)
        """
        self.environment = environment
        self.role_root = role_root
        self.poll_interval = poll_interval
        self.listen_poll_interval = listen_poll_interval
        self.listen_timeout = listen_timeout
        self.shutdown_timeout = shutdown_timeout
        self.reconcile_on_poll = reconcile_on_poll
        self.client_factory = client_factory

        self.context: Optional[RoleContext] = None
        self.state: Optional[RoleState] = None
        self.recorder: Optional[RoleRecorder] = None
        self.client: Optional[MongodClient] = None
        self.supervisor: Optional[ProcessSupervisor] = None
        self.volume_manager: Optional[VolumeManager] = None
        self.coordinator: Optional[ReplicaSetCoordinator] = None
        self.watcher: Optional[ConfigTopologyWatcher] = None
        self.volume: Optional[MountedVolume] = None

        self.started = False
        self._stop_requested = threading.Event()
        self._starting = threading.Event()
        # Re-entrant: signal handlers call on_stop on the thread running on_start
        self._stop_lock = threading.RLock()
        self._stopped = False

    # ========================================================================
    # START
    # ========================================================================

    def on_start(self) -> bool:
        """
        Bring the instance up. Returns False when startup was skipped or
        a stop arrived meanwhile; raises VolumeMountError or
        ProcessLaunchError on fatal failures.
        """
        logger.info("MongoDBRole onstart called")
        self._starting.set()
        try:
            started = self._start()
        finally:
            with self._stop_lock:
                self._starting.clear()
                stop_pending = self._stop_requested.is_set()
            if stop_pending:
                logger.warning("Stop requested during startup, tearing down")
                self._teardown()

        if stop_pending:
            return False
        if started:
            self.started = True
            identity = self.context.identity
            self.recorder.log_event(RoleEventType.ROLE_START, f"Instance {identity.ordinal} started on {identity.address}")
            logger.info("Done with OnStart")
        return started

    def _start(self) -> bool:
        env = self.environment
        if self._stop_requested.is_set():
            return False

        replica_set_name = env.get_setting(REPLICA_SET_NAME_SETTING)
        if not replica_set_name:
            logger.error(f"Setting {REPLICA_SET_NAME_SETTING} is not configured, startup skipped")
            return False

        try:
            identity = resolve_identity(env)
        except MalformedInstanceName as e:
            logger.error(f"{e}, startup skipped")
            return False

        self.context = RoleContext.for_identity(identity, env.current_role_name, replica_set_name)
        logger.info(
            f"ReplicaSetName={replica_set_name}, InstanceId={identity.ordinal}, "
            f"host={identity.host}, port={identity.port}, leader={self.context.is_leader}"
        )

        cache = env.get_local_resource(LOCAL_CACHE_RESOURCE)
        _, session_factory = init_role_database(cache.root_path)
        self.recorder = RoleRecorder(session_factory, ordinal=identity.ordinal)

        self.state = RoleState(replica_set_name, self._load_snapshot())
        self.client = self.client_factory(LOCAL_MONGOD_HOST, identity.port)
        self.supervisor = ProcessSupervisor(self.client, self.recorder)
        self.coordinator = ReplicaSetCoordinator(
            self.context,
            self.client,
            self.state,
            members=lambda count: member_endpoints(env, self.context.role_name, count),
            recorder=self.recorder,
        )
        self.watcher = ConfigTopologyWatcher(env, self.state, self.coordinator, self.client, self.recorder)
        self.watcher.start()

        if self._stop_requested.is_set():
            return False
        self.volume_manager = VolumeManager(FileBlobStore(self._storage_root(cache.root_path)), self.recorder)
        self.volume = self.volume_manager.attach(
            container_name_for(replica_set_name),
            blob_name_for(identity.ordinal),
            self._int_setting(MAX_DRIVE_SIZE_SETTING, DEFAULT_MAX_DRIVE_SIZE_MB),
            cache,
        )
        data_dir = self.volume_manager.data_directory(self.volume)

        log_dir = env.get_local_resource(LOG_DIR_RESOURCE)
        log_file = str(Path(log_dir.root_path) / MONGOD_LOG_FILE_NAME)
        args = build_command_line(
            env.is_emulated,
            identity.port,
            data_dir,
            log_file,
            replica_set_name,
            self.state.snapshot.log_verbosity,
        )
        binary_folder = Path(self.role_root) / (env.get_setting(BINARY_FOLDER_SETTING) or DEFAULT_BINARY_FOLDER)
        if self._stop_requested.is_set():
            return False
        self.supervisor.launch(str(binary_folder / MONGOD_BINARY_NAME), str(binary_folder), args)

        if not self.supervisor.wait_until_listening(
            self.listen_poll_interval, self.listen_timeout, cancel=self._stop_requested
        ):
            return False

        if self.context.is_leader:
            self._ensure_membership()
        return True

    def _load_snapshot(self) -> ConfigurationSnapshot:
        env = self.environment
        recycle = env.get_setting(RECYCLE_SETTING)
        return ConfigurationSnapshot(
            log_verbosity=parse_log_verbosity(env.get_setting(LOG_VERBOSITY_SETTING)),
            # Unset means the platform default: recycle when mongod exits
            recycle_on_exit=True if recycle is None else parse_recycle_flag(recycle),
            exempt_setting_names=parse_exempt_settings(env.get_setting(EXEMPT_SETTINGS_SETTING)),
        )

    def _int_setting(self, name: str, default: int) -> int:
        raw = self.environment.get_setting(name)
        try:
            return int(str(raw).strip())
        except (TypeError, ValueError):
            return default

    def _storage_root(self, cache_root: str) -> str:
        root = self.environment.get_setting(DATA_CONNECTION_SETTING)
        if root:
            return root
        if self.environment.is_emulated:
            return os.path.join(cache_root, DEV_STORAGE_SUBDIRECTORY)
        raise VolumeMountError(f"Setting {DATA_CONNECTION_SETTING} is not configured")

    def _ensure_membership(self) -> None:
        try:
            instance_count = self.environment.role_instance_count(self.context.role_name)
        except RoleEnvironmentError as e:
            logger.warning(f"Cannot read instance count of {self.context.role_name}: {e}")
            return
        self.coordinator.ensure_membership(instance_count)

    # ========================================================================
    # RUN
    # ========================================================================

    def run(self) -> None:
        logger.info("MongoDBRole run method called")
        if not self.started:
            logger.warning("MongoDBRole was not started, run method exiting")
            return

        running = self.supervisor.is_alive()
        while (running or not self.state.snapshot.recycle_on_exit) and not self._stop_requested.is_set():
            self._stop_requested.wait(self.poll_interval)
            running = self.supervisor.is_alive()
            if running and self.reconcile_on_poll and self.context.is_leader:
                self._ensure_membership()

        logger.warning("MongoDBRole run method exiting")

    # ========================================================================
    # STOP
    # ========================================================================

    def on_stop(self) -> List[StepResult]:
        logger.info("MongoDBRole onstop called")
        self._stop_requested.set()
        with self._stop_lock:
            if self._starting.is_set():
                logger.info("Startup in progress, teardown deferred to on_start")
                return []
        return self._teardown()

    def _teardown(self) -> List[StepResult]:
        with self._stop_lock:
            if self._stopped:
                return []
            self._stopped = True

        if self.watcher:
            self.watcher.stop()

        results = run_best_effort([
            BestEffortStep("step-down", self._step_down),
            BestEffortStep("shutdown", self._shutdown),
            BestEffortStep("reap", self._reap),
            BestEffortStep("detach", self._detach),
        ])

        if self.recorder:
            summary = ", ".join(f"{r.name}={'ok' if r.ok else 'failed'}" for r in results)
            self.recorder.log_event(RoleEventType.ROLE_STOP, f"Stopped: {summary}")
        if self.client:
            self.client.close()
        return results

    def _step_down(self) -> bool:
        if self.supervisor is None:
            return False
        return self.supervisor.request_step_down(self.coordinator.step_down)

    def _shutdown(self) -> bool:
        if self.supervisor is None:
            return False
        return self.supervisor.request_shutdown()

    def _reap(self) -> bool:
        if self.supervisor is None:
            return True
        return self.supervisor.terminate(self.shutdown_timeout)

    def _detach(self) -> bool:
        if self.volume_manager is None:
            return True
        return self.volume_manager.detach(self.volume)

    # ========================================================================
    # STATUS
    # ========================================================================

    def status(self) -> Dict[str, Any]:
        """Point-in-time view for the management plane."""
        status: Dict[str, Any] = {
            "started": self.started,
            "process_alive": bool(self.supervisor and self.supervisor.is_alive()),
        }
        if self.context:
            status["identity"] = {
                "ordinal": self.context.identity.ordinal,
                "host": self.context.identity.host,
                "port": self.context.identity.port,
                "is_leader": self.context.is_leader,
            }
        if self.state:
            snapshot = self.state.snapshot
            replica_set = self.state.replica_set
            status["configuration"] = {
                "log_verbosity": snapshot.log_verbosity,
                "recycle_on_exit": snapshot.recycle_on_exit,
                "exempt_setting_names": sorted(snapshot.exempt_setting_names),
            }
            status["replica_set"] = {
                "name": replica_set.name,
                "initialized": replica_set.initialized,
                "recorded_member_count": replica_set.recorded_member_count,
                "phase": self.coordinator.phase.value if self.coordinator else None,
            }
        if self.volume:
            status["volume"] = {
                "container_name": self.volume.container_name,
                "blob_name": self.volume.blob_name,
                "local_mount_path": self.volume.local_mount_path,
                "size_limit_mb": self.volume.size_limit_mb,
                "mounted": self.volume.mounted,
            }
            attachment = self.recorder.current_attachment() if self.recorder else None
            status["volume"]["attached_at"] = attachment.attached_at.isoformat() if attachment else None
        return status

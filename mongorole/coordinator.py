"""
Replica Set Coordinator

Forms and reshapes the replica set. Leadership is static: only the
instance with ordinal 0 initiates or reconfigures, and every entry point
that does so checks RoleContext.is_leader first. If instance 0 is down,
membership changes wait for it.

Phases:
    UNINITIALIZED -> INITIALIZING -> INITIALIZED
    INITIALIZED -> RECONCILING -> INITIALIZED

The phase on process start is unknown and is probed with replSetGetStatus;
the member count of an initialized set comes from its stored configuration.
Initiate and reconfigure failures are logged and absorbed; the next
qualifying event (liveness poll or topology change) tries again.
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from fabric.environment import RoleEnvironmentError
from mongorole.config import STEP_DOWN_SECONDS
from mongorole.database import RoleRecorder
from mongorole.errors import DatabaseCommandError
from mongorole.identity import RoleContext
from mongorole.models import RoleEventType
from mongorole.mongod_client import MongodClient
from mongorole.state import RoleState

logger = logging.getLogger(__name__)


class ReplicaSetPhase(str, Enum):
    UNKNOWN = "UNKNOWN"
    UNINITIALIZED = "UNINITIALIZED"
    INITIALIZING = "INITIALIZING"
    INITIALIZED = "INITIALIZED"
    RECONCILING = "RECONCILING"


@dataclass(frozen=True)
class ReplicaSetState:
    """Result of probing the local node."""
    initialized: bool
    member_count: int = 0

    @classmethod
    def uninitialized(cls) -> "ReplicaSetState":
        return cls(initialized=False)


class ReplicaSetCoordinator:

    def __init__(
        self,
        context: RoleContext,
        client: MongodClient,
        state: RoleState,
        members: Callable[[int], List[str]],
        recorder: Optional[RoleRecorder] = None,
        step_down_seconds: int = STEP_DOWN_SECONDS,
    ):
        """
        Args:
            context: This instance's identity and leader flag
            client: Command sink for the local mongod
            state: Shared role state holding the replica-set descriptor
            members: Returns the host:port list for ordinals 0..n-1
            recorder: Optional local database recorder
            step_down_seconds: How long a stepped-down primary stays ineligible
        """
        self.context = context
        self.client = client
        self.state = state
        self.members = members
        self.recorder = recorder
        self.step_down_seconds = step_down_seconds
        self.phase = ReplicaSetPhase.UNKNOWN
        # Serializes initiate and reconfigure; never taken by readers of state
        self._membership_lock = threading.RLock()

    def _require_leader(self, operation: str) -> bool:
        if not self.context.is_leader:
            logger.debug(f"Instance {self.context.identity.ordinal} is not the coordinator, skipping {operation}")
            return False
        return True

    def _record(self, event_type: RoleEventType, message: str) -> None:
        if self.recorder:
            self.recorder.log_event(event_type, message)

    # ========================================================================
    # DETECT / INITIALIZE
    # ========================================================================

    def detect_state(self) -> ReplicaSetState:
        status = self.client.get_replica_set_status()
        if status is None:
            return ReplicaSetState.uninitialized()
        return ReplicaSetState(initialized=True, member_count=self.client.get_member_count())

    def initialize_if_needed(self) -> bool:
        """
        Initiate the set with this node as sole seed if it is not
        initialized yet. Returns True only when an initiate succeeded.
        """
        if not self._require_leader("initialize"):
            return False

        with self._membership_lock:
            if self.state.replica_set.initialized:
                return False

            try:
                detected = self.detect_state()
            except DatabaseCommandError as e:
                logger.warning(f"Replica set status probe failed with {e}")
                return False

            if detected.initialized:
                self.state.record_initialized(detected.member_count)
                self.phase = ReplicaSetPhase.INITIALIZED
                logger.info(f"Replica set already initialized with {detected.member_count} members")
                return False

            logger.info("Replica set not initialized, issuing initiate")
            self.phase = ReplicaSetPhase.INITIALIZING
            try:
                member_count = self.client.initiate(
                    self.context.replica_set_name, [self.context.identity.address]
                )
            except DatabaseCommandError as e:
                self.phase = ReplicaSetPhase.UNINITIALIZED
                logger.warning(f"Exception on replica set initiate: {e}", exc_info=True)
                return False

            self.state.record_initialized(member_count)
            self.phase = ReplicaSetPhase.INITIALIZED
            logger.info(f"Replica set initiate issued successfully ({member_count} member)")
            self._record(
                RoleEventType.RS_INITIATE,
                f"Initiated {self.context.replica_set_name} with {self.context.identity.address}",
            )
            return True

    # ========================================================================
    # RECONCILE
    # ========================================================================

    def reconcile(self, desired_instance_count: int) -> bool:
        """
        Reconfigure membership to `desired_instance_count` members.
        Returns True only when a reconfigure succeeded.
        """
        if not self._require_leader("reconcile"):
            return False

        with self._membership_lock:
            replica_set = self.state.replica_set
            if not replica_set.initialized:
                logger.warning(
                    f"Member count change to {desired_instance_count} before replica set initialization, deferring"
                )
                return False

            if desired_instance_count == replica_set.recorded_member_count:
                return False

            if desired_instance_count < 1:
                logger.warning(f"Ignoring reconcile to {desired_instance_count} members")
                return False

            logger.info(
                f"Need reconfig current={replica_set.recorded_member_count}, new={desired_instance_count}"
            )
            self.phase = ReplicaSetPhase.RECONCILING
            try:
                members = self.members(desired_instance_count)
                self.client.reconfigure(self.context.replica_set_name, members)
            except (DatabaseCommandError, RoleEnvironmentError) as e:
                logger.warning(f"Replica set reconfig to {desired_instance_count} members failed: {e}")
                return False
            finally:
                self.phase = ReplicaSetPhase.INITIALIZED

            self.state.record_member_count(desired_instance_count)
            logger.info(f"Replica set reconfig succeeded. New member count {desired_instance_count}")
            self._record(
                RoleEventType.RS_RECONFIG,
                f"Reconfigured {self.context.replica_set_name}: {replica_set.recorded_member_count} -> {desired_instance_count} members",
            )
            return True

    def ensure_membership(self, desired_instance_count: int) -> None:
        """Detect-or-initialize, then reconcile to the desired count."""
        if not self._require_leader("ensure_membership"):
            return
        with self._membership_lock:
            self.initialize_if_needed()
            self.reconcile(desired_instance_count)

    def on_topology_change(self, role_name: str, instance_count: int) -> bool:
        if not self.context.is_leader or role_name != self.context.role_name:
            return False

        replica_set = self.state.replica_set
        logger.info(
            f"{role_name} instance count changed from {replica_set.recorded_member_count} to {instance_count}"
        )
        if instance_count == replica_set.recorded_member_count:
            return False
        if not replica_set.initialized:
            logger.warning("Role count change before replica set initialization")
            return False
        return self.reconcile(instance_count)

    # ========================================================================
    # STEP DOWN
    # ========================================================================

    def step_down(self) -> bool:
        """
        Ask the local node to give up the primary role. Any instance may be
        primary, so this is not restricted to the leader. Raises
        DatabaseCommandError; callers treat it as best-effort.
        """
        return self.client.step_down(self.step_down_seconds)

"""
Emulated Role Environment

In-process stand-in for the hosting platform, used for local development
and tests. The deployment is described by a YAML file (or an equivalent
dict):

    deployment_id: local
    role_name: MongoDBRole
    instance_ordinal: 1
    roles:
      MongoDBRole:
        instances: 3
        endpoints:
          MongodPort: {host: 127.0.0.1, port: 27017}
    settings:
      ReplicaSetName: rs
      MongodLogVerbosity: "-v"
    local_resources:
      MongodLocalCacheDir: {path: ./vm_storage/cache, size_mb: 1024}
      MongodLogDir: {path: ./vm_storage/logs, size_mb: 256}

Every simulated instance shares the advertised endpoint; the identity
resolver offsets the port by ordinal so they do not collide. Local
resource paths get a per-instance subdirectory.
"""

import copy
import logging
import threading
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from fabric.environment import (
    Change,
    InstanceEndpoint,
    LocalResource,
    RoleEnvironment,
    RoleEnvironmentError,
    SettingChange,
    TopologyChange,
)

logger = logging.getLogger(__name__)


def load_deployment_file(path: str) -> Dict[str, Any]:
    """Read and minimally validate a YAML deployment description."""
    deployment_path = Path(path)
    if not deployment_path.exists():
        raise RoleEnvironmentError(f"Deployment file not found: {path}")

    try:
        with deployment_path.open("r", encoding="utf-8") as f:
            config = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise RoleEnvironmentError(f"Invalid deployment file {path}: {e}") from e

    if not isinstance(config, dict):
        raise RoleEnvironmentError(f"Deployment file {path} must contain a mapping")
    return config


class EmulatedEnvironment(RoleEnvironment):
    """
    Role environment backed by an in-memory deployment description.
    """

    def __init__(self, deployment: Mapping[str, Any]):
        super().__init__()
        self._lock = threading.Lock()
        self._deployment = copy.deepcopy(dict(deployment))

        self.deployment_id = str(self._deployment.get("deployment_id", "local"))
        self._role_name = str(self._deployment.get("role_name", "MongoDBRole"))
        self._ordinal = int(self._deployment.get("instance_ordinal", 0))
        self._instance_id = self._deployment.get("instance_id") or (
            f"{self.deployment_id}.{self._role_name}_IN_{self._ordinal}"
        )

        self._settings: Dict[str, str] = {
            str(k): "" if v is None else str(v)
            for k, v in (self._deployment.get("settings") or {}).items()
        }
        self._roles: Dict[str, Dict[str, Any]] = dict(self._deployment.get("roles") or {})
        if self._role_name not in self._roles:
            self._roles[self._role_name] = {"instances": 1, "endpoints": {}}
        self._local_resources: Dict[str, Dict[str, Any]] = dict(
            self._deployment.get("local_resources") or {}
        )

        logger.info(
            f"Emulated environment initialized: instance={self._instance_id}, "
            f"roles={ {name: self._instance_count(name) for name in self._roles} }"
        )

    @classmethod
    def from_file(cls, path: str) -> "EmulatedEnvironment":
        return cls(load_deployment_file(path))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def current_instance_id(self) -> str:
        return self._instance_id

    @property
    def current_role_name(self) -> str:
        return self._role_name

    @property
    def is_emulated(self) -> bool:
        return True

    def get_setting(self, name: str) -> Optional[str]:
        with self._lock:
            return self._settings.get(name)

    def get_instance_endpoint(self, name: str) -> InstanceEndpoint:
        return self.role_instance_endpoint(self._role_name, self._ordinal, name)

    def role_instance_endpoint(self, role_name: str, ordinal: int, endpoint_name: str) -> InstanceEndpoint:
        with self._lock:
            role = self._roles.get(role_name)
            if role is None:
                raise RoleEnvironmentError(f"Unknown role '{role_name}'")
            endpoint = (role.get("endpoints") or {}).get(endpoint_name)
        if endpoint is None:
            raise RoleEnvironmentError(f"Role '{role_name}' has no endpoint '{endpoint_name}'")
        return InstanceEndpoint(
            host=str(endpoint.get("host", "127.0.0.1")),
            port=int(endpoint["port"]),
        )

    def get_local_resource(self, name: str) -> LocalResource:
        with self._lock:
            resource = self._local_resources.get(name)
        if resource is None:
            raise RoleEnvironmentError(f"Unknown local resource '{name}'")
        # Local resources belong to one instance, never shared
        root = Path(str(resource["path"])) / f"{self._role_name}_{self._ordinal}"
        root.mkdir(parents=True, exist_ok=True)
        return LocalResource(
            name=name,
            root_path=str(root.resolve()),
            maximum_size_mb=int(resource.get("size_mb", 1024)),
        )

    def role_instance_count(self, role_name: Optional[str] = None) -> int:
        with self._lock:
            return self._instance_count(role_name or self._role_name)

    def _instance_count(self, role_name: str) -> int:
        role = self._roles.get(role_name)
        if role is None:
            raise RoleEnvironmentError(f"Unknown role '{role_name}'")
        return int(role.get("instances", 1))

    # ------------------------------------------------------------------
    # Simulated changes
    # ------------------------------------------------------------------

    def apply_changes(
        self,
        settings: Optional[Mapping[str, str]] = None,
        instance_counts: Optional[Mapping[str, int]] = None,
    ) -> bool:
        """
        Simulate a configuration/topology update.

        Subscribers are asked first; if any of them cancels, nothing is
        applied. Returns True when the change was cancelled.
        """
        changes: List[Change] = []
        for name in (settings or {}):
            changes.append(SettingChange(setting_name=name))
        for role_name in (instance_counts or {}):
            changes.append(TopologyChange(role_name=role_name))

        if not changes:
            return False

        if self._notify_changing(changes):
            logger.info(f"Emulated change cancelled by subscriber: {changes}")
            return True

        with self._lock:
            for name, value in (settings or {}).items():
                self._settings[name] = "" if value is None else str(value)
            for role_name, count in (instance_counts or {}).items():
                role = self._roles.setdefault(role_name, {"endpoints": {}})
                role["instances"] = int(count)

        logger.info(f"Emulated change applied: {changes}")
        self._notify_changed(changes)
        return False

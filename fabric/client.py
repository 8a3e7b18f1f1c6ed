"""
Fabric Client

HTTP/JSON client for the host agent that fronts the hosting platform.
Used by the role supervisor in production to resolve its identity, read
settings and local resources, and receive change notifications.

Agent API:
    GET  /instance                      -> instance id, role, emulated flag, endpoints
    GET  /settings/{name}               -> {"name", "value"}
    GET  /resources/{name}              -> {"root_path", "maximum_size_mb"}
    GET  /roles/{role}                  -> {"instances", "members": [{"ordinal", "endpoints"}]}
    GET  /changes?instance_id=...       -> {"batch_id", "changes": [...]}
    POST /changes/{batch_id}/decision   -> {"applied": bool}

Change notifications are fetched by a background poller. Each pending batch
is offered to the `changing` subscribers first; the accept/cancel decision
is posted back, and accepted batches are then delivered to the `changed`
subscribers.
"""

import logging
import threading
import time
from typing import Any, Dict, List, Optional

import requests

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


def parse_changes(payload: List[Dict[str, Any]]) -> List[Change]:
    """Convert the agent's change records into change objects."""
    changes: List[Change] = []
    for item in payload or []:
        kind = str(item.get("type", "")).lower()
        if kind == "setting":
            changes.append(SettingChange(setting_name=str(item["name"])))
        elif kind == "topology":
            changes.append(TopologyChange(role_name=str(item["role"])))
        else:
            logger.warning(f"Ignoring unknown change record: {item}")
    return changes


class FabricClient(RoleEnvironment):
    """
    Role environment backed by the host agent's HTTP API.

    Usage:
        environment = FabricClient(agent_url="http://127.0.0.1:8100")
        environment.subscribe(changing=watcher.on_changing, changed=watcher.on_changed)
        environment.start_polling()
        ...
        environment.close()
    """

    def __init__(
        self,
        agent_url: str,
        poll_interval: float = 5.0,
        timeout: float = 10.0,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize fabric client.

        Args:
            agent_url: Host agent base URL (e.g., 'http://127.0.0.1:8100')
            poll_interval: Seconds between change polls
            timeout: Request timeout in seconds
            max_retries: Attempts per query before giving up
            retry_delay: Seconds between attempts
            session: Optional preconfigured requests session
        """
        super().__init__()
        self.agent_url = agent_url.rstrip("/")
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self._session = session or requests.Session()

        self._instance: Optional[Dict[str, Any]] = None
        self._running = False
        self._thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def _request(self, method: str, path: str, **kwargs) -> Any:
        url = f"{self.agent_url}{path}"
        last_error: Optional[Exception] = None
        for attempt in range(self.max_retries):
            try:
                response = self._session.request(method, url, timeout=self.timeout, **kwargs)
                if response.status_code == 404:
                    return None
                response.raise_for_status()
                return response.json()
            except (requests.exceptions.RequestException, ValueError) as e:
                last_error = e
                logger.debug(f"{method} {url} failed (attempt {attempt + 1}/{self.max_retries}): {e}")
            if attempt < self.max_retries - 1:
                time.sleep(self.retry_delay)
        raise RoleEnvironmentError(f"{method} {url} failed: {last_error}")

    def _instance_info(self) -> Dict[str, Any]:
        # Identity and endpoints are fixed for the life of the instance.
        if self._instance is None:
            info = self._request("GET", "/instance")
            if not info:
                raise RoleEnvironmentError("Host agent did not return instance information")
            self._instance = info
        return self._instance

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def current_instance_id(self) -> str:
        return str(self._instance_info()["instance_id"])

    @property
    def current_role_name(self) -> str:
        return str(self._instance_info()["role_name"])

    @property
    def is_emulated(self) -> bool:
        return bool(self._instance_info().get("emulated", False))

    def get_setting(self, name: str) -> Optional[str]:
        payload = self._request("GET", f"/settings/{name}")
        if payload is None:
            return None
        value = payload.get("value")
        return None if value is None else str(value)

    def get_instance_endpoint(self, name: str) -> InstanceEndpoint:
        endpoints = self._instance_info().get("endpoints") or {}
        endpoint = endpoints.get(name)
        if endpoint is None:
            raise RoleEnvironmentError(f"Instance has no endpoint '{name}'")
        return InstanceEndpoint(host=str(endpoint["host"]), port=int(endpoint["port"]))

    def get_local_resource(self, name: str) -> LocalResource:
        payload = self._request("GET", f"/resources/{name}")
        if payload is None:
            raise RoleEnvironmentError(f"Unknown local resource '{name}'")
        return LocalResource(
            name=name,
            root_path=str(payload["root_path"]),
            maximum_size_mb=int(payload["maximum_size_mb"]),
        )

    def role_instance_count(self, role_name: Optional[str] = None) -> int:
        role = role_name or self.current_role_name
        payload = self._request("GET", f"/roles/{role}")
        if payload is None:
            raise RoleEnvironmentError(f"Unknown role '{role}'")
        return int(payload["instances"])

    def role_instance_endpoint(self, role_name: str, ordinal: int, endpoint_name: str) -> InstanceEndpoint:
        payload = self._request("GET", f"/roles/{role_name}")
        if payload is None:
            raise RoleEnvironmentError(f"Unknown role '{role_name}'")
        for member in payload.get("members", []):
            if int(member.get("ordinal", -1)) == ordinal:
                endpoint = (member.get("endpoints") or {}).get(endpoint_name)
                if endpoint is not None:
                    return InstanceEndpoint(host=str(endpoint["host"]), port=int(endpoint["port"]))
        raise RoleEnvironmentError(
            f"Role '{role_name}' instance {ordinal} has no endpoint '{endpoint_name}'"
        )

    # ------------------------------------------------------------------
    # Change polling
    # ------------------------------------------------------------------

    def start_polling(self) -> None:
        """Start the background change poller"""
        if self._running:
            logger.warning("Fabric change poller already running")
            return
        self._running = True
        self._thread = threading.Thread(target=self._poll_loop, name="fabric-poller", daemon=True)
        self._thread.start()
        logger.info(f"Fabric change poller started: agent={self.agent_url}, interval={self.poll_interval}s")

    def close(self) -> None:
        self._running = False
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5)
        self._session.close()
        logger.info("Fabric client closed")

    def _poll_loop(self) -> None:
        while self._running:
            try:
                self.poll_once()
            except RoleEnvironmentError as e:
                logger.warning(f"Fabric change poll failed: {e}")
            except Exception as e:
                logger.error(f"Fabric change poll error: {e}", exc_info=True)

            # Sleep in small increments for responsive shutdown
            deadline = time.monotonic() + self.poll_interval
            while self._running and time.monotonic() < deadline:
                time.sleep(0.1)

    def poll_once(self) -> Optional[bool]:
        """
        Fetch and process one pending change batch.

        Returns None when nothing was pending, otherwise whether the batch
        was cancelled.
        """
        payload = self._request(
            "GET", "/changes", params={"instance_id": self.current_instance_id}
        )
        if not payload or not payload.get("changes"):
            return None

        batch_id = payload["batch_id"]
        changes = parse_changes(payload["changes"])
        cancel = self._notify_changing(changes)
        decision = self._request(
            "POST", f"/changes/{batch_id}/decision", json={"cancel": cancel}
        ) or {}
        logger.info(f"Change batch {batch_id}: {len(changes)} change(s), cancel={cancel}")

        if not cancel and decision.get("applied", True):
            self._notify_changed(changes)
        return cancel

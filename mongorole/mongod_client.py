"""
Mongod Command Client

Thin command sink for the locally managed mongod. Every call goes to the
admin database over a direct connection; driver errors are wrapped in
DatabaseCommandError so callers decide what is fatal.

Commands:
- ping
- replSetGetStatus / replSetGetConfig
- replSetInitiate / replSetReconfig
- setParameter logLevel
- hello + replSetStepDown
- shutdown
"""

import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from pymongo import MongoClient
from pymongo.errors import ConnectionFailure, OperationFailure, PyMongoError

from mongorole.errors import DatabaseCommandError

logger = logging.getLogger(__name__)

NOT_YET_INITIALIZED = 94


def build_member_documents(members: List[str], existing: Optional[List[Dict[str, Any]]] = None) -> List[Dict[str, Any]]:
    """
    Replica-set member documents for the given host:port list.

    Hosts already present keep their existing document (member _id,
    votes, priority); new hosts get ids above the highest id in use.
    """
    existing_docs = {doc["host"]: doc for doc in (existing or [])}
    next_id = max((doc["_id"] for doc in existing_docs.values()), default=-1) + 1
    documents = []
    for host in members:
        if host in existing_docs:
            documents.append(dict(existing_docs[host]))
        else:
            documents.append({"_id": next_id, "host": host})
            next_id += 1
    return documents


def membership_steps(current: List[str], target: List[str]) -> List[List[str]]:
    """
    Host lists leading from `current` to `target`, one member added or
    removed per step. Removals come first; the last step is `target` in
    its given order.
    """
    present = set(current)

    def ordered():
        return [h for h in target if h in present] + [h for h in current if h in present and h not in target]

    steps = []
    for host in current:
        if host not in target:
            present.discard(host)
            steps.append(ordered())
    for host in target:
        if host not in present:
            present.add(host)
            steps.append(ordered())
    return steps


class MongodClient:

    def __init__(
        self,
        host: str,
        port: int,
        timeout_ms: int = 5000,
        client_factory: Callable[..., Any] = MongoClient,
    ):
        self.host = host
        self.port = port
        self.timeout_ms = timeout_ms
        self._client_factory = client_factory
        self._client = None
        self._lock = threading.Lock()

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    def _admin(self):
        with self._lock:
            if self._client is None:
                self._client = self._client_factory(
                    self.host,
                    self.port,
                    directConnection=True,
                    serverSelectionTimeoutMS=self.timeout_ms,
                    connectTimeoutMS=self.timeout_ms,
                )
            return self._client.admin

    def _command(self, name: str, *args, **kwargs) -> Dict[str, Any]:
        try:
            return self._admin().command(name, *args, **kwargs)
        except PyMongoError as e:
            raise DatabaseCommandError(name, e) from e

    def close(self) -> None:
        with self._lock:
            if self._client is not None:
                self._client.close()
                self._client = None

    # ------------------------------------------------------------------

    def ping(self) -> bool:
        try:
            self._admin().command("ping")
            return True
        except PyMongoError:
            return False

    def get_replica_set_status(self) -> Optional[Dict[str, Any]]:
        """replSetGetStatus, or None when the set has not been initiated."""
        try:
            return self._admin().command("replSetGetStatus")
        except OperationFailure as e:
            if e.code == NOT_YET_INITIALIZED:
                return None
            raise DatabaseCommandError("replSetGetStatus", e) from e
        except PyMongoError as e:
            raise DatabaseCommandError("replSetGetStatus", e) from e

    def get_replica_set_config(self) -> Dict[str, Any]:
        return self._command("replSetGetConfig")["config"]

    def get_member_count(self) -> int:
        return len(self.get_replica_set_config().get("members", []))

    def initiate(self, replica_set_name: str, members: List[str]) -> int:
        config = {"_id": replica_set_name, "members": build_member_documents(members)}
        logger.info(f"Running replSetInitiate with {config}")
        self._command("replSetInitiate", config)
        return len(config["members"])

    def reconfigure(self, replica_set_name: str, members: List[str]) -> int:
        """
        Move the set to exactly `members`.

        Servers from 4.4 on refuse a reconfig that adds or removes more
        than one voting member, so the change is issued as a sequence of
        single-member reconfigs, each against the freshly read config with
        its own version bump. Earlier servers (3.6, 4.0, 4.2) accept the
        same sequence. A failure part way leaves the set at the last
        accepted step; the next reconcile continues from there.
        """
        current = self.get_replica_set_config()
        steps = membership_steps([doc["host"] for doc in current.get("members", [])], list(members))
        # Removed members stay in `known` so their ids are not handed out again
        known: Dict[str, Dict[str, Any]] = {}
        for index, hosts in enumerate(steps):
            if index:
                current = self.get_replica_set_config()
            known.update((doc["host"], doc) for doc in current.get("members", []))
            config = dict(current)
            config["_id"] = replica_set_name
            config["version"] = int(current.get("version", 0)) + 1
            config["members"] = build_member_documents(hosts, list(known.values()))
            logger.info(f"Running replSetReconfig version={config['version']} members={hosts}")
            self._command("replSetReconfig", config)
        return len(members)

    def set_log_level(self, level: int) -> None:
        self._command("setParameter", 1, logLevel=int(level))

    def is_primary(self) -> bool:
        reply = self._command("hello")
        return bool(reply.get("isWritablePrimary", reply.get("ismaster", False)))

    def step_down(self, seconds: int = 60) -> bool:
        """Step down if primary. Returns True when a step-down was issued."""
        if not self.is_primary():
            logger.info(f"{self.address} is not primary, step-down not needed")
            return False
        try:
            self._admin().command("replSetStepDown", int(seconds))
        except ConnectionFailure:
            # The server drops connections as it steps down.
            pass
        except PyMongoError as e:
            raise DatabaseCommandError("replSetStepDown", e) from e
        return True

    def shutdown(self, force: bool = False) -> None:
        try:
            self._admin().command("shutdown", force=force)
        except ConnectionFailure:
            # The server closes the connection while exiting.
            pass
        except PyMongoError as e:
            raise DatabaseCommandError("shutdown", e) from e
        finally:
            self.close()

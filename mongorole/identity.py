"""
Instance identity resolution.

The ordinal comes from the numeric suffix of the platform-assigned instance
name, e.g. "deployment.MongoDBRole_IN_2" -> 2. On an emulated host every
simulated instance shares one address, so mongod ports are offset by ordinal.
"""

import logging
import re
from dataclasses import dataclass
from typing import List, Tuple

from fabric.environment import RoleEnvironment
from mongorole.config import MONGOD_PORT_ENDPOINT
from mongorole.errors import MalformedInstanceName

logger = logging.getLogger(__name__)

_ORDINAL_SUFFIX = re.compile(r"(\d+)$")


@dataclass(frozen=True)
class InstanceIdentity:
    ordinal: int
    host: str
    port: int

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class RoleContext:
    """Who this instance is, computed once at startup."""
    identity: InstanceIdentity
    is_leader: bool
    role_name: str
    replica_set_name: str

    @classmethod
    def for_identity(cls, identity: InstanceIdentity, role_name: str, replica_set_name: str) -> "RoleContext":
        return cls(
            identity=identity,
            is_leader=identity.ordinal == 0,
            role_name=role_name,
            replica_set_name=replica_set_name,
        )


def parse_ordinal(instance_id: str) -> int:
    match = _ORDINAL_SUFFIX.search(instance_id or "")
    if match is None:
        raise MalformedInstanceName(instance_id)
    return int(match.group(1))


def resolve_endpoint(environment: RoleEnvironment, ordinal: int) -> Tuple[str, int]:
    endpoint = environment.get_instance_endpoint(MONGOD_PORT_ENDPOINT)
    port = endpoint.port
    if environment.is_emulated:
        port += ordinal
    return endpoint.host, port


def resolve_identity(environment: RoleEnvironment) -> InstanceIdentity:
    ordinal = parse_ordinal(environment.current_instance_id)
    host, port = resolve_endpoint(environment, ordinal)
    identity = InstanceIdentity(ordinal=ordinal, host=host, port=port)
    logger.info(f"Resolved identity: instance={environment.current_instance_id}, ordinal={ordinal}, endpoint={identity.address}")
    return identity


def member_endpoints(environment: RoleEnvironment, role_name: str, count: int) -> List[str]:
    """host:port of every ordinal in 0..count-1, with the emulator offset applied."""
    members = []
    for ordinal in range(count):
        endpoint = environment.role_instance_endpoint(role_name, ordinal, MONGOD_PORT_ENDPOINT)
        port = endpoint.port + ordinal if environment.is_emulated else endpoint.port
        members.append(f"{endpoint.host}:{port}")
    return members

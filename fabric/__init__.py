"""
Fabric — The Hosting Environment

Everything the role supervisor needs to know about the machine it runs on
comes through a RoleEnvironment:
- Instance identity and advertised endpoints
- Configuration key/value settings
- Local resources (cache and log directories)
- Instance counts per role
- Configuration and topology change notifications

Two implementations are provided: FabricClient talks to a host agent over
HTTP, EmulatedEnvironment runs in-process from a YAML deployment file.
"""

from fabric.environment import (
    InstanceEndpoint,
    LocalResource,
    RoleEnvironment,
    RoleEnvironmentError,
    SettingChange,
    TopologyChange,
)

__all__ = [
    "InstanceEndpoint",
    "LocalResource",
    "RoleEnvironment",
    "RoleEnvironmentError",
    "SettingChange",
    "TopologyChange",
]

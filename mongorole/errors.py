"""
MongoRole exception taxonomy.

Only VolumeMountError and ProcessLaunchError are meant to cross the role
boundary; the host recycles the instance when they escape on_start.
"""


class MongoRoleError(Exception):
    """Base class for role supervisor errors."""


class MalformedInstanceName(MongoRoleError):
    """The platform-assigned instance name carries no numeric suffix."""

    def __init__(self, instance_id: str):
        super().__init__(f"Instance name '{instance_id}' has no numeric ordinal suffix")
        self.instance_id = instance_id


class VolumeMountError(MongoRoleError):
    """The durable data volume could not be mounted."""


class ProcessLaunchError(MongoRoleError):
    """The mongod process could not be started or died before listening."""


class DatabaseCommandError(MongoRoleError):
    """A command sent to the managed mongod failed."""

    def __init__(self, command: str, cause: Exception):
        super().__init__(f"{command} failed: {cause}")
        self.command = command
        self.cause = cause

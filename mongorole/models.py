"""
Role Local Database Models

Each instance keeps its own role_local.db (SQLite) in its local cache
resource, tracking:
- volume_attachments: Attach/detach history of the durable data volume
- role_events: Lifecycle events (start, initiate, reconfigure, stop, ...)

This DB is NEVER shared between instances and never holds database data.
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import Column, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class AttachmentStatus(str, Enum):
    ATTACHED = "ATTACHED"
    DETACHED = "DETACHED"
    DETACH_FAILED = "DETACH_FAILED"


class RoleEventType(str, Enum):
    ROLE_START = "ROLE_START"
    ROLE_STOP = "ROLE_STOP"
    VOLUME_ATTACH = "VOLUME_ATTACH"
    VOLUME_DETACH = "VOLUME_DETACH"
    PROCESS_LAUNCH = "PROCESS_LAUNCH"
    PROCESS_EXIT = "PROCESS_EXIT"
    RS_INITIATE = "RS_INITIATE"
    RS_RECONFIG = "RS_RECONFIG"
    CONFIG_CHANGE = "CONFIG_CHANGE"
    TOPOLOGY_CHANGE = "TOPOLOGY_CHANGE"


class VolumeAttachment(Base):
    """
    One attach of the data volume, closed by the matching detach.
    """
    __tablename__ = "volume_attachments"

    id = Column(Integer, primary_key=True, autoincrement=True)

    container_name = Column(String, nullable=False)
    blob_name = Column(String, nullable=False)
    local_mount_path = Column(String, nullable=False)
    size_limit_mb = Column(Integer, nullable=False)

    status = Column(String, default=AttachmentStatus.ATTACHED.value)  # ATTACHED, DETACHED, DETACH_FAILED
    attached_at = Column(DateTime, default=datetime.utcnow)
    detached_at = Column(DateTime)
    last_error_message = Column(Text)

    __table_args__ = (
        Index("idx_volume_attachments_status", "status"),
    )


class RoleEvent(Base):
    __tablename__ = "role_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_type = Column(String, nullable=False, index=True)
    message = Column(Text, nullable=False)
    ordinal = Column(Integer)
    created_at = Column(DateTime, default=datetime.utcnow)

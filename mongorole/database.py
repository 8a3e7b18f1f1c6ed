"""
Role Local Database Initialization

Manages role_local.db (SQLite) for per-instance supervisor state.
The file lives in the instance's local cache resource.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from sqlalchemy import create_engine, select
from sqlalchemy.orm import scoped_session, sessionmaker
from sqlalchemy.pool import StaticPool

from mongorole.models import AttachmentStatus, Base, RoleEvent, RoleEventType, VolumeAttachment

logger = logging.getLogger(__name__)

DB_FILE_NAME = "role_local.db"


def get_role_db_url(storage_root: Optional[str]) -> str:
    """SQLite URL for the role database; in-memory when no root is given."""
    if not storage_root:
        return "sqlite://"
    storage_path = Path(storage_root)
    storage_path.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{storage_path / DB_FILE_NAME}"


def init_role_database(storage_root: Optional[str] = None) -> tuple:
    """
    Initialize role local database and return engine + session factory.

    Returns:
        (engine, SessionLocal) tuple
    """
    db_url = get_role_db_url(storage_root)
    logger.info(f"Initializing role database at {db_url}")

    # Shared by the main loop, the watcher thread and the mgmt API
    engine = create_engine(
        db_url,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    Base.metadata.create_all(bind=engine)

    session_factory = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    SessionLocal = scoped_session(session_factory)

    logger.info(f"Role database initialized with {len(Base.metadata.tables)} tables")

    return engine, SessionLocal


class RoleRecorder:
    """
    Writes attach/detach history and lifecycle events.

    Recording is bookkeeping only: a failed write is logged and never
    interrupts the operation being recorded.
    """

    def __init__(self, session_factory, ordinal: Optional[int] = None):
        self.session_factory = session_factory
        self.ordinal = ordinal

    def log_event(self, event_type: RoleEventType, message: str) -> None:
        db = self.session_factory()
        try:
            db.add(RoleEvent(event_type=event_type.value, message=message, ordinal=self.ordinal))
            db.commit()
        except Exception as e:
            db.rollback()
            logger.warning(f"Failed to record event {event_type.value}: {e}")
        finally:
            db.close()

    def record_attach(self, container_name: str, blob_name: str, local_mount_path: str, size_limit_mb: int) -> Optional[int]:
        db = self.session_factory()
        try:
            attachment = VolumeAttachment(
                container_name=container_name,
                blob_name=blob_name,
                local_mount_path=local_mount_path,
                size_limit_mb=size_limit_mb,
                status=AttachmentStatus.ATTACHED.value,
            )
            db.add(attachment)
            db.commit()
            return attachment.id
        except Exception as e:
            db.rollback()
            logger.warning(f"Failed to record attach of {blob_name}: {e}")
            return None
        finally:
            db.close()

    def record_detach(self, attachment_id: Optional[int], error: Optional[str] = None) -> None:
        if attachment_id is None:
            return
        db = self.session_factory()
        try:
            attachment = db.get(VolumeAttachment, attachment_id)
            if attachment is None:
                return
            attachment.status = (
                AttachmentStatus.DETACH_FAILED.value if error else AttachmentStatus.DETACHED.value
            )
            attachment.detached_at = datetime.utcnow()
            attachment.last_error_message = error
            db.commit()
        except Exception as e:
            db.rollback()
            logger.warning(f"Failed to record detach of attachment {attachment_id}: {e}")
        finally:
            db.close()

    def current_attachment(self) -> Optional[VolumeAttachment]:
        db = self.session_factory()
        try:
            return db.scalars(
                select(VolumeAttachment)
                .where(VolumeAttachment.status == AttachmentStatus.ATTACHED.value)
                .order_by(VolumeAttachment.id.desc())
            ).first()
        finally:
            db.close()

    def recent_events(self, limit: int = 50) -> List[RoleEvent]:
        db = self.session_factory()
        try:
            return list(db.scalars(
                select(RoleEvent).order_by(RoleEvent.id.desc()).limit(limit)
            ).all())
        finally:
            db.close()

from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.enums import AuditAction
from app.exceptions import TransientError
from app.models import AuditLog

logger = structlog.get_logger(__name__)


class AuditRecorder:
    """Append-only audit trail.

    Writes go through their own session so a failed audit insert never rolls
    back the state change it describes.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def append(
        self,
        action: AuditAction,
        entity_type: str,
        entity_id: Optional[str],
        description: str,
        tenant_id: str,
        actor_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditLog]:
        entry = AuditLog(
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            description=description,
            tenant_id=tenant_id,
            actor_id=actor_id,
            extra=metadata,
        )
        db: Session = self._session_factory()
        try:
            db.add(entry)
            db.commit()
            return entry
        except Exception as e:
            db.rollback()
            logger.warning(
                "audit_append_failed",
                action=action.value,
                entity_type=entity_type,
                entity_id=entity_id,
                tenant_id=tenant_id,
                error=str(e),
            )
            return None
        finally:
            db.close()

    def find_by_entity(self, tenant_id: str, entity_type: str, entity_id: str) -> List[AuditLog]:
        stmt = (
            select(AuditLog)
            .where(
                AuditLog.tenant_id == tenant_id,
                AuditLog.entity_type == entity_type,
                AuditLog.entity_id == entity_id,
            )
            .order_by(AuditLog.created_at)
        )
        try:
            with self._session_factory() as db:
                return list(db.execute(stmt).scalars().all())
        except SQLAlchemyError as e:
            raise TransientError(f"Audit log unavailable: {e.__class__.__name__}") from e

"""Audit trail for mutating provider actions."""

import json
import logging
from typing import Any, Dict, List, Optional
from sqlalchemy.orm import Session

from provider_router.models.audit_log import AuditLog

logger = logging.getLogger(__name__)


class AuditService:
    """Records one audit row per mutating registry call.

    Rows are added to the caller's session so they commit (or roll back)
    together with the mutation they describe.
    """

    def record(
        self,
        db: Session,
        action: str,
        entity_type: str,
        entity_id: str,
        organization_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditLog:
        entry = AuditLog(
            actor_id=actor_id,
            organization_id=organization_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            details=json.dumps(details, default=str) if details else None,
        )
        db.add(entry)
        logger.debug(f"Audit: {action} on {entity_type}:{entity_id} by {actor_id or 'system'}")
        return entry

    def get_entity_history(self, db: Session, entity_type: str, entity_id: str) -> List[AuditLog]:
        """Get audit rows for one entity, newest first."""
        return (
            db.query(AuditLog)
            .filter(AuditLog.entity_type == entity_type, AuditLog.entity_id == entity_id)
            .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
            .all()
        )

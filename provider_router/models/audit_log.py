"""Audit log database model."""

from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Text
from provider_router.database.database import Base


class AuditLog(Base):
    """One row per mutating action on a routing entity."""

    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    actor_id = Column(String, nullable=True)
    organization_id = Column(String, nullable=True, index=True)
    action = Column(String, nullable=False)  # create, update, delete, set_default, promote, demote
    entity_type = Column(String, nullable=False)
    entity_id = Column(String, nullable=False, index=True)
    details = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

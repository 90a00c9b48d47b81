"""Provider database model."""

import uuid
from datetime import datetime
from sqlalchemy import Column, Integer, String, Boolean, DateTime, Float, Text, Index, text
from provider_router.database.database import Base

TEST_STATUS_SUCCESS = "SUCCESS"
TEST_STATUS_FAILED = "FAILED"


def _new_id() -> str:
    return uuid.uuid4().hex


class Provider(Base):
    """An AI backend configuration owned by an organization."""

    __tablename__ = "ai_providers"

    id = Column(String, primary_key=True, default=_new_id)
    organization_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    type = Column(String, nullable=False)
    api_key_encrypted = Column(String, nullable=False, default="")
    base_url = Column(String, nullable=True)
    custom_config = Column(Text, nullable=True)  # JSON, shape depends on type
    enabled = Column(Boolean, nullable=False, default=True)
    is_default = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(DateTime, nullable=True)

    # Observability
    last_used_at = Column(DateTime, nullable=True)
    error_count = Column(Integer, nullable=False, default=0)
    test_status = Column(String, nullable=True)  # SUCCESS or FAILED
    test_error = Column(Text, nullable=True)
    last_tested_at = Column(DateTime, nullable=True)
    available_models = Column(Text, nullable=True)  # JSON list of model ids

    # Dispatch statistics
    request_count = Column(Integer, nullable=False, default=0)
    failed_request_count = Column(Integer, nullable=False, default=0)
    avg_latency_ms = Column(Float, nullable=False, default=0.0)  # successful requests only

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_ai_providers_org_type", "organization_id", "type"),
        # At most one live default per (organization, type)
        Index(
            "uq_ai_providers_default",
            "organization_id",
            "type",
            unique=True,
            sqlite_where=text("is_default = 1 AND deleted_at IS NULL"),
            postgresql_where=text("is_default AND deleted_at IS NULL"),
        ),
    )

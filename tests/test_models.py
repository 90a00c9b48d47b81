"""Test database models and schema."""

import pytest
from sqlalchemy import create_engine, inspect
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from provider_router.database.database import Base
from provider_router.models import AuditLog, Provider


@pytest.fixture
def db_session():
    """Create a test database session."""
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(bind=engine)
    SessionLocal = sessionmaker(bind=engine)
    session = SessionLocal()

    yield session

    session.close()


class TestProviderModel:
    """Test Provider model."""

    def test_create_provider_defaults(self, db_session):
        """Test column defaults on a new provider."""
        provider = Provider(organization_id="org1", name="Main", type="openai", api_key_encrypted="enc")
        db_session.add(provider)
        db_session.commit()

        assert len(provider.id) == 32
        assert provider.enabled is True
        assert provider.is_default is False
        assert provider.deleted_at is None
        assert provider.error_count == 0
        assert provider.test_status is None
        assert provider.created_at is not None
        assert provider.updated_at is not None

    def test_keyless_provider_stores_empty_key(self, db_session):
        provider = Provider(organization_id="org1", name="Local", type="ollama")
        db_session.add(provider)
        db_session.commit()

        assert provider.api_key_encrypted == ""

    def test_name_required(self, db_session):
        db_session.add(Provider(organization_id="org1", type="openai"))
        with pytest.raises(IntegrityError):
            db_session.commit()

    def test_org_type_index(self, db_session):
        indexes = inspect(db_session.get_bind()).get_indexes("ai_providers")
        columns = {tuple(ix["column_names"]) for ix in indexes}

        assert ("organization_id", "type") in columns


class TestAuditLogModel:
    """Test AuditLog model."""

    def test_create_audit_row(self, db_session):
        row = AuditLog(
            actor_id="admin-1",
            organization_id="org1",
            action="create",
            entity_type="ai_provider",
            entity_id="abc",
        )
        db_session.add(row)
        db_session.commit()

        assert row.id is not None
        assert row.details is None
        assert row.created_at is not None

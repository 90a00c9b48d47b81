"""Shared fixtures."""

import os

from cryptography.fernet import Fernet

# Settings are read at import time, so the environment is prepared first
os.environ.setdefault("ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ.pop("OPENAI_API_KEY", None)

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from provider_router.config import Settings
from provider_router.database.database import Base
from provider_router.services.discovery_service import ProviderDiscoveryService
from provider_router.services.encryption_service import EncryptionService
from provider_router.services.provider_service import ProviderService
from provider_router.services.router_service import TaskRouter


@pytest.fixture
def test_db():
    """Create a test database."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestingSessionLocal = sessionmaker(bind=engine)
    db = TestingSessionLocal()
    yield db
    db.close()
    engine.dispose()


@pytest.fixture
def encryption_service():
    """Create encryption service with a fresh test key."""
    return EncryptionService(key=Fernet.generate_key().decode())


@pytest.fixture
def provider_service(encryption_service):
    return ProviderService(encryption_service)


@pytest.fixture
def no_legacy_settings():
    return Settings(_env_file=None, openai_api_key=None, encryption_key="unused")


@pytest.fixture
def legacy_settings():
    return Settings(
        _env_file=None,
        openai_api_key="sk-legacy-key",
        openai_base_url="https://legacy.example.com/v1",
        fast_llm="legacy-fast",
        smart_llm="legacy-smart",
        encryption_key="unused",
    )


@pytest.fixture
def router(encryption_service, provider_service, no_legacy_settings):
    """Task router without a legacy fallback."""
    discovery = ProviderDiscoveryService(encryption_service, settings=no_legacy_settings)
    return TaskRouter(discovery, provider_service)


@pytest.fixture
def legacy_router(encryption_service, provider_service, legacy_settings):
    """Task router with a legacy fallback configured."""
    discovery = ProviderDiscoveryService(encryption_service, settings=legacy_settings)
    return TaskRouter(discovery, provider_service)

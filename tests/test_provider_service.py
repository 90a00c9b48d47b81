"""Tests for the provider registry."""

import gc
import threading

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from provider_router.database.database import Base
from provider_router.models.audit_log import AuditLog
from provider_router.models.provider import Provider
from provider_router.services.exceptions import (
    ConcurrentModificationError,
    NotFoundError,
    ProviderDisabledError,
    ValidationError,
)
from provider_router.services.provider_service import MASKED_API_KEY, ProviderService


def _create(service, db, org="org1", name="Provider", type="openai", api_key="sk-test-key-1234567890", **kwargs):
    return service.create_provider(db, org, name=name, type=type, api_key=api_key, **kwargs)


def _defaults(db, org, type):
    return (
        db.query(Provider)
        .filter(
            Provider.organization_id == org,
            Provider.type == type,
            Provider.deleted_at.is_(None),
            Provider.is_default.is_(True),
        )
        .all()
    )


class TestCreateProvider:
    """Test provider creation and validation."""

    def test_create_provider_success(self, test_db, provider_service):
        created = _create(provider_service, test_db, name="Main OpenAI")

        assert created["id"]
        assert created["name"] == "Main OpenAI"
        assert created["type"] == "openai"
        assert created["enabled"] is True
        assert created["is_default"] is False
        assert created["api_key"] == MASKED_API_KEY

        row = test_db.query(Provider).filter(Provider.id == created["id"]).first()
        assert row.api_key_encrypted != "sk-test-key-1234567890"

    def test_create_provider_stores_encrypted_key(self, test_db, provider_service, encryption_service):
        created = _create(provider_service, test_db)

        row = test_db.query(Provider).filter(Provider.id == created["id"]).first()
        assert encryption_service.decrypt(row.api_key_encrypted) == "sk-test-key-1234567890"

    def test_first_provider_is_not_default(self, test_db, provider_service):
        created = _create(provider_service, test_db)
        assert created["is_default"] is False

    @pytest.mark.parametrize("provider_type,base_url", [
        ("ollama", None),
        ("openai-compatible", "http://localhost:8080/v1"),
    ])
    def test_keyless_types_accept_empty_key(self, test_db, provider_service, provider_type, base_url):
        created = _create(provider_service, test_db, type=provider_type, api_key="", base_url=base_url)

        assert created["type"] == provider_type
        assert created["api_key"] == ""

    @pytest.mark.parametrize("provider_type", ["openai", "anthropic", "gemini", "together", "openrouter"])
    def test_key_required_types_reject_empty_key(self, test_db, provider_service, provider_type):
        with pytest.raises(ValidationError, match="API key is required"):
            _create(provider_service, test_db, type=provider_type, api_key="")

        assert test_db.query(Provider).count() == 0

    @pytest.mark.parametrize("name,provider_type", [(None, "openai"), ("", "openai"), ("Name", None), ("Name", "")])
    def test_name_and_type_required(self, test_db, provider_service, name, provider_type):
        with pytest.raises(ValidationError, match="name and type are required"):
            provider_service.create_provider(test_db, "org1", name=name, type=provider_type, api_key="sk-x")

    def test_unknown_type_rejected(self, test_db, provider_service):
        with pytest.raises(ValidationError, match="Invalid provider type"):
            _create(provider_service, test_db, type="cohere")

    def test_openai_compatible_requires_base_url(self, test_db, provider_service):
        with pytest.raises(ValidationError, match="baseUrl is required"):
            _create(provider_service, test_db, type="openai-compatible", api_key="")

    @pytest.mark.parametrize("base_url", ["http://host:notaport/v1", "ftp://models.example.com", "models.example.com/v1"])
    def test_malformed_base_url_rejected(self, test_db, provider_service, base_url):
        with pytest.raises(ValidationError, match="baseUrl"):
            _create(provider_service, test_db, base_url=base_url)

        assert test_db.query(Provider).count() == 0

    def test_update_rejects_malformed_base_url(self, test_db, provider_service):
        created = _create(provider_service, test_db)

        with pytest.raises(ValidationError, match="baseUrl"):
            provider_service.update_provider(test_db, "org1", created["id"], base_url="http://host:notaport/v1")

    def test_custom_config_validated_against_type(self, test_db, provider_service):
        created = _create(
            provider_service, test_db, type="anthropic",
            custom_config={"fast_model": "claude-3-haiku", "anthropic_version": "2023-06-01"},
        )
        assert created["custom_config"]["fast_model"] == "claude-3-haiku"

        with pytest.raises(ValidationError, match="Invalid customConfig"):
            _create(provider_service, test_db, type="openai", custom_config={"anthropic_version": "x"})

    def test_custom_config_accepts_json_text(self, test_db, provider_service):
        created = _create(provider_service, test_db, custom_config='{"smart_model": "gpt-4o"}')
        assert created["custom_config"]["smart_model"] == "gpt-4o"

        with pytest.raises(ValidationError, match="not valid JSON"):
            _create(provider_service, test_db, custom_config="{not json")

    def test_create_records_audit_event(self, test_db, provider_service):
        created = provider_service.create_provider(
            test_db, "org1", name="P", type="openai", api_key="sk-x", actor_id="user-1"
        )

        entries = test_db.query(AuditLog).filter(AuditLog.entity_id == created["id"]).all()
        assert len(entries) == 1
        assert entries[0].action == "create"
        assert entries[0].actor_id == "user-1"
        assert entries[0].organization_id == "org1"


class TestReadProviders:
    """Test masked, organization-scoped reads."""

    def test_list_providers_scoped_and_masked(self, test_db, provider_service):
        _create(provider_service, test_db, org="org1", name="A")
        _create(provider_service, test_db, org="org1", name="B", type="anthropic")
        _create(provider_service, test_db, org="org2", name="Other")

        providers = provider_service.list_providers(test_db, "org1")

        assert {p["name"] for p in providers} == {"A", "B"}
        for p in providers:
            assert p["api_key"] == MASKED_API_KEY
            assert "sk-" not in p["api_key"]

    def test_get_provider_other_organization_not_found(self, test_db, provider_service):
        created = _create(provider_service, test_db, org="org1")

        with pytest.raises(NotFoundError):
            provider_service.get_provider(test_db, "org2", created["id"])

    def test_get_provider_unknown_id(self, test_db, provider_service):
        with pytest.raises(NotFoundError, match="not found"):
            provider_service.get_provider(test_db, "org1", "missing")

    def test_get_provider_internal_decrypts_key(self, test_db, provider_service):
        created = _create(provider_service, test_db, api_key="sk-secret-value")

        internal = provider_service.get_provider_internal(test_db, "org1", created["id"])
        assert internal["api_key"] == "sk-secret-value"

        # Public read path stays masked
        assert provider_service.get_provider(test_db, "org1", created["id"])["api_key"] == MASKED_API_KEY


class TestUpdateProvider:
    """Test partial updates."""

    def test_update_fields(self, test_db, provider_service):
        created = _create(provider_service, test_db)

        updated = provider_service.update_provider(
            test_db, "org1", created["id"], name="Renamed", base_url="https://proxy.example.com/v1"
        )

        assert updated["name"] == "Renamed"
        assert updated["base_url"] == "https://proxy.example.com/v1"
        assert updated["api_key"] == MASKED_API_KEY

    def test_update_without_key_keeps_stored_key(self, test_db, provider_service):
        created = _create(provider_service, test_db, api_key="sk-original")

        provider_service.update_provider(test_db, "org1", created["id"], name="Renamed")

        internal = provider_service.get_provider_internal(test_db, "org1", created["id"])
        assert internal["api_key"] == "sk-original"

    def test_update_key_is_reencrypted(self, test_db, provider_service):
        created = _create(provider_service, test_db, api_key="sk-original")

        updated = provider_service.update_provider(test_db, "org1", created["id"], api_key="sk-rotated")

        assert updated["api_key"] == MASKED_API_KEY
        internal = provider_service.get_provider_internal(test_db, "org1", created["id"])
        assert internal["api_key"] == "sk-rotated"

    def test_update_empty_key_rejected_for_key_required_type(self, test_db, provider_service):
        created = _create(provider_service, test_db)

        with pytest.raises(ValidationError):
            provider_service.update_provider(test_db, "org1", created["id"], api_key="")

    def test_update_scope_mismatch(self, test_db, provider_service):
        created = _create(provider_service, test_db, org="org1")

        with pytest.raises(NotFoundError):
            provider_service.update_provider(test_db, "org2", created["id"], name="Hijack")

    def test_disabling_default_clears_flag(self, test_db, provider_service):
        created = _create(provider_service, test_db)
        provider_service.set_default_provider(test_db, "org1", created["id"])

        updated = provider_service.update_provider(test_db, "org1", created["id"], enabled=False)

        assert updated["enabled"] is False
        assert updated["is_default"] is False
        assert _defaults(test_db, "org1", "openai") == []

    def test_changing_type_clears_default(self, test_db, provider_service):
        created = _create(provider_service, test_db)
        provider_service.set_default_provider(test_db, "org1", created["id"])

        updated = provider_service.update_provider(test_db, "org1", created["id"], type="together")

        assert updated["type"] == "together"
        assert updated["is_default"] is False


class TestDeleteProvider:
    """Test soft delete."""

    def test_delete_is_soft(self, test_db, provider_service):
        created = _create(provider_service, test_db)

        provider_service.delete_provider(test_db, "org1", created["id"])

        row = test_db.query(Provider).filter(Provider.id == created["id"]).first()
        assert row is not None
        assert row.deleted_at is not None
        assert provider_service.list_providers(test_db, "org1") == []
        with pytest.raises(NotFoundError):
            provider_service.get_provider(test_db, "org1", created["id"])

    def test_delete_default_leaves_type_without_default(self, test_db, provider_service):
        a = _create(provider_service, test_db, name="A")
        b = _create(provider_service, test_db, name="B")
        provider_service.set_default_provider(test_db, "org1", a["id"])

        provider_service.delete_provider(test_db, "org1", a["id"])

        assert _defaults(test_db, "org1", "openai") == []
        assert provider_service.get_provider(test_db, "org1", b["id"])["is_default"] is False

    def test_delete_twice_raises_not_found(self, test_db, provider_service):
        created = _create(provider_service, test_db)
        provider_service.delete_provider(test_db, "org1", created["id"])

        with pytest.raises(NotFoundError):
            provider_service.delete_provider(test_db, "org1", created["id"])

        deletes = test_db.query(AuditLog).filter(AuditLog.action == "delete").count()
        assert deletes == 1

    def test_delete_scope_mismatch(self, test_db, provider_service):
        created = _create(provider_service, test_db, org="org1")

        with pytest.raises(NotFoundError):
            provider_service.delete_provider(test_db, "org2", created["id"])

        assert provider_service.get_provider(test_db, "org1", created["id"])


class TestSetDefault:
    """Test the single-default-per-type invariant."""

    def test_set_default_unsets_siblings(self, test_db, provider_service):
        a = _create(provider_service, test_db, name="A")
        b = _create(provider_service, test_db, name="B")
        other_type = _create(provider_service, test_db, name="C", type="anthropic")
        provider_service.set_default_provider(test_db, "org1", other_type["id"])

        provider_service.set_default_provider(test_db, "org1", a["id"])
        result = provider_service.set_default_provider(test_db, "org1", b["id"])

        assert result["is_default"] is True
        assert [p.id for p in _defaults(test_db, "org1", "openai")] == [b["id"]]
        # Other types untouched
        assert [p.id for p in _defaults(test_db, "org1", "anthropic")] == [other_type["id"]]

    def test_set_default_scoped_to_organization(self, test_db, provider_service):
        mine = _create(provider_service, test_db, org="org1")
        theirs = _create(provider_service, test_db, org="org2")
        provider_service.set_default_provider(test_db, "org2", theirs["id"])

        provider_service.set_default_provider(test_db, "org1", mine["id"])

        assert provider_service.get_provider(test_db, "org2", theirs["id"])["is_default"] is True

    def test_set_default_disabled_provider(self, test_db, provider_service):
        created = _create(provider_service, test_db)
        provider_service.update_provider(test_db, "org1", created["id"], enabled=False)

        with pytest.raises(ProviderDisabledError):
            provider_service.set_default_provider(test_db, "org1", created["id"])

    def test_set_default_deleted_provider(self, test_db, provider_service):
        created = _create(provider_service, test_db)
        provider_service.delete_provider(test_db, "org1", created["id"])

        with pytest.raises(NotFoundError):
            provider_service.set_default_provider(test_db, "org1", created["id"])

    def test_set_default_records_one_audit_event(self, test_db, provider_service):
        a = _create(provider_service, test_db, name="A")
        b = _create(provider_service, test_db, name="B")
        provider_service.set_default_provider(test_db, "org1", a["id"])

        provider_service.set_default_provider(test_db, "org1", b["id"], actor_id="admin")

        events = test_db.query(AuditLog).filter(
            AuditLog.action == "set_default", AuditLog.entity_id == b["id"]
        ).all()
        assert len(events) == 1
        assert a["id"] in events[0].details

    def test_concurrent_set_default_keeps_single_default(self, tmp_path, encryption_service):
        engine = create_engine(
            f"sqlite:///{tmp_path / 'providers.db'}",
            connect_args={"check_same_thread": False},
        )
        Base.metadata.create_all(engine)
        SessionLocal = sessionmaker(bind=engine)
        service = ProviderService(encryption_service)

        setup = SessionLocal()
        ids = [_create(service, setup, name=f"P{i}")["id"] for i in range(4)]
        setup.close()

        barrier = threading.Barrier(len(ids))
        errors = []

        def worker(provider_id):
            db = SessionLocal()
            try:
                barrier.wait()
                service.set_default_provider(db, "org1", provider_id)
            except Exception as e:  # pragma: no cover - surfaced via assertion below
                errors.append(e)
            finally:
                db.close()

        threads = [threading.Thread(target=worker, args=(i,)) for i in ids]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        check = SessionLocal()
        try:
            assert errors == []
            assert len(_defaults(check, "org1", "openai")) == 1
        finally:
            check.close()
            engine.dispose()

    def test_schema_rejects_second_default(self, tmp_path, encryption_service):
        engine = create_engine(f"sqlite:///{tmp_path / 'providers.db'}")
        Base.metadata.create_all(engine)
        SessionLocal = sessionmaker(bind=engine)
        service = ProviderService(encryption_service)

        setup = SessionLocal()
        a = _create(service, setup, name="A")["id"]
        b = _create(service, setup, name="B")["id"]
        setup.close()

        # Two writers that never saw each other's default
        first, second = SessionLocal(), SessionLocal()
        try:
            first.query(Provider).filter(Provider.id == a).one().is_default = True
            second.query(Provider).filter(Provider.id == b).one().is_default = True
            first.commit()
            with pytest.raises(IntegrityError):
                second.commit()
            second.rollback()
            assert [p.id for p in _defaults(second, "org1", "openai")] == [a]
        finally:
            first.close()
            second.close()
            engine.dispose()

    def test_lost_default_race_raises_retryable_error(self, test_db, provider_service, monkeypatch):
        a = _create(provider_service, test_db, name="A")
        b = _create(provider_service, test_db, name="B")
        record = provider_service.audit_service.record

        def competing_writer(db, *args, **kwargs):
            # Another process commits its default after the sibling check
            db.execute(text("UPDATE ai_providers SET is_default = 1 WHERE id = :id"), {"id": b["id"]})
            return record(db, *args, **kwargs)

        monkeypatch.setattr(provider_service.audit_service, "record", competing_writer)

        with pytest.raises(ConcurrentModificationError):
            provider_service.set_default_provider(test_db, "org1", a["id"])

        assert _defaults(test_db, "org1", "openai") == []
        assert test_db.query(AuditLog).filter(AuditLog.action == "set_default").count() == 0

    def test_type_locks_released_after_use(self, test_db, provider_service):
        created = _create(provider_service, test_db)

        provider_service.set_default_provider(test_db, "org1", created["id"])
        gc.collect()

        assert ("org1", "openai") not in ProviderService._locks


class TestCounters:
    """Test observability counters."""

    def test_record_failure_and_usage(self, test_db, provider_service):
        created = _create(provider_service, test_db)

        provider_service.record_failure(test_db, created["id"], "boom")
        provider_service.record_failure(test_db, created["id"], "boom")
        provider_service.record_usage(test_db, created["id"])

        p = provider_service.get_provider(test_db, "org1", created["id"])
        assert p["error_count"] == 2
        assert p["last_used_at"] is not None

    def test_request_stats(self, test_db, provider_service):
        created = _create(provider_service, test_db)
        assert provider_service.get_provider(test_db, "org1", created["id"])["success_rate"] == 100

        provider_service.record_usage(test_db, created["id"], latency_ms=100)
        provider_service.record_usage(test_db, created["id"], latency_ms=300)
        provider_service.record_failure(test_db, created["id"], "boom")
        provider_service.record_usage(test_db, created["id"], latency_ms=200)

        p = provider_service.get_provider(test_db, "org1", created["id"])
        assert p["request_count"] == 4
        assert p["failed_request_count"] == 1
        assert p["success_rate"] == 75
        assert p["avg_latency_ms"] == 200.0

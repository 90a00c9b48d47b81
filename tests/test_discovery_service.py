"""Tests for provider discovery."""

from cryptography.fernet import Fernet

from provider_router.models.provider import Provider
from provider_router.services.discovery_service import ProviderDiscoveryService
from provider_router.services.provider_types import ProviderType, TaskType


def test_enabled_providers_exclude_disabled_and_deleted(test_db, provider_service, encryption_service, no_legacy_settings):
    discovery = ProviderDiscoveryService(encryption_service, settings=no_legacy_settings)
    a = provider_service.create_provider(test_db, "org1", name="A", type="openai", api_key="sk-a")
    b = provider_service.create_provider(test_db, "org1", name="B", type="openai", api_key="sk-b")
    c = provider_service.create_provider(test_db, "org1", name="C", type="gemini", api_key="g-c")
    provider_service.update_provider(test_db, "org1", b["id"], enabled=False)
    provider_service.delete_provider(test_db, "org1", c["id"])

    handles = discovery.get_enabled_providers(test_db, "org1")

    assert [h.id for h in handles] == [a["id"]]
    assert handles[0].api_key == "sk-a"
    assert handles[0].type == ProviderType.OPENAI


def test_enabled_providers_scoped_by_organization(test_db, provider_service, encryption_service, no_legacy_settings):
    discovery = ProviderDiscoveryService(encryption_service, settings=no_legacy_settings)
    provider_service.create_provider(test_db, "org1", name="A", type="openai", api_key="sk-a")
    provider_service.create_provider(test_db, "org2", name="B", type="openai", api_key="sk-b")

    assert [h.name for h in discovery.get_enabled_providers(test_db, "org1")] == ["A"]
    assert sorted(h.name for h in discovery.get_enabled_providers(test_db)) == ["A", "B"]


def test_changes_visible_on_next_call(test_db, provider_service, encryption_service, no_legacy_settings):
    discovery = ProviderDiscoveryService(encryption_service, settings=no_legacy_settings)
    a = provider_service.create_provider(test_db, "org1", name="A", type="openai", api_key="sk-a")
    assert len(discovery.get_enabled_providers(test_db, "org1")) == 1

    provider_service.delete_provider(test_db, "org1", a["id"])

    assert discovery.get_enabled_providers(test_db, "org1") == []


def test_handle_resolves_models_from_config(test_db, provider_service, encryption_service, no_legacy_settings):
    discovery = ProviderDiscoveryService(encryption_service, settings=no_legacy_settings)
    provider_service.create_provider(
        test_db, "org1", name="A", type="anthropic", api_key="sk-ant",
        custom_config={"smart_model": "claude-3-opus-20240229"},
    )

    handle = discovery.get_enabled_providers(test_db, "org1")[0]

    assert handle.model_for(TaskType.SMART) == "claude-3-opus-20240229"
    assert handle.model_for(TaskType.FAST) == "claude-3-5-haiku-20241022"
    assert handle.effective_base_url == "https://api.anthropic.com"


def test_undecryptable_provider_is_skipped(test_db, provider_service, encryption_service, no_legacy_settings):
    discovery = ProviderDiscoveryService(encryption_service, settings=no_legacy_settings)
    good = provider_service.create_provider(test_db, "org1", name="Good", type="openai", api_key="sk-good")
    foreign_key = Fernet(Fernet.generate_key())
    test_db.add(Provider(
        organization_id="org1",
        name="Corrupt",
        type="openai",
        api_key_encrypted=foreign_key.encrypt(b"sk-other").decode(),
    ))
    test_db.commit()

    handles = discovery.get_enabled_providers(test_db, "org1")

    assert [h.id for h in handles] == [good["id"]]


def test_legacy_fallback(encryption_service, legacy_settings, no_legacy_settings):
    assert ProviderDiscoveryService(encryption_service, settings=no_legacy_settings).has_legacy_fallback() is False
    assert ProviderDiscoveryService(encryption_service, settings=no_legacy_settings).get_legacy_provider() is None

    discovery = ProviderDiscoveryService(encryption_service, settings=legacy_settings)
    legacy = discovery.get_legacy_provider()

    assert discovery.has_legacy_fallback() is True
    assert legacy.api_key == "sk-legacy-key"
    assert legacy.base_url == "https://legacy.example.com/v1"
    assert legacy.model_for(TaskType.FAST) == "legacy-fast"
    assert legacy.model_for(TaskType.SMART) == "legacy-smart"

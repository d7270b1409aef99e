"""Tests for integration configs and encrypted secrets."""

import uuid

import pytest
from sqlalchemy.orm import Session

from switchyard.errors import IntegrationDisabled, IntegrationNotFound, InvalidRequest, SecretMissing
from switchyard.integrations import (
    IntegrationRepository,
    SecretRepository,
    normalize_integration_type,
)
from switchyard.metadata import IntegrationSecret


def _create(db: Session, tenant_id, **overrides):
    values = {
        "integration_type": "WHATSAPP_PROVIDER",
        "provider": "Twilio",
        "name": "Main number",
        "config": {"external_ref": "PN-9"},
    }
    values.update(overrides)
    return IntegrationRepository(db).create(tenant_id, **values)


def test_normalize_integration_type_aliases():
    assert normalize_integration_type("whatsapp") == "WHATSAPP_PROVIDER"
    assert normalize_integration_type("meta-leadgen") == "META_LEADGEN"
    with pytest.raises(InvalidRequest):
        normalize_integration_type("fax")


def test_create_and_get_integration(test_db: Session, test_tenant):
    record = _create(test_db, test_tenant.id, actor="alice")

    loaded = IntegrationRepository(test_db).get(test_tenant.id, record.id)

    assert loaded.provider == "twilio"
    assert loaded.status == "ACTIVE"
    assert loaded.external_ref == "PN-9"
    assert loaded.created_by == "alice"


def test_integrations_are_tenant_scoped(test_db: Session, test_tenant, other_tenant):
    record = _create(test_db, test_tenant.id)

    with pytest.raises(IntegrationNotFound):
        IntegrationRepository(test_db).get(other_tenant.id, record.id)
    assert IntegrationRepository(test_db).list(other_tenant.id) == []


def test_update_replaces_config(test_db: Session, test_tenant):
    record = _create(test_db, test_tenant.id)

    updated = IntegrationRepository(test_db).update(
        test_tenant.id, record.id, config={"external_ref": "PN-10"}, actor="bob"
    )

    assert updated.config == {"external_ref": "PN-10"}
    assert updated.name == "Main number"
    assert updated.updated_by == "bob"


def test_disable_makes_require_active_fail(test_db: Session, test_tenant):
    repo = IntegrationRepository(test_db)
    record = _create(test_db, test_tenant.id)
    repo.disable(test_tenant.id, record.id)

    with pytest.raises(IntegrationDisabled):
        repo.require_active(test_tenant.id, record.id)
    assert repo.list_active_by_type("WHATSAPP_PROVIDER") == []

    repo.enable(test_tenant.id, record.id)
    assert repo.require_active(test_tenant.id, record.id).is_active


def test_require_active_for_missing_integration(test_db: Session, test_tenant):
    with pytest.raises(IntegrationDisabled):
        IntegrationRepository(test_db).require_active(test_tenant.id, uuid.uuid4())


def test_secret_is_stored_encrypted(test_db: Session, test_tenant, vault):
    record = _create(test_db, test_tenant.id)
    secrets = SecretRepository(test_db, vault)

    secrets.put_secret(test_tenant.id, record.id, "auth_token", "tok-123")

    row = test_db.query(IntegrationSecret).one()
    assert "tok-123" not in row.value_enc
    assert row.key_version == 2
    assert secrets.get_decrypted(test_tenant.id, record.id, "auth_token") == "tok-123"


def test_put_secret_overwrites(test_db: Session, test_tenant, vault):
    record = _create(test_db, test_tenant.id)
    secrets = SecretRepository(test_db, vault)
    secrets.put_secret(test_tenant.id, record.id, "auth_token", "first")

    secrets.put_secret(test_tenant.id, record.id, "auth_token", "second")

    assert test_db.query(IntegrationSecret).count() == 1
    assert secrets.require_secret(test_tenant.id, record.id, "auth_token") == "second"


def test_list_secret_keys_never_returns_values(test_db: Session, test_tenant, vault):
    record = _create(test_db, test_tenant.id)
    secrets = SecretRepository(test_db, vault)
    secrets.put_secret(test_tenant.id, record.id, "b_key", "vb")
    secrets.put_secret(test_tenant.id, record.id, "a_key", "va")

    keys = secrets.list_secret_keys(test_tenant.id, record.id)

    assert [item.key for item in keys] == ["a_key", "b_key"]
    assert not any(hasattr(item, "value") for item in keys)


def test_secrets_do_not_leak_across_tenants(test_db: Session, test_tenant, other_tenant, vault):
    record = _create(test_db, test_tenant.id)
    secrets = SecretRepository(test_db, vault)
    secrets.put_secret(test_tenant.id, record.id, "auth_token", "tenant-a-only")

    assert secrets.get_decrypted(other_tenant.id, record.id, "auth_token") is None
    with pytest.raises(SecretMissing):
        secrets.require_secret(other_tenant.id, record.id, "auth_token")


def test_delete_secret(test_db: Session, test_tenant, vault):
    record = _create(test_db, test_tenant.id)
    secrets = SecretRepository(test_db, vault)
    secrets.put_secret(test_tenant.id, record.id, "auth_token", "x")

    assert secrets.delete_secret(test_tenant.id, record.id, "auth_token") is True
    assert secrets.delete_secret(test_tenant.id, record.id, "auth_token") is False
    assert secrets.get_decrypted(test_tenant.id, record.id, "auth_token") is None

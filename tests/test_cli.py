"""Tests for the operator CLI."""

import base64
import uuid
from datetime import datetime

import pytest
from click.testing import CliRunner
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from switchyard.cli import cli
from switchyard.metadata import JobRun, Tenant as TenantModel
from switchyard.settings import settings


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def cli_db(tmp_path, monkeypatch):
    """File-backed SQLite database the CLI commands connect to."""
    url = f"sqlite:///{tmp_path / 'cli.db'}"
    monkeypatch.setattr(settings, "database_url", url)
    monkeypatch.setenv("SECRETS_MASTER_KEY_V1", base64.b64encode(b"\x07" * 32).decode("ascii"))
    engine = create_engine(url)
    yield sessionmaker(bind=engine)
    engine.dispose()


def _init(runner):
    result = runner.invoke(cli, ["init-db"])
    assert result.exit_code == 0, result.output
    return result


def test_generate_master_key(runner):
    result = runner.invoke(cli, ["generate-master-key", "--version", "3"])

    assert result.exit_code == 0
    name, _, value = result.output.strip().partition("=")
    assert name == "SECRETS_MASTER_KEY_V3"
    assert len(base64.b64decode(value)) == 32


def test_generate_master_key_rejects_version_zero(runner):
    result = runner.invoke(cli, ["generate-master-key", "--version", "0"])

    assert result.exit_code != 0
    assert "version must be >= 1" in result.output


def test_init_db_creates_tables(runner, cli_db):
    result = _init(runner)

    assert "inbound_events" in result.output
    assert "job_runs" in result.output


def test_create_tenant(runner, cli_db):
    _init(runner)

    result = runner.invoke(cli, ["create-tenant", "--identifier", "acme", "--name", "Acme"])

    assert result.exit_code == 0, result.output
    tenant_id = uuid.UUID(result.output.strip())
    db = cli_db()
    try:
        tenant = db.get(TenantModel, tenant_id)
        assert tenant.identifier == "acme"
        assert tenant.name == "Acme"
    finally:
        db.close()


def test_create_tenant_rejects_duplicate_identifier(runner, cli_db):
    _init(runner)
    runner.invoke(cli, ["create-tenant", "--identifier", "acme", "--name", "Acme"])

    result = runner.invoke(cli, ["create-tenant", "--identifier", "acme", "--name", "Acme again"])

    assert result.exit_code != 0
    assert "already exists" in result.output


def test_retry_run_requeues_failed_run(runner, cli_db):
    _init(runner)
    run_id = uuid.uuid4()
    now = datetime.utcnow()
    db = cli_db()
    try:
        db.add(JobRun(
            id=run_id,
            type="OUTBOUND_PROCESS_JOB",
            payload={"job_id": "x"},
            status="FAILED",
            attempts=3,
            max_attempts=3,
            available_at=now,
            created_at=now,
            last_error_code="PROVIDER_UNAVAILABLE",
        ))
        db.commit()
    finally:
        db.close()

    result = runner.invoke(cli, ["retry-run", str(run_id)])

    assert result.exit_code == 0, result.output
    assert "requeued" in result.output
    db = cli_db()
    try:
        run = db.get(JobRun, run_id)
        assert run.status == "QUEUED"
        assert run.attempts == 0
    finally:
        db.close()

    again = runner.invoke(cli, ["retry-run", str(run_id)])
    assert again.exit_code != 0
    assert "NOT_RETRIABLE" in again.output


def test_retry_event_unknown_tenant(runner, cli_db):
    _init(runner)

    result = runner.invoke(cli, ["retry-event", "--tenant-id", "nobody", str(uuid.uuid4())])

    assert result.exit_code != 0
    assert "Tenant nobody not found" in result.output


def test_sweep_reports_counts(runner, cli_db):
    _init(runner)

    result = runner.invoke(cli, ["sweep", "--drain"])

    assert result.exit_code == 0, result.output
    assert "Re-enqueued 0 inbound event(s), 0 outbound job(s); purged 0 expired lock(s)" in result.output
    assert "Executed 0 run(s)" in result.output

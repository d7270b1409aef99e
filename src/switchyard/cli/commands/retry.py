"""Operator retry commands."""

import click

from switchyard.cli.base import CliCommand
from switchyard.errors import SwitchyardError


@click.command(name="retry-event")
@click.option("--tenant-id", required=True, help="Tenant UUID or identifier")
@click.argument("event_id")
def retry_event_command(tenant_id: str, event_id: str):
    """Reset an inbound event to RECEIVED and enqueue it again."""
    RetryEventCommand().run(tenant_id=tenant_id, event_id=event_id)


class RetryEventCommand(CliCommand):

    def run(self, *, tenant_id, event_id):
        self.setup_db()
        try:
            tenant = self.load_tenant(tenant_id)
            try:
                event = self.runtime.inbound.retry(self.db, tenant.id, event_id)
            except SwitchyardError as exc:
                raise click.ClickException(f"{exc.code}: {exc.message}")
            click.echo(f"Event {event.id} is {event.status} (attempts so far: {event.attempt_count})")
        finally:
            self.cleanup_db()


@click.command(name="retry-run")
@click.argument("run_id")
def retry_run_command(run_id: str):
    """Requeue a FAILED job run."""
    RetryRunCommand().run(run_id=run_id)


class RetryRunCommand(CliCommand):

    def run(self, *, run_id):
        self.setup_db()
        try:
            try:
                result = self.runtime.ledger.retry(self.db, run_id)
            except SwitchyardError as exc:
                raise click.ClickException(f"{exc.code}: {exc.message}")
            if not result.retried:
                raise click.ClickException(f"Run {result.run_id} not retried: {result.reason}")
            click.echo(f"Run {result.run_id} requeued")
        finally:
            self.cleanup_db()

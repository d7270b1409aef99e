"""Switchyard CLI entry point with lazy command registration."""

from __future__ import annotations

import click

_COMMANDS_REGISTERED = False


def _register_commands_once() -> None:
    global _COMMANDS_REGISTERED
    if _COMMANDS_REGISTERED:
        return

    from .commands import database, retry, vault, worker

    cli.add_command(database.init_db_command, name="init-db")
    cli.add_command(database.create_tenant_command, name="create-tenant")
    cli.add_command(worker.worker_command, name="worker")
    cli.add_command(worker.sweep_command, name="sweep")
    cli.add_command(vault.generate_master_key_command, name="generate-master-key")
    cli.add_command(retry.retry_event_command, name="retry-event")
    cli.add_command(retry.retry_run_command, name="retry-run")

    _COMMANDS_REGISTERED = True


class _LazyCLIGroup(click.Group):
    def list_commands(self, ctx):
        _register_commands_once()
        return super().list_commands(ctx)

    def get_command(self, ctx, cmd_name):
        _register_commands_once()
        return super().get_command(ctx, cmd_name)


@click.group(cls=_LazyCLIGroup)
@click.option("--log-level", default="INFO", show_default=True, help="Logging level for command output")
def cli(log_level: str):
    """Switchyard operator CLI."""
    import logging

    logging.basicConfig(
        level=getattr(logging, str(log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


if __name__ == "__main__":
    cli()

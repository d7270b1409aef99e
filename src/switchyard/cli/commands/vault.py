"""Master key helpers."""

import click

from switchyard.vault import generate_master_key


@click.command(name="generate-master-key")
@click.option("--version", "key_version", type=int, default=1, show_default=True, help="Key version number")
def generate_master_key_command(key_version: int):
    """Print a fresh master key as an environment assignment."""
    if key_version < 1:
        raise click.BadParameter("version must be >= 1", param_hint="--version")
    click.echo(f"SECRETS_MASTER_KEY_V{key_version}={generate_master_key()}")

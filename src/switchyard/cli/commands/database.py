"""Schema and tenant bootstrap commands."""

import click
from sqlalchemy.exc import IntegrityError

from switchyard.cli.base import CliCommand
from switchyard.metadata import Base, Tenant as TenantModel


@click.command(name="init-db")
def init_db_command():
    """Create any missing tables. Existing tables are left untouched."""
    InitDbCommand().run()


class InitDbCommand(CliCommand):

    def run(self):
        self.setup_db()
        try:
            Base.metadata.create_all(self.engine)
            click.echo(f"Created tables: {', '.join(sorted(Base.metadata.tables))}")
        finally:
            self.cleanup_db()


@click.command(name="create-tenant")
@click.option("--identifier", required=True, help="Unique tenant slug")
@click.option("--name", required=True, help="Display name")
def create_tenant_command(identifier: str, name: str):
    """Register a tenant and print its id."""
    CreateTenantCommand().run(identifier=identifier, name=name)


class CreateTenantCommand(CliCommand):

    def run(self, *, identifier, name):
        self.setup_db()
        try:
            slug = str(identifier or "").strip()
            if not slug:
                raise click.ClickException("identifier cannot be empty")
            tenant = TenantModel(identifier=slug, name=str(name or "").strip() or slug, active=True)
            self.db.add(tenant)
            try:
                self.db.commit()
            except IntegrityError:
                self.db.rollback()
                raise click.ClickException(f"Tenant {slug} already exists")
            click.echo(str(tenant.id))
        finally:
            self.cleanup_db()

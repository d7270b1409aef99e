"""Base command class for shared CLI setup/teardown."""

import click
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from switchyard.bootstrap import Runtime, build_runtime
from switchyard.database import get_engine_kwargs
from switchyard.dependencies import _resolve_tenant
from switchyard.metadata import Tenant as TenantModel
from switchyard.settings import settings


class CliCommand:
    """Base class for all CLI commands with shared setup/teardown."""

    def __init__(self):
        self.engine = None
        self.Session = None
        self.db = None
        self.tenant = None
        self._runtime = None

    def setup_db(self):
        """Initialize database connection."""
        self.engine = create_engine(
            settings.database_url,
            **get_engine_kwargs(),
        )
        self.Session = sessionmaker(bind=self.engine)
        self.db = self.Session()

    def cleanup_db(self):
        """Close database connection."""
        if self.db:
            self.db.close()
        if self.engine is not None:
            self.engine.dispose()

    @property
    def runtime(self) -> Runtime:
        """Runtime bound to this command's session factory (vault keys are needed)."""
        if self.Session is None:
            raise click.ClickException("Database not initialized")
        if self._runtime is None:
            self._runtime = build_runtime(settings, session_factory=self.Session)
        return self._runtime

    def load_tenant(self, tenant_ref: str) -> TenantModel:
        """Load a tenant by UUID or identifier."""
        if not self.db:
            raise click.ClickException("Database not initialized")
        tenant_row = _resolve_tenant(self.db, tenant_ref)
        if not tenant_row:
            raise click.ClickException(f"Tenant {tenant_ref} not found in database")
        self.tenant = tenant_row
        return tenant_row

    def run(self, **kwargs):
        """Execute command - override in subclasses."""
        raise NotImplementedError

"""Persistence for app records, their env vars and routed domains."""

import logging
from typing import Dict, List, Optional

from .base import BaseRepository
from ..exceptions import AppNotFoundError
from ..models.app import App, AppEnvVar, AppDomain

logger = logging.getLogger(__name__)


class AppRepository(BaseRepository[App]):
    model_class = App
    id_column = "name"
    not_found_error = AppNotFoundError

    def get_app(self, name: str) -> Optional[App]:
        return self.get_by_id_optional(name)

    def list_apps(self) -> List[App]:
        return self._base_query().order_by(App.name.asc()).all()

    def save_app(
        self,
        name: str,
        *,
        source_type: str,
        repository_url: Optional[str],
        branch: str,
        archive_path: Optional[str],
        runtime: str,
        install_command: str,
        build_command: Optional[str],
        start_command: str,
        env_vars: Dict[str, str],
    ) -> App:
        """Insert or update the app row and replace its env vars.

        Domains are managed separately through ``add_domain`` because they
        are owned by the reverse-proxy registration step.
        """
        app = self.get_app(name)
        if app is None:
            app = App(name=name)
            self.db.add(app)
            logger.info("Creating app record", extra={"app_name": name})

        app.source_type = source_type
        app.repository_url = repository_url
        app.branch = branch
        app.archive_path = archive_path
        app.runtime = runtime
        app.install_command = install_command
        app.build_command = build_command or None
        app.start_command = start_command
        # Update rows in place: the unit of work inserts before it deletes,
        # so swapping in new rows for existing keys would hit the unique constraint
        current = {var.key: var for var in app.env_vars}
        for key, var in current.items():
            if key not in env_vars:
                app.env_vars.remove(var)
        for key, value in sorted(env_vars.items()):
            if key in current:
                current[key].value = value
            else:
                app.env_vars.append(AppEnvVar(key=key, value=value))

        self.db.commit()
        self.db.refresh(app)
        return app

    def delete_app(self, name: str) -> bool:
        """Delete an app and (by cascade) its env vars. Returns False if absent."""
        app = self.get_app(name)
        if app is None:
            return False
        self.db.delete(app)
        self.db.commit()
        return True

    # ------------------------------------------------------------------
    # Domains
    # ------------------------------------------------------------------

    def add_domain(
        self,
        app_name: str,
        domain: str,
        ssl_enabled: bool = True,
        port: int = 3000,
    ) -> AppDomain:
        """Route a domain to an app; updates the existing row if already routed to it.

        Raises:
            ValueError: if the domain is routed to a different app.
        """
        existing = self.db.query(AppDomain).filter(AppDomain.domain == domain).first()
        if existing is not None:
            if existing.app_name != app_name:
                raise ValueError(f"Domain {domain} is already routed to app '{existing.app_name}'")
            existing.ssl_enabled = ssl_enabled
            existing.port = port
            self.db.commit()
            return existing

        row = AppDomain(
            app_name=app_name,
            domain=domain,
            ssl_enabled=ssl_enabled,
            port=port,
            is_primary=not self.domains_for(app_name),
        )
        self.db.add(row)
        self.db.commit()
        self.db.refresh(row)
        return row

    def remove_domain(self, domain_id: int) -> bool:
        row = self.db.get(AppDomain, domain_id)
        if row is None:
            return False
        self.db.delete(row)
        self.db.commit()
        return True

    def domains_for(self, name: str) -> List[AppDomain]:
        return (
            self.db.query(AppDomain)
            .filter(AppDomain.app_name == name)
            .order_by(AppDomain.id.asc())
            .all()
        )

    def all_routes(self) -> List[AppDomain]:
        """Every routed domain, used to render the proxy config."""
        return (
            self.db.query(AppDomain)
            .order_by(AppDomain.app_name.asc(), AppDomain.id.asc())
            .all()
        )

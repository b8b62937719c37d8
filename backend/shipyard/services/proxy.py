"""Reverse proxy collaborators.

Routes (domain -> app port) live in the ``app_domains`` table so the proxy
configuration can always be regenerated from scratch. ``CaddyProxy``
renders a Caddyfile, validates it with ``caddy validate`` and only then
swaps it in and reloads Caddy, so a bad route never reaches the running
proxy. ``NoopProxy`` renders nothing and is used on hosts without Caddy.

Like the supervisor, methods are synchronous and are called through
``asyncio.to_thread`` from the pipeline.
"""

import logging
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, List

from sqlalchemy.orm import Session

from ..exceptions import RegistrationError
from ..models.app import AppDomain
from ..repositories.app_repository import AppRepository

logger = logging.getLogger(__name__)

DEFAULT_UPSTREAM_PORT = 3000
CADDY_TIMEOUT_SECONDS = 60


class ReverseProxy(ABC):
    """Route bookkeeping shared by every proxy backend."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def add_route(
        self,
        app_name: str,
        domain: str,
        tls_enabled: bool = True,
        port: int = DEFAULT_UPSTREAM_PORT,
    ) -> int:
        """Record a route. Returns the route id.

        Raises:
            RegistrationError: if the domain already routes to another app.
        """
        db = self.session_factory()
        try:
            row = AppRepository(db).add_domain(app_name, domain, ssl_enabled=tls_enabled, port=port)
            logger.info(f"Route {domain} -> {app_name}:{port} (tls={tls_enabled})")
            return row.id
        except ValueError as e:
            raise RegistrationError("proxy", str(e)) from e
        finally:
            db.close()

    def remove_route(self, domain_id: int) -> bool:
        """Forget a route. Returns False if it was already gone."""
        db = self.session_factory()
        try:
            return AppRepository(db).remove_domain(domain_id)
        finally:
            db.close()

    def routes_for(self, app_name: str) -> List[AppDomain]:
        db = self.session_factory()
        try:
            return AppRepository(db).domains_for(app_name)
        finally:
            db.close()

    def all_routes(self) -> List[AppDomain]:
        db = self.session_factory()
        try:
            return AppRepository(db).all_routes()
        finally:
            db.close()

    def apply(self) -> None:
        """Regenerate, validate and reload; the proxy keeps its old config on failure."""
        self.regenerate_config()
        if not self.validate_config():
            raise RegistrationError("proxy", "generated proxy configuration failed validation")
        self.reload()

    @abstractmethod
    def regenerate_config(self) -> None:
        """Render the configuration for every route."""

    @abstractmethod
    def validate_config(self) -> bool:
        """Check the rendered configuration."""

    @abstractmethod
    def reload(self) -> None:
        """Make the proxy serve the rendered configuration."""


class CaddyProxy(ReverseProxy):
    """Caddyfile generator and reloader."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        caddyfile_path: Path,
        caddy_binary: str = "caddy",
        admin_email: str = "",
    ):
        super().__init__(session_factory)
        self.caddyfile_path = Path(caddyfile_path)
        self.caddy_binary = caddy_binary
        self.admin_email = admin_email

    @property
    def pending_path(self) -> Path:
        return self.caddyfile_path.with_name(self.caddyfile_path.name + ".new")

    def render(self, routes: List[AppDomain]) -> str:
        blocks = ["# Managed by shipyard. Manual edits are overwritten.\n"]
        if self.admin_email:
            blocks.append("{\n" f"\temail {self.admin_email}\n" "}\n")
        for route in routes:
            address = route.domain if route.ssl_enabled else f"http://{route.domain}"
            lines = [f"# app: {route.app_name}", f"{address} {{"]
            if route.ssl_enabled and self.admin_email:
                lines.append(f"\ttls {self.admin_email}")
            lines.append(f"\treverse_proxy localhost:{route.port}")
            lines.append("\tencode gzip")
            lines.append("}")
            blocks.append("\n".join(lines) + "\n")
        return "\n".join(blocks)

    def regenerate_config(self) -> None:
        content = self.render(self.all_routes())
        try:
            self.pending_path.parent.mkdir(parents=True, exist_ok=True)
            self.pending_path.write_text(content)
        except OSError as e:
            raise RegistrationError("proxy", f"cannot write {self.pending_path}: {e}") from e

    def validate_config(self) -> bool:
        result = self._caddy("validate", "--config", str(self.pending_path), "--adapter", "caddyfile")
        if result.returncode != 0:
            logger.error(f"Caddyfile validation failed: {(result.stderr or result.stdout)[-1000:]}")
            return False
        return True

    def reload(self) -> None:
        self.pending_path.replace(self.caddyfile_path)
        result = self._caddy("reload", "--config", str(self.caddyfile_path), "--adapter", "caddyfile")
        if result.returncode != 0:
            output = (result.stderr or result.stdout or "").strip()
            raise RegistrationError("proxy", f"caddy reload failed: {output[-500:]}")
        logger.info(f"Reloaded Caddy with {self.caddyfile_path}")

    def _caddy(self, *args: str) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                [self.caddy_binary, *args],
                capture_output=True,
                text=True,
                timeout=CADDY_TIMEOUT_SECONDS,
            )
        except FileNotFoundError as e:
            raise RegistrationError("proxy", f"{self.caddy_binary} not found") from e
        except subprocess.TimeoutExpired as e:
            raise RegistrationError("proxy", f"caddy {args[0]} timed out") from e


class NoopProxy(ReverseProxy):
    """Tracks routes in the database but drives no proxy process."""

    def __init__(self, session_factory: Callable[[], Session]):
        super().__init__(session_factory)
        self.reloads = 0
        self.rendered: List[str] = []

    def regenerate_config(self) -> None:
        self.rendered = [f"{r.domain} -> localhost:{r.port}" for r in self.all_routes()]

    def validate_config(self) -> bool:
        return True

    def reload(self) -> None:
        self.reloads += 1

"""App, AppEnvVar and AppDomain models.

An App row is the durable configuration of a deployed application. It is
written by the pipeline on the first successful deployment and read back
on redeploy. Env vars hang off the app and are removed with it; domains are
owned by the reverse proxy and looked up by app name.
"""

from datetime import datetime, timezone

from sqlalchemy import Column, String, Text, Integer, DateTime, Boolean, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from ..database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class App(Base):
    """A registered application."""

    __tablename__ = "apps"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(64), unique=True, nullable=False, index=True)

    # Source: "git" apps carry repository_url + branch, "file" apps an archive path
    source_type = Column(String(10), nullable=False, default="git")
    repository_url = Column(Text, nullable=True)
    branch = Column(String(255), nullable=False, default="main")
    archive_path = Column(Text, nullable=True)

    # Allowed values: node, python, bun
    runtime = Column(String(20), nullable=False, default="node")
    install_command = Column(Text, nullable=False)
    build_command = Column(Text, nullable=True)
    start_command = Column(Text, nullable=False)

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    env_vars = relationship(
        "AppEnvVar",
        back_populates="app",
        cascade="all, delete-orphan",
        order_by="AppEnvVar.key",
    )

    @property
    def env(self) -> dict[str, str]:
        return {var.key: var.value for var in self.env_vars}


class AppEnvVar(Base):
    """One environment variable of an app."""

    __tablename__ = "app_env_vars"
    __table_args__ = (UniqueConstraint("app_id", "key", name="uq_app_env_vars_app_key"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    app_id = Column(Integer, ForeignKey("apps.id", ondelete="CASCADE"), nullable=False)
    key = Column(String(255), nullable=False)
    value = Column(Text, nullable=False, default="")
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    app = relationship("App", back_populates="env_vars")


class AppDomain(Base):
    """A public domain routed to an app by the reverse proxy.

    Keyed by app name rather than a foreign key: routes are registered
    during the pipeline before the app record is first written, and are
    removed individually when the app is deleted.
    """

    __tablename__ = "app_domains"

    id = Column(Integer, primary_key=True, autoincrement=True)
    app_name = Column(String(64), nullable=False, index=True)
    domain = Column(String(255), unique=True, nullable=False)
    is_primary = Column(Boolean, nullable=False, default=False)
    ssl_enabled = Column(Boolean, nullable=False, default=True)
    port = Column(Integer, nullable=False, default=3000)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

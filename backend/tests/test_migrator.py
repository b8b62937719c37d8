"""Tests for the migration runner on fresh and pre-existing SQLite databases."""

from sqlalchemy import create_engine, inspect, text

from shipyard.core.migrator import run_migrations
from shipyard.database import Base


def _columns(engine, table):
    return {c["name"] for c in inspect(engine).get_columns(table)}


def _migration_count(engine):
    with engine.connect() as conn:
        return conn.execute(text("SELECT COUNT(*) FROM schema_migrations")).scalar()


class TestFreshInstall:

    def test_creates_tables_and_baselines(self, tmp_path):
        engine = create_engine(f"sqlite:///{tmp_path / 'fresh.db'}")
        result = run_migrations(engine, Base)

        assert result.baselined >= 2
        assert result.applied == 0
        assert {"apps", "app_env_vars", "app_domains", "deployment_jobs"} <= set(
            inspect(engine).get_table_names()
        )
        assert "port" in _columns(engine, "app_domains")
        assert _migration_count(engine) == result.baselined

    def test_second_run_is_a_noop(self, tmp_path):
        engine = create_engine(f"sqlite:///{tmp_path / 'fresh.db'}")
        first = run_migrations(engine, Base)
        second = run_migrations(engine, Base)
        assert second.applied == 0
        assert second.skipped == first.baselined


class TestExistingInstall:

    def test_pending_migrations_add_columns(self, tmp_path):
        engine = create_engine(f"sqlite:///{tmp_path / 'old.db'}")
        # Schema as shipped before routes carried a port and jobs could be archived
        with engine.begin() as conn:
            conn.execute(text("""
                CREATE TABLE app_domains (
                    id INTEGER PRIMARY KEY,
                    app_name VARCHAR(64) NOT NULL,
                    domain VARCHAR(255) NOT NULL UNIQUE,
                    is_primary BOOLEAN NOT NULL DEFAULT 0,
                    ssl_enabled BOOLEAN NOT NULL DEFAULT 1,
                    created_at DATETIME
                )
            """))
            conn.execute(text("""
                CREATE TABLE deployment_jobs (
                    id INTEGER PRIMARY KEY,
                    app_name VARCHAR(64) NOT NULL,
                    source_type VARCHAR(10) NOT NULL,
                    kind VARCHAR(10) NOT NULL,
                    options JSON NOT NULL,
                    status VARCHAR(20) NOT NULL,
                    logs TEXT NOT NULL,
                    error_message TEXT,
                    created_at DATETIME,
                    started_at DATETIME,
                    completed_at DATETIME
                )
            """))
            conn.execute(text(
                "INSERT INTO app_domains (app_name, domain) VALUES ('demo', 'demo.example.com')"
            ))

        result = run_migrations(engine, Base)

        assert result.applied == 2
        assert "port" in _columns(engine, "app_domains")
        assert "archived" in _columns(engine, "deployment_jobs")
        # Tables missing from the old schema are created too
        assert "apps" in inspect(engine).get_table_names()
        with engine.connect() as conn:
            port = conn.execute(text("SELECT port FROM app_domains")).scalar()
        assert port == 3000

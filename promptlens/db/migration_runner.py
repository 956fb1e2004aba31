"""
Migration Runner - Runs Alembic migrations at application startup.

Only applies migrations when RUN_MIGRATIONS_ON_STARTUP is set; otherwise
deployments run `alembic upgrade head` themselves.
"""

from pathlib import Path

from sqlalchemy import Engine, create_engine

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from promptlens.config import settings
from promptlens.observability.logging import get_logger

logger = get_logger(__name__)

# Path to alembic.ini relative to project root
ALEMBIC_INI_PATH = Path(__file__).parent.parent.parent / "alembic.ini"


def get_sync_database_url() -> str:
    """Alembic's command API is synchronous: swap asyncpg for psycopg2."""
    return settings.database_url.replace("+asyncpg", "+psycopg2")


def _alembic_config() -> Config:
    alembic_cfg = Config(str(ALEMBIC_INI_PATH))
    alembic_cfg.set_main_option("sqlalchemy.url", get_sync_database_url().replace("%", "%%"))
    return alembic_cfg


def _get_current_revision(engine: Engine) -> str | None:
    with engine.connect() as conn:
        return MigrationContext.configure(conn).get_current_revision()


def _get_head_revision(alembic_cfg: Config) -> str | None:
    return ScriptDirectory.from_config(alembic_cfg).get_current_head()


def run_migrations() -> None:
    """
    Run pending Alembic migrations.

    Raises RuntimeError when an upgrade fails so the process does not start
    against a half-migrated schema.
    """
    if not ALEMBIC_INI_PATH.exists():
        logger.warning("alembic_config_missing", path=str(ALEMBIC_INI_PATH))
        return

    alembic_cfg = _alembic_config()
    engine = create_engine(get_sync_database_url())
    try:
        current = _get_current_revision(engine)
        head = _get_head_revision(alembic_cfg)

        if current == head:
            logger.info("database_schema_up_to_date", revision=current)
            return

        logger.info("running_migrations", from_revision=current, to_revision=head)
        command.upgrade(alembic_cfg, "head")
        logger.info("migrations_complete", revision=_get_current_revision(engine))
    except Exception as e:
        logger.error("migration_failed", error=str(e))
        raise RuntimeError(f"Database migration failed: {e}") from e
    finally:
        engine.dispose()

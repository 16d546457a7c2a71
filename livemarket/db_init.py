"""Schema bootstrap: wait for the database, then create (SQLite) or migrate (Postgres)."""

import logging
import time
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError

from livemarket.config import settings
from livemarket.models import Base
from livemarket.models.database import _normalize_database_url, engine

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parent.parent


def _ping(bind: Engine) -> None:
    with bind.connect() as conn:
        conn.execute(text("SELECT 1"))


def wait_for_db(retries: int, retry_delay_seconds: int) -> None:
    for attempt in range(1, retries + 1):
        try:
            _ping(engine)
        except OperationalError as exc:
            if attempt == retries:
                raise RuntimeError(
                    f"Database is unreachable after {retries} attempts. "
                    "Check DATABASE_URL and that the server accepts connections."
                ) from exc
            logger.warning(
                "Database not ready (attempt %s/%s), retrying in %ss: %s",
                attempt,
                retries,
                retry_delay_seconds,
                exc,
            )
            time.sleep(retry_delay_seconds)
        else:
            logger.info("Database reachable after %s attempt(s)", attempt)
            return


def alembic_config() -> Config:
    ini_path = PROJECT_ROOT / "alembic.ini"
    script_location = PROJECT_ROOT / "alembic"
    if not ini_path.exists() or not script_location.is_dir():
        raise RuntimeError(f"Alembic configuration not found under {PROJECT_ROOT}")
    config = Config(str(ini_path))
    config.set_main_option("script_location", str(script_location))
    config.set_main_option("sqlalchemy.url", _normalize_database_url(settings.DATABASE_URL))
    return config


def run_migrations() -> None:
    command.upgrade(alembic_config(), "head")
    missing = sorted(set(Base.metadata.tables) - set(inspect(engine).get_table_names()))
    if missing:
        raise RuntimeError(f"Migrations finished but tables are missing: {', '.join(missing)}")
    logger.info("Database schema is at head")


def init_db() -> None:
    wait_for_db(
        retries=settings.DB_CONNECT_RETRIES,
        retry_delay_seconds=settings.DB_CONNECT_RETRY_DELAY_SECONDS,
    )
    if settings.DATABASE_URL.startswith("sqlite"):
        # Tests and local runs skip Alembic.
        Base.metadata.create_all(bind=engine)
    else:
        run_migrations()

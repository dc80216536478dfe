from __future__ import annotations

from sqlalchemy import inspect, text

from tickq.core.logging import get_logger
from tickq.db.migrations import MIGRATIONS, apply_migrations
from tickq.db.models import Base
from tickq.db.session import get_engine

logger = get_logger(__name__)


def initialize_database() -> list[int]:
    """Create missing tables, apply pending migrations and return the versions applied now."""
    engine = get_engine()
    existing_tables = set(inspect(engine).get_table_names())
    Base.metadata.create_all(bind=engine)
    applied = apply_migrations(engine)

    if engine.url.drivername.startswith("sqlite"):
        with engine.connect() as conn:
            conn.execute(text("PRAGMA optimize;"))
            conn.commit()

    logger.info(
        "database_initialized",
        database=engine.url.render_as_string(hide_password=True),
        created_tables=sorted(set(Base.metadata.tables) - existing_tables),
        applied_migrations=applied,
        schema_version=MIGRATIONS[-1].version,
    )
    return applied

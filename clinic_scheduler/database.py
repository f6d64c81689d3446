from threading import Lock

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import declarative_base, sessionmaker

from clinic_scheduler.core import config


def _engine_options(database_url: str) -> dict:
    if database_url.startswith("sqlite"):
        # Post-commit writes arrive from the request threadpool.
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True}


engine = create_engine(config.DATABASE_URL, **_engine_options(config.DATABASE_URL))

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

Base = declarative_base()

_schema_lock = Lock()
_schema_checked = False


def ensure_schema() -> None:
    global _schema_checked

    if _schema_checked:
        return

    with _schema_lock:
        if _schema_checked:
            return

        # Register the tables on Base.metadata before creating them.
        from clinic_scheduler.models import appointment, availability  # noqa: F401

        Base.metadata.create_all(bind=engine)
        _add_missing_columns()
        _schema_checked = True


def _add_missing_columns() -> None:
    # create_all does not alter tables created by an earlier release.
    migration_steps = [
        ("availability_entries", "utc_offset_minutes", "ALTER TABLE availability_entries ADD COLUMN utc_offset_minutes INTEGER"),
        ("availability_entries", "revoked", "ALTER TABLE availability_entries ADD COLUMN revoked BOOLEAN NOT NULL DEFAULT FALSE"),
        ("appointments", "utc_offset_minutes", "ALTER TABLE appointments ADD COLUMN utc_offset_minutes INTEGER"),
    ]

    inspector = inspect(engine)
    existing_columns = {
        table_name: {column["name"] for column in inspector.get_columns(table_name)}
        for table_name in {table_name for table_name, _, _ in migration_steps}
    }

    with engine.begin() as connection:
        for table_name, column_name, statement in migration_steps:
            if column_name not in existing_columns[table_name]:
                connection.execute(text(statement))

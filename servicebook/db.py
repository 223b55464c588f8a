from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from .config import settings

connect_args = {}
if settings.DATABASE_URL.startswith("sqlite"):
    connect_args = {"check_same_thread": False}

engine = create_engine(settings.DATABASE_URL, echo=False, connect_args=connect_args)

if settings.DATABASE_URL.startswith("sqlite"):
    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.close()

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


class Base(DeclarativeBase):
    pass


# Columns that were added to service_points after the first release.
_SERVICE_POINT_LATE_COLUMNS = (
    ("region", "VARCHAR(120)"),
    ("city", "VARCHAR(120)"),
    ("service_posts", "JSON"),
    ("num_posts", "INTEGER"),
    ("status", "VARCHAR(32) NOT NULL DEFAULT 'active'"),
    ("deleted_at", "DATETIME"),
)


def _sqlite_table_exists(conn, table_name: str) -> bool:
    row = conn.execute(
        text("SELECT name FROM sqlite_master WHERE type='table' AND name = :name"),
        {"name": table_name},
    ).first()
    return row is not None


def _sqlite_table_has_column(conn, table_name: str, column_name: str) -> bool:
    rows = conn.execute(text(f"PRAGMA table_info({table_name})")).fetchall()
    return any(r[1] == column_name for r in rows)


def run_schema_migrations():
    if not settings.DATABASE_URL.startswith("sqlite"):
        return

    with engine.begin() as conn:
        if _sqlite_table_exists(conn, "service_points"):
            for column_name, ddl in _SERVICE_POINT_LATE_COLUMNS:
                if not _sqlite_table_has_column(conn, "service_points", column_name):
                    conn.execute(
                        text(f"ALTER TABLE service_points ADD COLUMN {column_name} {ddl}")
                    )

        if _sqlite_table_exists(conn, "bookings"):
            if not _sqlite_table_has_column(conn, "bookings", "service_point_id"):
                conn.execute(text("ALTER TABLE bookings ADD COLUMN service_point_id INTEGER"))
            if not _sqlite_table_has_column(conn, "bookings", "idempotency_key"):
                conn.execute(text("ALTER TABLE bookings ADD COLUMN idempotency_key VARCHAR(120)"))
                conn.execute(
                    text(
                        "CREATE UNIQUE INDEX IF NOT EXISTS uq_bookings_idempotency_key "
                        "ON bookings (idempotency_key)"
                    )
                )


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

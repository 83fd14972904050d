from __future__ import annotations

from sqlalchemy import create_engine, event
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from .config import DatabaseSettings, get_settings


class Base(DeclarativeBase):
    pass


def database_url(cfg: DatabaseSettings) -> str:
    if cfg.url:
        return cfg.url
    # Ensure absolute path for sqlite file.
    if cfg.path.startswith("sqlite:"):
        return cfg.path
    return f"sqlite:///{cfg.path}"


settings = get_settings()
_url = database_url(settings.database)
engine = create_engine(
    _url,
    connect_args={"check_same_thread": False} if _url.startswith("sqlite") else {},
    pool_pre_ping=True,
)


if _url.startswith("sqlite"):

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, connection_record):
        # Enforce foreign key constraints for ON DELETE CASCADE.
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

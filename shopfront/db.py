from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, text, event
from sqlalchemy.orm import sessionmaker, DeclarativeBase, Session
from sqlalchemy.pool import NullPool

from .config import DATABASE_URL, DB_SCHEMA

# sessions may be opened and closed on different worker threads
_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    DATABASE_URL,
    poolclass=NullPool,   # Lambda-friendly default
    pool_pre_ping=True,
    connect_args=_connect_args,
)

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


class Base(DeclarativeBase):
    pass


def _quote_ident(ident: str) -> str:
    return '"' + ident.replace('"', '""') + '"'


if DB_SCHEMA and engine.dialect.name == "postgresql":

    @event.listens_for(engine, "connect")
    def _set_search_path(dbapi_conn, _):
        schema = _quote_ident(DB_SCHEMA)
        cur = dbapi_conn.cursor()
        cur.execute(f"SET search_path TO {schema}")
        cur.close()


def init_schema():
    """
    Create the schema (Postgres) and tables.
    Prefer deploy-time migrations; keep for local/dev.
    """
    if DB_SCHEMA and engine.dialect.name == "postgresql":
        schema = _quote_ident(DB_SCHEMA)
        with engine.begin() as conn:
            conn.execute(text(f"CREATE SCHEMA IF NOT EXISTS {schema}"))
    Base.metadata.create_all(bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def transaction(db: Session) -> Iterator[Session]:
    """Commit on success, roll back everything on any exception."""
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise

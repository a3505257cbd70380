# database.py

from sqlalchemy import create_engine, event
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError
from sqlalchemy.orm import declarative_base, sessionmaker
from config import DATABASE_URL, SERVICE_DATABASE_URL


def _make_engine(url: str):
    connect_args = {}
    if url.startswith("sqlite"):
        # Request handlers and background threads share SQLite connections
        connect_args = {"check_same_thread": False, "timeout": 30}
    engine = create_engine(url, connect_args=connect_args, pool_pre_ping=True)
    if url.startswith("sqlite"):
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def service_credentials_valid(url: str = None) -> bool:
    """True when the privileged store URL is present and parses as a database URL."""
    candidate = SERVICE_DATABASE_URL if url is None else url
    if not candidate or any(ch.isspace() for ch in candidate):
        return False
    try:
        make_url(candidate)
    except ArgumentError:
        return False
    return True


# Engine for request handlers (client credential)
engine = _make_engine(DATABASE_URL)

# Engine for background and continuation work (service credential)
if service_credentials_valid() and SERVICE_DATABASE_URL != DATABASE_URL:
    service_engine = _make_engine(SERVICE_DATABASE_URL)
else:
    service_engine = engine

# Session factories
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
ServiceSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=service_engine)

# Base class for our database models
Base = declarative_base()

# Dependency for FastAPI to get a DB session
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy import create_engine
from .config import settings


def _connect_args(database_url: str) -> dict:
    # Bound every store call so a hung query surfaces as an OperationalError
    if database_url.startswith("sqlite"):
        return {"check_same_thread": False, "timeout": settings.store_timeout_seconds}
    if database_url.startswith("postgresql"):
        return {"options": f"-c statement_timeout={settings.store_timeout_seconds * 1000}"}
    return {}


def _engine_kwargs(database_url: str) -> dict:
    if database_url.startswith("sqlite"):
        return {}
    return {"pool_size": 5, "max_overflow": 10, "pool_recycle": 3600}


engine = create_engine(
    settings.database_url,
    future=True,
    pool_pre_ping=True,
    connect_args=_connect_args(settings.database_url),
    **_engine_kwargs(settings.database_url),
)

# IMPORTANT: do not use scoped_session with async frameworks; create a fresh Session per request
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy import create_engine
from .config import settings


def _connect_args(database_url: str) -> dict:
    # Bounded waits on locks/statements so no request blocks indefinitely
    if database_url.startswith("sqlite"):
        return {"check_same_thread": False, "timeout": settings.db_timeout_s}
    if database_url.startswith("postgresql"):
        return {
            "connect_timeout": settings.db_timeout_s,
            "options": f"-c statement_timeout={settings.db_timeout_s * 1000}",
        }
    return {}


def build_engine(database_url: str):
    kwargs = {}
    if not database_url.startswith("sqlite"):
        kwargs.update(pool_size=5, max_overflow=10, pool_timeout=settings.db_timeout_s)
    return create_engine(
        database_url,
        future=True,
        pool_pre_ping=True,
        pool_recycle=3600,  # Recycle connections after 1 hour
        connect_args=_connect_args(database_url),
        **kwargs,
    )


engine = build_engine(settings.database_url)

# IMPORTANT: do not use scoped_session with async frameworks; create a fresh Session per request
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

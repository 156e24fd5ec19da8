"""Database connection and session management."""

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from sntbilling.services.config import get_settings


def create_db_engine(database_url: str | None = None, echo: bool | None = None) -> Engine:
    """Create engine (SQLite uses StaticPool for simplicity in dev/test)."""
    settings = get_settings()
    url = database_url or settings.database_url
    echo = settings.database_echo if echo is None else echo

    if url.startswith("sqlite"):
        return create_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(url, echo=echo, pool_pre_ping=True)


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Session factory bound to the given engine."""
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def create_schema(engine: Engine) -> None:
    """Create all billing tables that do not exist yet."""
    from sntbilling.models import Base

    Base.metadata.create_all(bind=engine)


__all__ = [
    "create_db_engine",
    "create_session_factory",
    "create_schema",
]

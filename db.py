from collections.abc import Generator
from typing import Annotated

from fastapi import Depends
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine

from config import get_settings


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        options = {"connect_args": {"check_same_thread": False}}
        # in-memory databases live as long as their single connection
        if url in ("sqlite://", "sqlite:///:memory:"):
            options["poolclass"] = StaticPool
        return options
    return {"pool_pre_ping": True}


settings = get_settings()

engine = create_engine(
    settings.database_url,
    echo=settings.sql_echo,
    **_engine_options(settings.database_url),
)


def create_db_and_tables() -> None:
    """Create all tables in the database if they don't exist."""
    SQLModel.metadata.create_all(engine)


def dispose_engine() -> None:
    """Dispose of the engine and all connections."""
    engine.dispose()


def get_session() -> Generator[Session, None, None]:
    """Yield a database session for dependency injection."""
    with Session(engine) as session:
        yield session


SessionDep = Annotated[Session, Depends(get_session)]

import logging
from collections.abc import Generator

from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from app.core.config import settings

logger = logging.getLogger(__name__)


def _engine_kwargs(url: str) -> dict:
    if not url.startswith("sqlite"):
        return {"pool_pre_ping": True}
    kwargs: dict = {"connect_args": {"check_same_thread": False}}
    if url in ("sqlite://", "sqlite:///:memory:"):
        # One shared connection, otherwise every session sees an empty database.
        kwargs["poolclass"] = StaticPool
    return kwargs


engine = create_engine(
    settings.SQLALCHEMY_DATABASE_URI,
    **_engine_kwargs(settings.SQLALCHEMY_DATABASE_URI),
)


def init_db() -> None:
    # Tables should be created with migrations in production; create_all keeps
    # local and test databases in sync with the models.
    import app.models  # noqa: F401

    SQLModel.metadata.create_all(engine)
    logger.info("Database schema ready")


def get_session() -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from resumable_upload.config import settings


class Base(DeclarativeBase):
    pass


def build_engine(database_url: str) -> Engine:
    engine_kwargs: dict = {"future": True}
    if database_url.startswith("sqlite"):
        engine_kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
    built = create_engine(database_url, **engine_kwargs)
    if database_url.startswith("sqlite"):
        # ON DELETE CASCADE on received_chunks needs this on every connection.
        @event.listens_for(built, "connect")
        def _enable_sqlite_foreign_keys(dbapi_connection, _record) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return built


def build_session_factory(bind: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=bind, autoflush=False, autocommit=False, expire_on_commit=False, class_=Session)


def create_schema(bind: Engine) -> None:
    # Import for side effect: registers the tables on Base.metadata.
    from resumable_upload import models  # noqa: F401

    Base.metadata.create_all(bind=bind)


engine = build_engine(settings.database_url)
SessionLocal = build_session_factory(engine)

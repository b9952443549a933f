"""Database setup and session management."""

from sqlmodel import SQLModel, create_engine, Session

from config import get_config

# Engine is created lazily on first access
_engine = None


def get_engine():
    """Get or create the database engine."""
    global _engine
    if _engine is None:
        config = get_config()
        connect_args = {}
        if config.database.url.startswith("sqlite"):
            # Sessions are opened in the threadpool and used on the event loop
            connect_args["check_same_thread"] = False
        _engine = create_engine(config.database.url, echo=False, connect_args=connect_args)
    return _engine


def create_db_and_tables():
    """Create database tables on startup."""
    import models  # noqa: F401  registers the tables on SQLModel.metadata

    engine = get_engine()
    SQLModel.metadata.create_all(engine)


def get_db():
    """FastAPI dependency for database sessions."""
    engine = get_engine()
    with Session(engine) as session:
        yield session

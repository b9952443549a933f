"""Tests for database module."""

from sqlmodel import Session, select

from database import create_db_and_tables, get_db, get_engine
from models import Task


class TestDatabaseSetup:
    """Tests for database initialization."""

    def test_create_db_and_tables(self):
        # Idempotent
        create_db_and_tables()
        create_db_and_tables()

    def test_engine_is_cached(self):
        assert get_engine() is get_engine()

    def test_engine_uses_configured_url(self):
        assert str(get_engine().url) == "sqlite://"


class TestGetDbDependency:
    """Tests for FastAPI database dependency."""

    def test_get_db_yields_session(self):
        gen = get_db()
        session = next(gen)

        assert isinstance(session, Session)
        gen.close()

    def test_get_db_session_is_usable(self):
        create_db_and_tables()
        gen = get_db()
        session = next(gen)

        result = session.exec(select(Task)).all()
        assert isinstance(result, list)
        gen.close()

"""Tests for database naming, session helpers and multi-database management."""
from __future__ import annotations

import pytest
from sqlalchemy import text
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import tracker.db as db_mod
from tracker.db import (
    create_database,
    current_db_name,
    list_databases,
    make_engine,
    session_generator,
    session_scope,
    switch_db,
    validate_db_name,
)
from tracker.models import Base, Member


@pytest.fixture()
def engine():
    eng = make_engine("sqlite:///:memory:", poolclass=StaticPool)
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def wired(engine):
    """Point the module-level session factory at the in-memory engine."""
    orig_engine, orig_session = db_mod._engine, db_mod._SessionLocal
    db_mod._engine = engine
    db_mod._SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    yield engine
    db_mod._engine, db_mod._SessionLocal = orig_engine, orig_session


@pytest.fixture()
def data_dir(tmp_path, monkeypatch):
    monkeypatch.setenv("TRACKER_DATA_DIR", str(tmp_path))
    orig_path = db_mod._current_db_path
    yield tmp_path
    if db_mod._engine is not None:
        db_mod._engine.dispose()
    db_mod._current_db_path = orig_path


class TestValidateDbName:
    def test_valid_name(self):
        assert validate_db_name("design-team_2") == "design-team_2"

    def test_strips_whitespace(self):
        assert validate_db_name("  ops  ") == "ops"

    @pytest.mark.parametrize("name", ["", "   ", "my team!", "../etc"])
    def test_invalid_raises(self, name):
        with pytest.raises(ValueError, match="Invalid database name"):
            validate_db_name(name)


class TestSessionManagement:
    def test_session_scope(self, wired):
        with session_scope() as sess:
            assert isinstance(sess, Session)
            sess.add(Member(name="Scoped"))
            sess.commit()

    def test_session_scope_rollback(self, wired):
        with pytest.raises(ValueError):
            with session_scope() as sess:
                sess.add(Member(name="WillFail"))
                sess.flush()
                raise ValueError("boom")
        with session_scope() as sess:
            assert sess.query(Member).count() == 0

    def test_session_generator(self, wired):
        gen = session_generator()
        sess = next(gen)
        assert isinstance(sess, Session)
        gen.close()

    def test_foreign_keys_enforced(self, engine):
        with engine.connect() as conn:
            assert conn.execute(text("PRAGMA foreign_keys")).scalar() == 1


class TestDatabases:
    def test_switch_creates_and_lists(self, data_dir):
        switch_db("design")
        assert current_db_name() == "design"
        assert (data_dir / "design.db").exists()
        assert list_databases() == ["design"]

    def test_create_rejects_existing(self, data_dir):
        create_database("ops")
        with pytest.raises(ValueError, match="already exists"):
            create_database("ops")

    def test_switch_invalid(self, data_dir):
        with pytest.raises(ValueError):
            switch_db("no spaces allowed")

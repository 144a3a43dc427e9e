"""
Unit tests for the initial schema migration.
"""

import importlib.util
from pathlib import Path

import pytest
import sqlalchemy as sa
from alembic.migration import MigrationContext
from alembic.operations import Operations

from backlog.db.models import Job

MIGRATION = Path(__file__).resolve().parents[2] / "alembic" / "versions" / "001_initial_schema.py"


def _load_migration():
    spec = importlib.util.spec_from_file_location("initial_schema", MIGRATION)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture
def engine(tmp_path: Path):
    engine = sa.create_engine(f"sqlite:///{tmp_path / 'migration.db'}")
    yield engine
    engine.dispose()


def _run(engine: sa.Engine, step: str) -> None:
    migration = _load_migration()
    with engine.begin() as conn:
        with Operations.context(MigrationContext.configure(conn)):
            getattr(migration, step)()


class TestInitialSchema:
    def test_upgrade_matches_model(self, engine: sa.Engine):
        _run(engine, "upgrade")

        inspector = sa.inspect(engine)
        columns = {c["name"] for c in inspector.get_columns("delayed_jobs")}
        assert columns == {c.name for c in Job.__table__.columns}

        indexes = {i["name"] for i in inspector.get_indexes("delayed_jobs")}
        assert {"ix_delayed_jobs_poll", "ix_delayed_jobs_locked_by"} <= indexes

        unique = inspector.get_unique_constraints("delayed_jobs")
        assert [u["column_names"] for u in unique] == [["unique_key"]]

    def test_downgrade_drops_table(self, engine: sa.Engine):
        _run(engine, "upgrade")
        _run(engine, "downgrade")

        assert not sa.inspect(engine).has_table("delayed_jobs")

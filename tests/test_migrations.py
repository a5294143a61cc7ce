"""
Tests for the schema migration.
"""
import importlib
from typing import Any, Callable

import pytest
from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy import create_engine, inspect

from mpesa_payments.database.models import Base

migration = importlib.import_module(
    "mpesa_payments.database.migrations.versions.001_initial_schema"
)


def apply(engine: Any, step: Callable[[], None]) -> None:
    with engine.begin() as connection:
        with Operations.context(MigrationContext.configure(connection)):
            step()


@pytest.fixture
def engine(tmp_path: Any) -> Any:
    engine = create_engine(f"sqlite:///{tmp_path / 'migrations.db'}")
    yield engine
    engine.dispose()


class TestInitialSchema:
    """Test suite for revision 001."""

    @pytest.mark.unit
    def test_upgrade_matches_models(self, engine: Any) -> None:
        """Test that the migration creates the tables and columns the models map."""
        apply(engine, migration.upgrade)

        inspector = inspect(engine)
        assert sorted(inspector.get_table_names()) == sorted(Base.metadata.tables)
        for name, table in Base.metadata.tables.items():
            migrated = {c["name"] for c in inspector.get_columns(name)}
            assert migrated == {c.name for c in table.columns}, name

    @pytest.mark.unit
    def test_downgrade_removes_everything(self, engine: Any) -> None:
        apply(engine, migration.upgrade)
        apply(engine, migration.downgrade)

        assert inspect(engine).get_table_names() == []

"""
Schema migration tests: the Alembic revision must build the same tables as the models.
"""
import importlib.util
from pathlib import Path
from types import ModuleType

import pytest
import sqlalchemy as sa
from alembic.migration import MigrationContext
from alembic.operations import Operations

import tip_reconciliation.database as database
from tip_reconciliation.database.models import Base

MIGRATION = Path(database.__file__).parent / "migrations" / "versions" / "001_initial_schema.py"


def load_migration() -> ModuleType:
    spec = importlib.util.spec_from_file_location("initial_schema", MIGRATION)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class TestInitialMigration:
    @pytest.mark.integration
    def test_upgrade_matches_models_and_downgrade_drops(self) -> None:
        migration = load_migration()
        engine = sa.create_engine("sqlite://")

        with engine.begin() as conn:
            context = MigrationContext.configure(conn)
            with Operations.context(context):
                migration.upgrade()

            inspector = sa.inspect(conn)
            assert set(inspector.get_table_names()) == set(Base.metadata.tables)
            for name, table in Base.metadata.tables.items():
                migrated = {c["name"] for c in inspector.get_columns(name)}
                assert migrated == {c.name for c in table.columns}, name

            with Operations.context(context):
                migration.downgrade()

            assert sa.inspect(conn).get_table_names() == []

        engine.dispose()

    @pytest.mark.unit
    def test_revision_is_root(self) -> None:
        migration = load_migration()

        assert migration.revision == "001"
        assert migration.down_revision is None

from unittest.mock import MagicMock

from sqlalchemy import create_engine, text
from sqlalchemy.dialects import postgresql

from crm_backup.config import DatabaseSettings
from crm_backup.database import TableInspector, build_engine


def test_build_engine_targets_configured_postgres_database():
    engine = build_engine(
        DatabaseSettings(host="db.internal", port=6432, username="crm", password="p@ss", database_name="crm_prod")
    )

    assert engine.dialect.name == "postgresql"
    assert engine.url.host == "db.internal"
    assert engine.url.port == 6432
    assert engine.url.database == "crm_prod"
    assert engine.url.password == "p@ss"


def test_get_current_tables_lists_base_tables_of_the_schema(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'crm.db'}")
    with engine.begin() as connection:
        connection.execute(text("CREATE TABLE schools (id INTEGER PRIMARY KEY)"))
        connection.execute(text("CREATE TABLE contacts (id INTEGER PRIMARY KEY)"))
        connection.execute(text("CREATE VIEW school_names AS SELECT id FROM schools"))

    tables = TableInspector(engine, schema="main").get_current_tables()

    assert sorted(tables) == ["contacts", "schools"]


def test_drop_tables_quotes_identifiers_and_cascades():
    connection = MagicMock()
    engine = MagicMock()
    engine.dialect = postgresql.dialect()
    engine.connect.return_value.__enter__.return_value = connection

    TableInspector(engine).drop_tables(["schools", "Leads"])

    statements = [str(call.args[0]) for call in connection.execute.call_args_list]
    assert statements == [
        "DROP TABLE IF EXISTS public.schools CASCADE",
        'DROP TABLE IF EXISTS public."Leads" CASCADE',
    ]
    connection.begin.assert_called_once()

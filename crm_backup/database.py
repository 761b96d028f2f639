from typing import List

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine, URL
from sqlmodel import create_engine

from .config import DatabaseSettings
from .logger import get_logger

logger = get_logger(__name__)

SCHEMA = "public"


def build_engine(db: DatabaseSettings) -> Engine:
    url = URL.create(
        "postgresql+psycopg2",
        username=db.username,
        password=db.password,
        host=db.host,
        port=db.port,
        database=db.database_name,
    )
    return create_engine(url, pool_pre_ping=True)


class TableInspector:
    """Enumerates and drops base tables of the CRM schema."""

    def __init__(self, engine: Engine, schema: str = SCHEMA):
        self.engine = engine
        self.schema = schema

    def get_current_tables(self) -> List[str]:
        # A fresh Inspector each call, since Inspector caches reflection results
        return list(inspect(self.engine).get_table_names(schema=self.schema))

    def drop_tables(self, tables: List[str]) -> None:
        preparer = self.engine.dialect.identifier_preparer
        with self.engine.connect() as connection:
            with connection.begin():
                for table in tables:
                    qualified = f"{preparer.quote_schema(self.schema)}.{preparer.quote(table)}"
                    connection.execute(text(f"DROP TABLE IF EXISTS {qualified} CASCADE"))
                    logger.info(f"Dropped table: {table}")

import logging
from dataclasses import dataclass, field

from sqlalchemy import create_engine, text
from sqlalchemy.engine import URL
from sqlalchemy.pool import NullPool

from .schemas import DatabaseConfig

logger = logging.getLogger(__name__)

TRANSACTIONAL_ENGINES = ("InnoDB",)
NON_TRANSACTIONAL_ENGINES = ("MyISAM", "MEMORY", "CSV", "ARCHIVE", "FEDERATED", "MERGE", "BLACKHOLE")

_TRANSACTIONAL = {name.upper() for name in TRANSACTIONAL_ENGINES}
_NON_TRANSACTIONAL = {name.upper() for name in NON_TRANSACTIONAL_ENGINES}

TABLE_ENGINES_QUERY = text(
    "SELECT TABLE_NAME, ENGINE FROM information_schema.TABLES "
    "WHERE TABLE_SCHEMA = :schema AND TABLE_TYPE = 'BASE TABLE' "
    "ORDER BY TABLE_NAME"
)


@dataclass
class TableClassification:
    tables: list[str] = field(default_factory=list)
    excluded: list[str] = field(default_factory=list)


def split_tables(rows) -> TableClassification:
    result = TableClassification()
    for table_name, engine_name in rows:
        engine_key = (engine_name or "").upper()
        if engine_key in _NON_TRANSACTIONAL:
            result.excluded.append(table_name)
            continue
        if engine_key not in _TRANSACTIONAL:
            logger.warning(f"table_engine_unknown table={table_name} engine={engine_name}")
        result.tables.append(table_name)
    return result


def mysql_url(database_config: DatabaseConfig, database_name: str | None = None) -> URL:
    return URL.create(
        "mysql+pymysql",
        username=database_config.username,
        password=database_config.password,
        host=database_config.host,
        port=database_config.port,
        database=database_name,
    )


def classify_tables(database_config: DatabaseConfig, database_name: str) -> TableClassification:
    engine = create_engine(mysql_url(database_config, "information_schema"), poolclass=NullPool)
    try:
        with engine.connect() as conn:
            rows = conn.execute(TABLE_ENGINES_QUERY, {"schema": database_name}).all()
    finally:
        engine.dispose()
    result = split_tables(rows)
    logger.info(
        f"tables_classified database={database_name} tables={len(result.tables)} excluded={len(result.excluded)}"
    )
    return result

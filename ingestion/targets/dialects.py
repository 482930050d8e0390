"""
SQL dialects for the database import target.

Each dialect owns identifier quoting, the statements the target runs and
the mapping of driver errors onto ErrorKind. All statements use named
bind parameters (:p0, :p1, ...) so values never reach the SQL text.
"""

import asyncio
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Sequence, Tuple, Union

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.pool import StaticPool

from core.database import enable_sqlite_savepoints
from core.exceptions import ConfigurationError
from models.base import DatabaseType, ErrorKind

Statement = Tuple[str, Dict[str, Any]]

QUOTE_CHARS = "[]`\""
# MySQL client capability flag; makes rowcount report matched instead of changed rows
MYSQL_CLIENT_FOUND_ROWS = 2
SQL_NUMBER_RE = re.compile(r"\((-?\d+)\)")


def bind_name(index: int) -> str:
    return f"p{index}"


def bind_row(row: Dict[str, Any], columns: Sequence[str]) -> Dict[str, Any]:
    """Parameters for a statement built over columns, in the same order"""
    return {bind_name(i): row.get(column) for i, column in enumerate(columns)}


def bind_keys(keys: Sequence[str], delete_value: Optional[str] = None) -> Dict[str, Any]:
    params = {f"k{i}": key for i, key in enumerate(keys)}
    if delete_value is not None:
        params["delete_value"] = delete_value
    return params


class SqlDialect(ABC):
    """Statement builder and error classifier for one database family"""

    database_type: DatabaseType
    driver: str
    default_schema: Optional[str] = None
    upsert_needs_precheck = False

    # ========================================================================
    # Identifiers
    # ========================================================================

    @abstractmethod
    def quote(self, name: str) -> str:
        pass

    @staticmethod
    def split_table(table: str) -> Tuple[Optional[str], str]:
        """'dbo.[Orders]' -> ('dbo', 'Orders'). Existing quotes are stripped."""
        parts = table.split(".", 1)
        if len(parts) == 2:
            return parts[0].strip(QUOTE_CHARS), parts[1].strip(QUOTE_CHARS)
        return None, table.strip(QUOTE_CHARS)

    def qualify(self, table: str) -> str:
        schema, name = self.split_table(table)
        if schema:
            return f"{self.quote(schema)}.{self.quote(name)}"
        return self.quote(name)

    def async_url(self, url: str) -> str:
        """Add the async driver to a bare URL scheme (postgresql:// -> postgresql+asyncpg://)"""
        scheme, sep, rest = url.partition("://")
        if not sep or "+" in scheme:
            return url
        return f"{scheme}+{self.driver}://{rest}"

    # ========================================================================
    # Write statements
    # ========================================================================

    def insert_sql(self, table: str, columns: Sequence[str]) -> str:
        column_list = ", ".join(self.quote(c) for c in columns)
        values = ", ".join(f":{bind_name(i)}" for i in range(len(columns)))
        return f"INSERT INTO {self.qualify(table)} ({column_list}) VALUES ({values})"

    def update_sql(self, table: str, columns: Sequence[str], keys: Sequence[str]) -> str:
        """
        UPDATE non-key columns by key. Parameters come from bind_row over
        the same column list, so keys must be part of columns.
        """
        index = {column: i for i, column in enumerate(columns)}
        assignments = ", ".join(
            f"{self.quote(c)} = :{bind_name(index[c])}" for c in columns if c not in keys
        )
        if not assignments:
            first = self.quote(keys[0])
            assignments = f"{first} = {first}"
        condition = " AND ".join(f"{self.quote(k)} = :{bind_name(index[k])}" for k in keys)
        return f"UPDATE {self.qualify(table)} SET {assignments} WHERE {condition}"

    def exists_sql(self, table: str, columns: Sequence[str], keys: Sequence[str]) -> str:
        index = {column: i for i, column in enumerate(columns)}
        condition = " AND ".join(f"{self.quote(k)} = :{bind_name(index[k])}" for k in keys)
        return f"SELECT 1 FROM {self.qualify(table)} WHERE {condition}"

    @abstractmethod
    def upsert_sql(self, table: str, columns: Sequence[str], keys: Sequence[str]) -> str:
        pass

    @abstractmethod
    def interpret_upsert(self, result, existed: Optional[bool] = None) -> Tuple[int, int]:
        """(inserted, updated) for the result of one upsert statement"""

    def truncate_sql(self, table: str) -> str:
        return f"TRUNCATE TABLE {self.qualify(table)}"

    def delete_sql(self, table: str, key_column: str, count: int) -> str:
        keys = ", ".join(f":k{i}" for i in range(count))
        return f"DELETE FROM {self.qualify(table)} WHERE {self.quote(key_column)} IN ({keys})"

    def soft_delete_sql(self, table: str, key_column: str, delete_column: str, count: int) -> str:
        keys = ", ".join(f":k{i}" for i in range(count))
        return (
            f"UPDATE {self.qualify(table)} SET {self.quote(delete_column)} = :delete_value "
            f"WHERE {self.quote(key_column)} IN ({keys})"
        )

    # ========================================================================
    # Catalog
    # ========================================================================

    @abstractmethod
    def schema_sql(self, table: str) -> Statement:
        """
        Column catalog query. Rows are (name, data_type, is_nullable,
        is_primary_key, max_length, precision, scale).
        """

    def table_exists_sql(self, table: str) -> Statement:
        schema, name = self.split_table(table)
        schema = schema or self.default_schema
        sql = "SELECT COUNT(*) FROM INFORMATION_SCHEMA.TABLES WHERE TABLE_NAME = :table"
        params = {"table": name}
        if schema:
            sql += " AND TABLE_SCHEMA = :schema"
            params["schema"] = schema
        return sql, params

    # ========================================================================
    # Errors and engines
    # ========================================================================

    def classify_error(self, exc: BaseException) -> ErrorKind:
        """Map a driver error (possibly wrapped by SQLAlchemy) onto ErrorKind"""
        if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
            return ErrorKind.TIMEOUT

        orig = getattr(exc, "orig", None) or exc
        kind = self._classify_driver_error(orig)
        if kind is not None:
            return kind

        message = str(orig).lower()
        if "duplicate" in message or "unique" in message or "primary key" in message:
            return ErrorKind.CONSTRAINT
        if "timeout" in message or "timed out" in message:
            return ErrorKind.TIMEOUT
        if "type" in message or "conversion" in message:
            return ErrorKind.TYPE
        return ErrorKind.UNKNOWN

    def _classify_driver_error(self, orig: BaseException) -> Optional[ErrorKind]:
        return None

    def engine_options(self, url: str, command_timeout: int) -> Dict[str, Any]:
        """Keyword arguments for create_async_engine"""
        return {"pool_pre_ping": True}

    def configure_engine(self, engine: AsyncEngine) -> None:
        """Hook run once after the engine is created"""


# ============================================================================
# SQL Server
# ============================================================================

class SqlServerDialect(SqlDialect):
    database_type = DatabaseType.SQL_SERVER
    driver = "aioodbc"

    def quote(self, name: str) -> str:
        return "[" + name.replace("]", "]]") + "]"

    def upsert_sql(self, table: str, columns: Sequence[str], keys: Sequence[str]) -> str:
        value_columns = [c for c in columns if c not in keys]
        source = ", ".join(f":{bind_name(i)} AS {self.quote(c)}" for i, c in enumerate(columns))
        on_clause = " AND ".join(f"t.{self.quote(k)} = s.{self.quote(k)}" for k in keys)
        column_list = ", ".join(self.quote(c) for c in columns)
        value_list = ", ".join(f"s.{self.quote(c)}" for c in columns)

        sql = (
            f"MERGE INTO {self.qualify(table)} AS t "
            f"USING (SELECT {source}) AS s "
            f"ON ({on_clause}) "
        )
        if value_columns:
            assignments = ", ".join(f"t.{self.quote(c)} = s.{self.quote(c)}" for c in value_columns)
            sql += f"WHEN MATCHED THEN UPDATE SET {assignments} "
        sql += f"WHEN NOT MATCHED THEN INSERT ({column_list}) VALUES ({value_list}) OUTPUT $action;"
        return sql

    def interpret_upsert(self, result, existed: Optional[bool] = None) -> Tuple[int, int]:
        action = result.scalar()
        return (1, 0) if action == "INSERT" else (0, 1)

    def schema_sql(self, table: str) -> Statement:
        schema, name = self.split_table(table)
        schema_filter = " AND c.TABLE_SCHEMA = :schema" if schema else ""
        pk_schema_filter = " AND kcu.TABLE_SCHEMA = :schema" if schema else ""
        sql = (
            "SELECT c.COLUMN_NAME, c.DATA_TYPE, c.IS_NULLABLE, COALESCE(pk.is_pk, 0), "
            "c.CHARACTER_MAXIMUM_LENGTH, c.NUMERIC_PRECISION, c.NUMERIC_SCALE "
            "FROM INFORMATION_SCHEMA.COLUMNS c "
            "LEFT JOIN (SELECT kcu.COLUMN_NAME, 1 AS is_pk "
            "FROM INFORMATION_SCHEMA.TABLE_CONSTRAINTS tc "
            "JOIN INFORMATION_SCHEMA.KEY_COLUMN_USAGE kcu ON tc.CONSTRAINT_NAME = kcu.CONSTRAINT_NAME "
            f"WHERE tc.CONSTRAINT_TYPE = 'PRIMARY KEY' AND kcu.TABLE_NAME = :table{pk_schema_filter}) pk "
            "ON c.COLUMN_NAME = pk.COLUMN_NAME "
            f"WHERE c.TABLE_NAME = :table{schema_filter} "
            "ORDER BY c.ORDINAL_POSITION"
        )
        params = {"table": name}
        if schema:
            params["schema"] = schema
        return sql, params

    def _classify_driver_error(self, orig: BaseException) -> Optional[ErrorKind]:
        args = getattr(orig, "args", ())
        sqlstate = str(args[0]) if args else ""
        message = str(args[1]) if len(args) > 1 else str(orig)
        numbers = {int(n) for n in SQL_NUMBER_RE.findall(message)}

        if numbers & {2601, 2627}:
            return ErrorKind.CONSTRAINT
        if sqlstate == "HYT00" or -2 in numbers:
            return ErrorKind.TIMEOUT
        if numbers & {245, 8114} or sqlstate.startswith("22"):
            return ErrorKind.TYPE
        return None

    def engine_options(self, url: str, command_timeout: int) -> Dict[str, Any]:
        return {"pool_pre_ping": True, "connect_args": {"timeout": command_timeout}}


# ============================================================================
# MySQL / MariaDB
# ============================================================================

class MySqlDialect(SqlDialect):
    database_type = DatabaseType.MYSQL
    driver = "aiomysql"

    def quote(self, name: str) -> str:
        return "`" + name.replace("`", "``") + "`"

    def upsert_sql(self, table: str, columns: Sequence[str], keys: Sequence[str]) -> str:
        value_columns = [c for c in columns if c not in keys]
        if value_columns:
            assignments = ", ".join(f"{self.quote(c)} = VALUES({self.quote(c)})" for c in value_columns)
        else:
            first = self.quote(keys[0])
            assignments = f"{first} = {first}"
        return f"{self.insert_sql(table, columns)} ON DUPLICATE KEY UPDATE {assignments}"

    def interpret_upsert(self, result, existed: Optional[bool] = None) -> Tuple[int, int]:
        # 1 = inserted, 2 = updated, 0 = matched but unchanged (FOUND_ROWS cleared)
        return (1, 0) if result.rowcount == 1 else (0, 1)

    def truncate_sql(self, table: str) -> str:
        # TRUNCATE commits implicitly and would escape the replace transaction
        return f"DELETE FROM {self.qualify(table)}"

    def schema_sql(self, table: str) -> Statement:
        schema, name = self.split_table(table)
        sql = (
            "SELECT COLUMN_NAME, DATA_TYPE, IS_NULLABLE, IF(COLUMN_KEY = 'PRI', 1, 0), "
            "CHARACTER_MAXIMUM_LENGTH, NUMERIC_PRECISION, NUMERIC_SCALE "
            "FROM INFORMATION_SCHEMA.COLUMNS "
            "WHERE TABLE_NAME = :table AND TABLE_SCHEMA = COALESCE(:schema, DATABASE()) "
            "ORDER BY ORDINAL_POSITION"
        )
        return sql, {"table": name, "schema": schema}

    def table_exists_sql(self, table: str) -> Statement:
        schema, name = self.split_table(table)
        sql = (
            "SELECT COUNT(*) FROM INFORMATION_SCHEMA.TABLES "
            "WHERE TABLE_NAME = :table AND TABLE_SCHEMA = COALESCE(:schema, DATABASE())"
        )
        return sql, {"table": name, "schema": schema}

    def _classify_driver_error(self, orig: BaseException) -> Optional[ErrorKind]:
        args = getattr(orig, "args", ())
        errno = args[0] if args and isinstance(args[0], int) else None

        if errno == 1062:
            return ErrorKind.CONSTRAINT
        if errno in (1205, 3024):
            return ErrorKind.TIMEOUT
        if errno in (1264, 1292, 1366):
            return ErrorKind.TYPE
        return None

    def engine_options(self, url: str, command_timeout: int) -> Dict[str, Any]:
        return {
            "pool_pre_ping": True,
            "connect_args": {
                "connect_timeout": command_timeout,
                "init_command": f"SET SESSION innodb_lock_wait_timeout = {int(command_timeout)}",
            },
        }

    def configure_engine(self, engine: AsyncEngine) -> None:
        event.listen(engine.sync_engine, "do_connect", clear_found_rows)


def clear_found_rows(dialect, connection_record, cargs, cparams):
    """
    do_connect hook: drop the FOUND_ROWS capability SQLAlchemy requests
    for MySQL drivers, so an upsert of an unchanged row reports 0 rows.
    """
    cparams["client_flag"] = cparams.get("client_flag", 0) & ~MYSQL_CLIENT_FOUND_ROWS


# ============================================================================
# PostgreSQL
# ============================================================================

class PostgresDialect(SqlDialect):
    database_type = DatabaseType.POSTGRES
    driver = "asyncpg"
    default_schema = "public"

    def quote(self, name: str) -> str:
        return '"' + name.replace('"', '""') + '"'

    def upsert_sql(self, table: str, columns: Sequence[str], keys: Sequence[str]) -> str:
        value_columns = [c for c in columns if c not in keys]
        key_list = ", ".join(self.quote(k) for k in keys)
        if value_columns:
            assignments = ", ".join(f"{self.quote(c)} = EXCLUDED.{self.quote(c)}" for c in value_columns)
            action = f"DO UPDATE SET {assignments}"
        else:
            action = "DO NOTHING"
        return f"{self.insert_sql(table, columns)} ON CONFLICT ({key_list}) {action} RETURNING xmax"

    def interpret_upsert(self, result, existed: Optional[bool] = None) -> Tuple[int, int]:
        # xmax is 0 for a freshly inserted tuple; DO NOTHING returns no row
        row = result.first()
        if row is None:
            return 0, 1
        return (1, 0) if int(row[0]) == 0 else (0, 1)

    def schema_sql(self, table: str) -> Statement:
        schema, name = self.split_table(table)
        sql = (
            "SELECT c.column_name, c.data_type, c.is_nullable, "
            "CASE WHEN pk.column_name IS NOT NULL THEN 1 ELSE 0 END, "
            "c.character_maximum_length, c.numeric_precision, c.numeric_scale "
            "FROM information_schema.columns c "
            "LEFT JOIN (SELECT kcu.column_name "
            "FROM information_schema.table_constraints tc "
            "JOIN information_schema.key_column_usage kcu "
            "ON tc.constraint_name = kcu.constraint_name AND tc.table_schema = kcu.table_schema "
            "WHERE tc.constraint_type = 'PRIMARY KEY' "
            "AND kcu.table_name = :table AND kcu.table_schema = :schema) pk "
            "ON c.column_name = pk.column_name "
            "WHERE c.table_name = :table AND c.table_schema = :schema "
            "ORDER BY c.ordinal_position"
        )
        return sql, {"table": name, "schema": schema or self.default_schema}

    def table_exists_sql(self, table: str) -> Statement:
        schema, name = self.split_table(table)
        sql = "SELECT COUNT(*) FROM pg_tables WHERE tablename = :table AND schemaname = :schema"
        return sql, {"table": name, "schema": schema or self.default_schema}

    def _classify_driver_error(self, orig: BaseException) -> Optional[ErrorKind]:
        code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
        if not code:
            return None
        if code == "23505":
            return ErrorKind.CONSTRAINT
        if code == "57014":
            return ErrorKind.TIMEOUT
        if code.startswith("22") or code == "42804":
            return ErrorKind.TYPE
        return None

    def engine_options(self, url: str, command_timeout: int) -> Dict[str, Any]:
        return {
            "pool_pre_ping": True,
            "connect_args": {
                "command_timeout": command_timeout,
                "server_settings": {"statement_timeout": str(int(command_timeout) * 1000)},
            },
        }


# ============================================================================
# SQLite
# ============================================================================

class SqliteDialect(SqlDialect):
    """Local stores and tests. Upsert outcome comes from a pre-check SELECT."""

    database_type = DatabaseType.SQLITE
    driver = "aiosqlite"
    upsert_needs_precheck = True

    def quote(self, name: str) -> str:
        return '"' + name.replace('"', '""') + '"'

    def qualify(self, table: str) -> str:
        _, name = self.split_table(table)
        return self.quote(name)

    def upsert_sql(self, table: str, columns: Sequence[str], keys: Sequence[str]) -> str:
        value_columns = [c for c in columns if c not in keys]
        key_list = ", ".join(self.quote(k) for k in keys)
        if value_columns:
            assignments = ", ".join(f"{self.quote(c)} = excluded.{self.quote(c)}" for c in value_columns)
            action = f"DO UPDATE SET {assignments}"
        else:
            action = "DO NOTHING"
        return f"{self.insert_sql(table, columns)} ON CONFLICT ({key_list}) {action}"

    def interpret_upsert(self, result, existed: Optional[bool] = None) -> Tuple[int, int]:
        return (0, 1) if existed else (1, 0)

    def truncate_sql(self, table: str) -> str:
        return f"DELETE FROM {self.qualify(table)}"

    def schema_sql(self, table: str) -> Statement:
        _, name = self.split_table(table)
        sql = (
            "SELECT name, type, CASE WHEN \"notnull\" = 1 THEN 'NO' ELSE 'YES' END, "
            "CASE WHEN pk > 0 THEN 1 ELSE 0 END, NULL, NULL, NULL "
            "FROM pragma_table_info(:table) ORDER BY cid"
        )
        return sql, {"table": name}

    def table_exists_sql(self, table: str) -> Statement:
        _, name = self.split_table(table)
        return "SELECT COUNT(*) FROM sqlite_master WHERE type = 'table' AND name = :table", {"table": name}

    def _classify_driver_error(self, orig: BaseException) -> Optional[ErrorKind]:
        name = getattr(orig, "sqlite_errorname", None)
        if name in ("SQLITE_CONSTRAINT_UNIQUE", "SQLITE_CONSTRAINT_PRIMARYKEY"):
            return ErrorKind.CONSTRAINT
        if name in ("SQLITE_BUSY", "SQLITE_LOCKED"):
            return ErrorKind.TIMEOUT
        if name in ("SQLITE_MISMATCH", "SQLITE_CONSTRAINT_DATATYPE"):
            return ErrorKind.TYPE
        return None

    def engine_options(self, url: str, command_timeout: int) -> Dict[str, Any]:
        options: Dict[str, Any] = {"connect_args": {"check_same_thread": False, "timeout": command_timeout}}
        if ":memory:" in url:
            options["poolclass"] = StaticPool
        return options

    def configure_engine(self, engine: AsyncEngine) -> None:
        enable_sqlite_savepoints(engine)


DIALECTS = {
    DatabaseType.SQL_SERVER: SqlServerDialect,
    DatabaseType.MYSQL: MySqlDialect,
    DatabaseType.POSTGRES: PostgresDialect,
    DatabaseType.SQLITE: SqliteDialect,
}


def get_dialect(database_type: Union[DatabaseType, str]) -> SqlDialect:
    """
    Dialect for a configured database type. Accepts aliases such as
    MSSQL, MariaDB and Postgres.

    Raises:
        ConfigurationError: If the type is not supported
    """
    try:
        kind = DatabaseType(database_type)
    except ValueError:
        raise ConfigurationError(
            f"Unsupported database type: {database_type}",
            context={"field": "target_database_type"}
        )
    return DIALECTS[kind]()
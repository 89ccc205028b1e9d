import logging
from contextlib import contextmanager

import sqlalchemy as sa
from sqlalchemy import create_engine, text
from sqlalchemy.engine import URL
from sqlalchemy.exc import DBAPIError
from sqlalchemy.pool import NullPool

from cloning.errors import ConnectionFailedError, ConnectionLostError
from cloning.models import ColumnInfo
from helpers import config

logger = logging.getLogger(__name__)

# Client error codes for a dropped server connection
LOST_CONNECTION_CODES = {2006, 2013, 2055}

# SHOW CREATE result column per object kind
_CREATE_COLUMNS = {
    "TABLE": "Create Table",
    "VIEW": "Create View",
    "PROCEDURE": "Create Procedure",
    "FUNCTION": "Create Function",
}


def quote_identifier(name):
    return "`" + str(name).replace("`", "``") + "`"


def build_url(profile, database=None):
    return URL.create(
        "mysql+pymysql",
        username=profile.user,
        password=profile.password or None,
        host=profile.host,
        port=profile.port,
        database=database,
        query={"charset": "utf8mb4"},
    )


def is_connection_lost(err):
    if not isinstance(err, DBAPIError):
        return False
    if err.connection_invalidated:
        return True
    args = getattr(err.orig, "args", ())
    return bool(args) and args[0] in LOST_CONNECTION_CODES


class MySQLConnection:
    """One dedicated server connection plus the catalog queries the clone needs.

    The engine uses ``NullPool`` so closing the connection really closes the
    socket, and ``AUTOCOMMIT`` so session settings such as the read-only flag
    cover every statement that follows.
    """

    def __init__(self, profile):
        self.profile = profile
        self.engine = None
        self.conn = None
        self.database = None

    # Lifecycle

    def open(self, database=None):
        self.engine = create_engine(
            build_url(self.profile, database),
            poolclass=NullPool,
            isolation_level="AUTOCOMMIT",
            connect_args={
                "connect_timeout": config.DB_CONNECT_TIMEOUT,
                "read_timeout": config.DB_READ_TIMEOUT,
                "write_timeout": config.DB_WRITE_TIMEOUT,
            },
        )
        try:
            self.conn = self.engine.connect()
        except DBAPIError as e:
            self.engine.dispose()
            self.engine = None
            raise ConnectionFailedError(self.profile, e.orig) from e
        self.database = database
        logger.debug("Connected to %s", self.profile.describe())
        return self

    def close(self):
        conn, engine = self.conn, self.engine
        self.conn = None
        self.engine = None
        if conn is not None:
            try:
                conn.close()
            except Exception as e:
                logger.warning("Error closing connection to %s: %s", self.profile.describe(), e)
        if engine is not None:
            engine.dispose()

    @property
    def closed(self):
        return self.conn is None

    # Statement helpers

    @contextmanager
    def _translate_errors(self):
        try:
            yield
        except DBAPIError as e:
            if is_connection_lost(e):
                raise ConnectionLostError(
                    f"Lost connection to {self.profile.role.value} database: {e.orig}"
                ) from e
            raise

    def run(self, statement):
        """Execute raw SQL exactly as written (no bind parameter parsing)."""
        with self._translate_errors():
            return self.conn.execution_options(no_parameters=True).exec_driver_sql(statement)

    def fetch_all(self, query, **params):
        with self._translate_errors():
            result = self.conn.execute(text(query), params)
            return [dict(row) for row in result.mappings()]

    def scalar(self, query, **params):
        with self._translate_errors():
            return self.conn.execute(text(query), params).scalar()

    # Session settings

    def set_session_read_only(self):
        self.run("SET SESSION TRANSACTION READ ONLY")

    def session_read_only(self):
        try:
            value = self.scalar("SELECT @@SESSION.transaction_read_only")
        except ConnectionLostError:
            raise
        except DBAPIError:
            # Servers older than 5.7.20 only know the tx_ prefixed name
            value = self.scalar("SELECT @@SESSION.tx_read_only")
        return bool(int(value or 0))

    def create_database(self, name, charset, collation):
        self.run(
            f"CREATE DATABASE IF NOT EXISTS {quote_identifier(name)} "
            f"CHARACTER SET {charset} COLLATE {collation}"
        )

    def use_database(self, name):
        self.run(f"USE {quote_identifier(name)}")
        self.database = name

    def set_sql_mode(self, mode):
        self.run(f"SET SESSION sql_mode = '{mode}'")

    def set_foreign_key_checks(self, enabled):
        self.run(f"SET FOREIGN_KEY_CHECKS = {1 if enabled else 0}")

    def collations(self):
        return {row["Collation"] for row in self.fetch_all("SHOW COLLATION")}

    # Catalog

    def list_base_tables(self, database):
        rows = self.fetch_all(
            "SELECT TABLE_NAME AS name FROM INFORMATION_SCHEMA.TABLES "
            "WHERE TABLE_SCHEMA = :schema AND TABLE_TYPE = 'BASE TABLE' ORDER BY TABLE_NAME",
            schema=database,
        )
        return [row["name"] for row in rows]

    def list_views(self, database):
        rows = self.fetch_all(
            "SELECT TABLE_NAME AS name FROM INFORMATION_SCHEMA.VIEWS "
            "WHERE TABLE_SCHEMA = :schema ORDER BY TABLE_NAME",
            schema=database,
        )
        return [row["name"] for row in rows]

    def list_routines(self, database, kind):
        rows = self.fetch_all(
            "SELECT ROUTINE_NAME AS name FROM INFORMATION_SCHEMA.ROUTINES "
            "WHERE ROUTINE_SCHEMA = :schema AND ROUTINE_TYPE = :kind ORDER BY ROUTINE_NAME",
            schema=database,
            kind=kind,
        )
        return [row["name"] for row in rows]

    def show_create(self, kind, name):
        with self._translate_errors():
            result = self.run(f"SHOW CREATE {kind} {quote_identifier(name)}")
            row = result.mappings().first()
        statement = row.get(_CREATE_COLUMNS[kind]) if row else None
        if not statement:
            # Routines come back with a NULL body when the user lacks privileges
            raise LookupError(f"No definition returned for {kind.lower()} {name}")
        return statement

    def drop(self, kind, name):
        self.run(f"DROP {kind} IF EXISTS {quote_identifier(name)}")

    def table_columns(self, database, table):
        rows = self.fetch_all(
            "SELECT COLUMN_NAME AS name, DATA_TYPE AS data_type FROM INFORMATION_SCHEMA.COLUMNS "
            "WHERE TABLE_SCHEMA = :schema AND TABLE_NAME = :table ORDER BY ORDINAL_POSITION",
            schema=database,
            table=table,
        )
        return [ColumnInfo(row["name"], row["data_type"]) for row in rows]

    def primary_key_columns(self, database, table):
        rows = self.fetch_all(
            "SELECT COLUMN_NAME AS name FROM INFORMATION_SCHEMA.KEY_COLUMN_USAGE "
            "WHERE TABLE_SCHEMA = :schema AND TABLE_NAME = :table AND CONSTRAINT_NAME = 'PRIMARY' "
            "ORDER BY ORDINAL_POSITION",
            schema=database,
            table=table,
        )
        return [row["name"] for row in rows]

    # Data

    def count_rows(self, table):
        query = sa.select(sa.func.count()).select_from(sa.table(table))
        with self._translate_errors():
            return int(self.conn.execute(query).scalar() or 0)

    def read_rows(self, descriptor, limit, offset):
        query = (
            sa.select(*[sa.column(name) for name in descriptor.column_names])
            .select_from(sa.table(descriptor.name))
            .order_by(*[sa.column(name) for name in descriptor.ordering_columns])
            .limit(limit)
            .offset(offset)
        )
        with self._translate_errors():
            return [dict(row) for row in self.conn.execute(query).mappings()]

    def insert_rows(self, table, columns, rows):
        """Insert all ``rows`` with a single multi-row INSERT statement."""
        target = sa.table(table, *[sa.column(name) for name in columns])
        with self._translate_errors():
            self.conn.execute(sa.insert(target).values(rows))

    def insert_row(self, table, columns, row):
        target = sa.table(table, *[sa.column(name) for name in columns])
        with self._translate_errors():
            self.conn.execute(sa.insert(target).values(row))

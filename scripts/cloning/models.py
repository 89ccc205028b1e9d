"""Value objects shared by the clone engine, the scheduler and the web layer."""

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple


DEFAULT_PORT = 3306


class Role(str, enum.Enum):
    SOURCE = "source"
    TARGET = "target"


@dataclass(frozen=True)
class ConnectionProfile:
    host: str
    user: str
    password: str = field(default="", repr=False)
    port: int = DEFAULT_PORT
    database: Optional[str] = None
    role: Role = Role.TARGET

    @classmethod
    def from_dict(cls, data, role):
        if not isinstance(data, dict):
            raise ValueError(f"{Role(role).value} credentials are required")
        missing = [key for key in ("host", "user") if not data.get(key)]
        if missing:
            raise ValueError(f"{Role(role).value} credentials are missing: {', '.join(missing)}")
        return cls(
            host=str(data["host"]),
            user=str(data["user"]),
            password=str(data.get("password") or ""),
            port=int(data.get("port") or DEFAULT_PORT),
            database=data.get("database") or None,
            role=Role(role),
        )

    def to_dict(self, include_secret=True):
        data = {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "database": self.database,
        }
        if include_secret:
            data["password"] = self.password
        return data

    @property
    def is_source(self):
        return self.role is Role.SOURCE

    def describe(self):
        # Safe for logs: never includes the secret
        return f"{self.user}@{self.host}:{self.port}/{self.database or ''}"


class ValueKind(str, enum.Enum):
    NULL = "null"
    TEXT = "text"
    NUMBER = "number"
    BINARY = "binary"
    TEMPORAL = "temporal"
    # Declared type not recognised; values pass through untouched
    OTHER = "other"


_TEXT_TYPES = {
    "char", "varchar", "tinytext", "text", "mediumtext", "longtext",
    "enum", "set", "json",
}
_NUMBER_TYPES = {
    "tinyint", "smallint", "mediumint", "int", "integer", "bigint",
    "decimal", "numeric", "float", "double", "real",
}
_BINARY_TYPES = {
    "binary", "varbinary", "tinyblob", "blob", "mediumblob", "longblob", "bit",
    "geometry", "point", "linestring", "polygon", "multipoint",
    "multilinestring", "multipolygon", "geometrycollection",
}
_TEMPORAL_TYPES = {"date", "datetime", "timestamp", "time", "year"}


def kind_for_data_type(data_type):
    """Map an INFORMATION_SCHEMA ``DATA_TYPE`` to the value kind used for inserts."""
    name = (data_type or "").lower()
    if name in _TEXT_TYPES:
        return ValueKind.TEXT
    if name in _NUMBER_TYPES:
        return ValueKind.NUMBER
    if name in _BINARY_TYPES:
        return ValueKind.BINARY
    if name in _TEMPORAL_TYPES:
        return ValueKind.TEMPORAL
    return ValueKind.OTHER


@dataclass(frozen=True)
class ColumnInfo:
    name: str
    data_type: str

    @property
    def kind(self):
        return kind_for_data_type(self.data_type)


@dataclass(frozen=True)
class TableDescriptor:
    name: str
    columns: Tuple[ColumnInfo, ...]
    ordering_columns: Tuple[str, ...]

    @property
    def column_names(self):
        return [column.name for column in self.columns]


class CopyStatus(str, enum.Enum):
    OK = "ok"
    MISMATCH = "mismatch"


@dataclass(frozen=True)
class BatchCopyResult:
    table_name: str
    expected_rows: int
    copied_rows: int
    failed_rows: int
    source_rows: int
    target_rows: int

    @property
    def status(self):
        if self.source_rows == self.target_rows:
            return CopyStatus.OK
        return CopyStatus.MISMATCH

    def to_dict(self):
        return {
            "tableName": self.table_name,
            "expectedRows": self.expected_rows,
            "copiedRows": self.copied_rows,
            "failedRows": self.failed_rows,
            "sourceRows": self.source_rows,
            "targetRows": self.target_rows,
            "status": self.status.value,
        }


@dataclass(frozen=True)
class CloneResult:
    tables_cloned: int
    views_cloned: int
    procedures_cloned: int
    functions_cloned: int
    success: bool
    error: Optional[str] = None
    tables: Tuple[BatchCopyResult, ...] = ()
    warnings: int = 0
    duration_seconds: float = 0.0

    @property
    def failed_rows(self):
        return sum(table.failed_rows for table in self.tables)

    def to_dict(self):
        return {
            "tablesCloned": self.tables_cloned,
            "viewsCloned": self.views_cloned,
            "proceduresCloned": self.procedures_cloned,
            "functionsCloned": self.functions_cloned,
            "success": self.success,
            "error": self.error,
            "warnings": self.warnings,
            "failedRows": self.failed_rows,
            "durationSeconds": round(self.duration_seconds, 3),
            "tables": [table.to_dict() for table in self.tables],
        }


class CloneState(str, enum.Enum):
    CONNECTING_SOURCE = "connecting_source"
    ENFORCING_READ_ONLY = "enforcing_read_only"
    CONNECTING_TARGET = "connecting_target"
    REPLICATING_SCHEMA = "replicating_schema"
    COPYING_TABLES = "copying_tables"
    REPLICATING_ROUTINES = "replicating_routines"
    FINALIZING = "finalizing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class Level(str, enum.Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class ProgressEvent:
    stage: str
    message: str
    status: str = "progress"
    level: Level = Level.INFO
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self):
        return self.status in ("success", "error")

    def to_wire(self):
        return {
            "status": self.status,
            "message": self.message,
            "level": self.level.value,
            "stage": self.stage,
        }


def summarize(results: List[BatchCopyResult]):
    return {
        "expected": sum(r.expected_rows for r in results),
        "copied": sum(r.copied_rows for r in results),
        "failed": sum(r.failed_rows for r in results),
    }

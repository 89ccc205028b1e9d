import json
import logging

from cloning.errors import ConnectionLostError
from cloning.models import BatchCopyResult, Level, TableDescriptor, ValueKind

logger = logging.getLogger(__name__)

# Rows per window; one SELECT and one multi-row INSERT each
BATCH_SIZE = 500
PROGRESS_EVERY = 1000


def error_text(err, limit):
    # SQLAlchemy errors embed the whole statement; the driver message is enough
    return str(getattr(err, "orig", None) or err)[:limit]


def _to_json(value):
    return json.dumps(value, ensure_ascii=False, default=str)


def serialize_value(kind, value):
    """Convert one column value to what the target column should receive."""
    if value is None:
        return None
    if isinstance(value, (dict, list)):
        text_value = _to_json(value)
        return text_value.encode("utf-8") if kind is ValueKind.BINARY else text_value
    if kind is ValueKind.TEXT and isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).decode("utf-8", errors="replace")
    return value


def serialize_row(descriptor, row):
    return {column.name: serialize_value(column.kind, row.get(column.name)) for column in descriptor.columns}


class BatchRowCopier:
    """Copies one table's rows in ordered windows and verifies the counts."""

    def __init__(self, source, target, emit, batch_size=BATCH_SIZE):
        self.source = source
        self.target = target
        self.emit = emit
        self.batch_size = batch_size

    def describe_table(self, name):
        database = self.source.profile.database
        columns = tuple(self.source.table_columns(database, name))
        if not columns:
            raise LookupError(f"Table {name} has no columns on source")
        ordering = self.source.primary_key_columns(database, name)
        if not ordering:
            # Not unique, only keeps LIMIT/OFFSET windows stable
            ordering = [columns[0].name]
        return TableDescriptor(name=name, columns=columns, ordering_columns=tuple(ordering))

    def copy_table(self, name):
        descriptor = self.describe_table(name)
        columns = descriptor.column_names

        expected = self.source.count_rows(name)
        self.emit("table", f"  {name}: {expected} rows to copy", table=name, expected=expected)

        offset = 0
        copied = 0
        failed = 0
        while True:
            rows = self.source.read_rows(descriptor, self.batch_size, offset)
            if not rows:
                break

            batch = [serialize_row(descriptor, row) for row in rows]
            try:
                self.target.insert_rows(name, columns, batch)
                copied += len(batch)
            except ConnectionLostError:
                raise
            except Exception as e:
                self.emit("table", f"  {name}: Batch insert failed, trying row by row...",
                          level=Level.WARNING, table=name)
                self.emit("table", f"  Error: {error_text(e, 150)}", level=Level.WARNING, table=name)
                for index, row in enumerate(batch):
                    try:
                        self.target.insert_row(name, columns, row)
                        copied += 1
                    except ConnectionLostError:
                        raise
                    except Exception as row_error:
                        failed += 1
                        self.emit("table", f"  ⚠️ Row {offset + index + 1} failed: {error_text(row_error, 100)}",
                                  level=Level.WARNING, table=name, row=offset + index + 1)

            offset += len(rows)
            if offset % PROGRESS_EVERY == 0 or offset == expected:
                self.emit("table", f"  {name}: {offset}/{expected} rows processed...",
                          table=name, offset=offset, expected=expected)

            if len(rows) < self.batch_size or offset >= expected:
                break

        if failed:
            self.emit("table", f"  ⚠️ {name}: {failed} rows failed to copy!", level=Level.WARNING,
                      table=name, failed=failed)

        return self.verify(name, expected, copied, failed)

    def verify(self, name, expected, copied, failed):
        source_rows = self.source.count_rows(name)
        target_rows = self.target.count_rows(name)
        result = BatchCopyResult(
            table_name=name,
            expected_rows=expected,
            copied_rows=copied,
            failed_rows=failed,
            source_rows=source_rows,
            target_rows=target_rows,
        )
        if source_rows != target_rows:
            self.emit("verify",
                      f"  ⚠️ WARNING: {name} mismatch! Source: {source_rows}, Target: {target_rows}, Copied: {copied}",
                      level=Level.WARNING, **result.to_dict())
        else:
            self.emit("verify", f"  ✓ {name}: {target_rows} rows copied successfully",
                      level=Level.SUCCESS, **result.to_dict())
        return result

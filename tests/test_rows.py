import json

import pytest

from cloning.errors import ConnectionLostError
from cloning.models import CopyStatus, Level, ValueKind, kind_for_data_type
from cloning.rows import BatchRowCopier, serialize_value
from fakes import FakeTable


def _emit_into(events):
    def emit(stage, message, level=Level.INFO, **data):
        events.append((stage, message, level, data))
    return emit


@pytest.fixture
def connections(connection_factory, source_profile, target_profile):
    source = connection_factory(source_profile).open("shop")
    target = connection_factory(target_profile).open()
    target.create_database("shop_copy", "utf8mb4", "utf8mb4_unicode_ci")
    target.use_database("shop_copy")
    return source, target


def _prepare(source_server, target_server, table):
    source_server.database("shop").add_table(table)
    target_server.database("shop_copy").add_table(table.empty_copy())


def test_composite_key_table_copies_in_full_batches(source_server, target_server, connections, events):
    rows = [
        {"customer_id": customer, "order_id": order, "total": f"{customer}.{order}"}
        for customer in range(50) for order in range(50)
    ]
    orders = FakeTable("orders", [("customer_id", "int"), ("order_id", "int"), ("total", "decimal")],
                       primary_key=["customer_id", "order_id"], rows=rows)
    _prepare(source_server, target_server, orders)
    source, target = connections

    result = BatchRowCopier(source, target, _emit_into(events), batch_size=500).copy_table("orders")

    assert result.expected_rows == 2500
    assert result.copied_rows == 2500
    assert result.failed_rows == 0
    assert (result.source_rows, result.target_rows) == (2500, 2500)
    assert result.status is CopyStatus.OK
    assert [offset for _, _, offset, _ in source_server.reads] == [0, 500, 1000, 1500, 2000]
    assert {ordering for _, _, _, ordering in source_server.reads} == {("customer_id", "order_id")}
    assert target_server.batch_inserts == [("orders", 500)] * 5
    assert any("orders: 2500 rows copied successfully" in message for _, message, _, _ in events)


def test_single_bad_row_falls_back_to_row_by_row(source_server, target_server, connections, events):
    rows = [{"id": i, "code": "x" * (20 if i == 137 else 5)} for i in range(1, 501)]
    items = FakeTable("items", [("id", "int"), ("code", "varchar")], primary_key=["id"], rows=rows,
                      max_lengths={"code": 10})
    _prepare(source_server, target_server, items)
    source, target = connections

    result = BatchRowCopier(source, target, _emit_into(events)).copy_table("items")

    assert result.copied_rows == 499
    assert result.failed_rows == 1
    assert result.status is CopyStatus.MISMATCH
    warnings = [message for _, message, level, _ in events if level is Level.WARNING]
    assert any("Batch insert failed, trying row by row" in message for message in warnings)
    assert any("Row 137 failed" in message for message in warnings)
    assert [data["row"] for _, _, _, data in events if "row" in data] == [137]
    assert any("1 rows failed to copy" in message for message in warnings)
    assert any("Source: 500, Target: 499, Copied: 499" in message for message in warnings)


def test_table_without_primary_key_orders_by_first_column(source_server, target_server, connections, events):
    logs = FakeTable("audit_log", [("created_at", "datetime"), ("note", "text")],
                     rows=[{"created_at": i, "note": "n"} for i in range(3)])
    _prepare(source_server, target_server, logs)
    source, target = connections

    copier = BatchRowCopier(source, target, _emit_into(events))
    descriptor = copier.describe_table("audit_log")
    result = copier.copy_table("audit_log")

    assert descriptor.ordering_columns == ("created_at",)
    assert result.copied_rows == 3
    assert len(source_server.reads) == 1


def test_empty_table_reports_zero_rows(source_server, target_server, connections, events):
    _prepare(source_server, target_server, FakeTable("empty", [("id", "int")], primary_key=["id"]))
    source, target = connections

    result = BatchRowCopier(source, target, _emit_into(events)).copy_table("empty")

    assert (result.expected_rows, result.copied_rows, result.target_rows) == (0, 0, 0)
    assert result.status is CopyStatus.OK
    assert target_server.batch_inserts == []


def test_lost_connection_is_not_treated_as_a_row_error(source_server, target_server, connections, events):
    rows = [{"id": i} for i in range(1200)]
    _prepare(source_server, target_server, FakeTable("big", [("id", "int")], primary_key=["id"], rows=rows))
    source_server.lose_connection_after_reads = 1
    source, target = connections

    with pytest.raises(ConnectionLostError):
        BatchRowCopier(source, target, _emit_into(events)).copy_table("big")


def test_structured_values_are_written_as_json_text():
    assert serialize_value(ValueKind.TEXT, {"a": 1, "b": [1, 2]}) == json.dumps({"a": 1, "b": [1, 2]})
    assert serialize_value(ValueKind.BINARY, ["x"]) == b'["x"]'


def test_binary_payload_for_text_column_is_decoded():
    assert serialize_value(ValueKind.TEXT, "café".encode("utf-8")) == "café"
    assert serialize_value(ValueKind.TEXT, b"\xff") == "�"


def test_other_values_pass_through():
    assert serialize_value(ValueKind.BINARY, b"\x00\x01") == b"\x00\x01"
    assert serialize_value(ValueKind.NUMBER, 42) == 42
    assert serialize_value(ValueKind.TEXT, None) is None


@pytest.mark.parametrize("data_type, kind", [
    ("VARCHAR", ValueKind.TEXT),
    ("json", ValueKind.TEXT),
    ("bigint", ValueKind.NUMBER),
    ("longblob", ValueKind.BINARY),
    ("datetime", ValueKind.TEMPORAL),
    ("vector", ValueKind.OTHER),
    (None, ValueKind.OTHER),
])
def test_value_kind_follows_declared_type(data_type, kind):
    assert kind_for_data_type(data_type) is kind

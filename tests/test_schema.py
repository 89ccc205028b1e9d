from cloning.models import Level
from cloning.schema import SchemaReplicator, normalize_collations
from fakes import FakeTable


def _replicator(connection_factory, source_profile, target_profile, events):
    source = connection_factory(source_profile).open("shop")
    target = connection_factory(target_profile).open()

    def emit(stage, message, level=Level.INFO, **data):
        events.append((stage, message, data))

    return SchemaReplicator(source, target, emit), source, target


def test_distribution_collations_are_rewritten_without_target_list():
    ddl = (
        "CREATE TABLE `t` (`name` varchar(10) COLLATE utf8mb4_0900_ai_ci NOT NULL) "
        "ENGINE=InnoDB DEFAULT CHARSET=utf8mb4 COLLATE=utf8mb4_uca1400_as_cs"
    )
    result = normalize_collations(ddl)
    assert "0900" not in result
    assert "uca1400" not in result
    assert "COLLATE utf8mb4_unicode_ci NOT NULL" in result
    assert result.endswith("COLLATE=utf8mb4_unicode_ci")


def test_supported_collations_are_left_alone():
    ddl = "CREATE TABLE `t` (`a` text COLLATE latin1_german1_ci) DEFAULT CHARSET=latin1 COLLATE=latin1_swedish_ci"
    assert normalize_collations(ddl) == ddl
    assert normalize_collations(ddl, {"latin1_german1_ci", "latin1_swedish_ci"}) == ddl


def test_unsupported_collation_uses_charset_fallback():
    ddl = "CREATE TABLE `t` (`a` text COLLATE latin1_german1_ci)"
    assert normalize_collations(ddl, {"latin1_swedish_ci"}) == (
        "CREATE TABLE `t` (`a` text COLLATE latin1_swedish_ci)"
    )


def test_unknown_charset_is_not_touched():
    ddl = "CREATE TABLE `t` (`a` text COLLATE koi8r_general_ci)"
    assert normalize_collations(ddl, {"utf8mb4_unicode_ci"}) == ddl


def test_prepare_target_creates_database_and_disables_foreign_keys(
        connection_factory, source_profile, target_profile, target_server, events):
    replicator, _, target = _replicator(connection_factory, source_profile, target_profile, events)

    replicator.prepare_target("shop_copy")

    assert ("create_database", "shop_copy", "utf8mb4", "utf8mb4_unicode_ci") in target_server.journal
    assert target.database == "shop_copy"
    assert target.settings == {"sql_mode": "NO_ENGINE_SUBSTITUTION", "foreign_key_checks": False}


def test_clean_target_drops_views_tables_procedures_functions_in_order(
        connection_factory, source_profile, target_profile, target_server, events):
    existing = target_server.database("shop_copy")
    existing.add_table(FakeTable("old_table", [("id", "int")]))
    existing.views["old_view"] = "CREATE VIEW `old_view` AS select 1"
    existing.procedures["old_proc"] = "CREATE PROCEDURE `old_proc`() BEGIN END"
    existing.functions["old_fn"] = "CREATE FUNCTION `old_fn`() RETURNS int RETURN 1"
    replicator, _, target = _replicator(connection_factory, source_profile, target_profile, events)
    target.use_database("shop_copy")

    removed = replicator.clean_target("shop_copy")

    drops = [entry for entry in target_server.journal if entry[0] == "drop"]
    assert drops == [
        ("drop", "VIEW", "old_view"),
        ("drop", "TABLE", "old_table"),
        ("drop", "PROCEDURE", "old_proc"),
        ("drop", "FUNCTION", "old_fn"),
    ]
    assert removed == {"tables": 1, "views": 1, "procedures": 1, "functions": 1}
    assert target_server.object_count() == 0
    assert any("removed 1 tables, 1 views" in message for _, message, _ in events)


def test_create_table_normalizes_against_target_collations(
        connection_factory, source_profile, target_profile, source_server, target_server, events):
    source_server.database("shop").add_table(
        FakeTable("accounts", [("id", "int")], primary_key=["id"], collation="utf8mb4_0900_ai_ci"))
    replicator, _, target = _replicator(connection_factory, source_profile, target_profile, events)
    target.create_database("shop_copy", "utf8mb4", "utf8mb4_unicode_ci")
    target.use_database("shop_copy")

    replicator.create_table("accounts")

    created = target_server.database("shop_copy").tables["accounts"]
    assert "COLLATE=utf8mb4_unicode_ci" in created.ddl_text
    assert "0900" not in created.ddl_text


def test_create_table_falls_back_to_static_rewrites(
        connection_factory, source_profile, target_profile, source_server, target_server, events):
    source_server.database("shop").add_table(
        FakeTable("accounts", [("id", "int")], collation="utf8mb4_0900_ai_ci"))
    target_server.collation_names = None
    replicator, _, target = _replicator(connection_factory, source_profile, target_profile, events)
    target.create_database("shop_copy", "utf8mb4", "utf8mb4_unicode_ci")
    target.use_database("shop_copy")

    replicator.create_table("accounts")

    assert "COLLATE=utf8mb4_unicode_ci" in target_server.database("shop_copy").tables["accounts"].ddl_text

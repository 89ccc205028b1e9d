import logging
import re

from cloning.errors import ConnectionLostError
from cloning.models import Level

logger = logging.getLogger(__name__)

DEFAULT_CHARSET = "utf8mb4"
DEFAULT_COLLATION = "utf8mb4_unicode_ci"
# Lets zero dates and other legacy values through unchanged
TARGET_SQL_MODE = "NO_ENGINE_SUBSTITUTION"

# Collations that only exist on one MySQL/MariaDB line
_DISTRIBUTION_COLLATIONS = re.compile(r"^(utf8mb4|utf8mb3)_(0900|uca1400)_\w+$", re.IGNORECASE)
_COLLATE_TOKEN = re.compile(r"(\bCOLLATE(?:\s*=\s*|\s+))([A-Za-z0-9_]+)", re.IGNORECASE)

FALLBACK_COLLATIONS = {
    "utf8mb4": "utf8mb4_unicode_ci",
    "utf8mb3": "utf8mb3_unicode_ci",
    "utf8": "utf8_unicode_ci",
    "latin1": "latin1_swedish_ci",
    "ascii": "ascii_general_ci",
}


def fallback_collation(collation):
    charset = collation.split("_", 1)[0].lower()
    return FALLBACK_COLLATIONS.get(charset)


def normalize_collations(statement, supported=None):
    """Rewrite COLLATE clauses the target server cannot understand.

    Without a ``supported`` set only the distribution specific collations
    (``*_0900_*``, ``*_uca1400_*``) are rewritten.
    """
    def replace(match):
        prefix, collation = match.group(1), match.group(2)
        if supported is not None:
            if collation.lower() in supported:
                return match.group(0)
        elif not _DISTRIBUTION_COLLATIONS.match(collation):
            return match.group(0)
        substitute = fallback_collation(collation)
        if substitute is None:
            return match.group(0)
        return prefix + substitute

    return _COLLATE_TOKEN.sub(replace, statement)


class SchemaReplicator:
    """Tears down the target schema and recreates the source's base tables."""

    def __init__(self, source, target, emit):
        self.source = source
        self.target = target
        self.emit = emit
        self._supported_collations = None

    def prepare_target(self, database):
        self.emit("create", f"Creating target database: {database}")
        self.target.create_database(database, DEFAULT_CHARSET, DEFAULT_COLLATION)
        self.target.use_database(database)
        self.target.set_sql_mode(TARGET_SQL_MODE)
        # Stays off until every table's data is in
        self.target.set_foreign_key_checks(False)

    def clean_target(self, database):
        self.emit("clean", "Cleaning target database (dropping all existing objects)...")
        views = self.target.list_views(database)
        for name in views:
            self.target.drop("VIEW", name)
        tables = self.target.list_base_tables(database)
        for name in tables:
            self.target.drop("TABLE", name)
        procedures = self.target.list_routines(database, "PROCEDURE")
        for name in procedures:
            self.target.drop("PROCEDURE", name)
        functions = self.target.list_routines(database, "FUNCTION")
        for name in functions:
            self.target.drop("FUNCTION", name)
        removed = {
            "tables": len(tables),
            "views": len(views),
            "procedures": len(procedures),
            "functions": len(functions),
        }
        self.emit(
            "clean",
            f"Cleaned target database: removed {len(tables)} tables, {len(views)} views",
            **removed,
        )
        return removed

    def source_tables(self):
        self.emit("tables", "Fetching table list from source...")
        tables = self.source.list_base_tables(self.source.profile.database)
        self.emit("tables", f"Found {len(tables)} tables to clone", count=len(tables))
        return tables

    def supported_collations(self):
        if self._supported_collations is None:
            try:
                self._supported_collations = {name.lower() for name in self.target.collations()}
            except ConnectionLostError:
                raise
            except Exception as e:
                logger.debug("Could not list target collations, using static rewrites: %s", e)
                self._supported_collations = set()
        return self._supported_collations or None

    def create_table(self, name):
        statement = self.source.show_create("TABLE", name)
        normalized = normalize_collations(statement, self.supported_collations())
        if normalized != statement:
            logger.debug("Rewrote collations for table %s", name)
        self.target.run(normalized)

    def finish(self):
        self.target.set_foreign_key_checks(True)
        self.emit("tables", "Foreign key checks re-enabled on target", level=Level.INFO)

import logging
import re

from cloning.errors import ConnectionLostError
from cloning.models import Level
from cloning.rows import error_text

logger = logging.getLogger(__name__)

_IDENT = r"(?:`[^`]*`|'[^']*'|\"[^\"]*\"|[^\s@]+)"
_DEFINER = re.compile(r"DEFINER\s*=\s*" + _IDENT + r"(?:\s*@\s*" + _IDENT + r")?\s*", re.IGNORECASE)

ROUTINE_KINDS = (
    ("VIEW", "views", "view"),
    ("PROCEDURE", "procedures", "procedure"),
    ("FUNCTION", "functions", "function"),
)


def strip_definer(statement):
    """Remove ``DEFINER=`user`@`host``` so the object is owned by whoever creates it."""
    return _DEFINER.sub("", statement)


def requalify_schema(statement, source_database, target_database):
    # SHOW CREATE VIEW qualifies every column with the source schema
    if not source_database or not target_database or source_database == target_database:
        return statement
    quoted = "`" + source_database.replace("`", "``") + "`."
    return statement.replace(quoted, "`" + target_database.replace("`", "``") + "`.")


class RoutineReplicator:
    """Migrates views, then procedures, then functions, one object at a time."""

    def __init__(self, source, target, emit):
        self.source = source
        self.target = target
        self.emit = emit

    def replicate_all(self):
        counts = {}
        for kind, plural, label in ROUTINE_KINDS:
            counts[plural] = self.replicate_kind(kind, plural, label)
        return counts

    def replicate_kind(self, kind, plural, label):
        title = "stored " + plural if kind != "VIEW" else plural
        self.emit("routines", f"Cloning {title}...")
        database = self.source.profile.database
        if kind == "VIEW":
            names = self.source.list_views(database)
        else:
            names = self.source.list_routines(database, kind)

        cloned = 0
        pending = list(names)
        errors = {}
        # Views may select from other views; retry failures while a pass makes progress
        while pending:
            failed = []
            for name in pending:
                try:
                    self.replicate_one(kind, name)
                    cloned += 1
                    errors.pop(name, None)
                except ConnectionLostError:
                    raise
                except Exception as e:
                    failed.append(name)
                    errors[name] = e
            if kind != "VIEW" or len(failed) == len(pending):
                break
            pending = failed

        for name, err in errors.items():
            self.emit("routines", f"  Warning: Could not clone {label} {name}: {error_text(err, 300)}",
                      level=Level.WARNING, kind=label, name=name)
        if cloned:
            self.emit("routines", f"  {cloned}/{len(names)} {plural} cloned", kind=label, cloned=cloned)
        return cloned

    def replicate_one(self, kind, name):
        statement = self.source.show_create(kind, name)
        self.target.drop(kind, name)
        cleaned = strip_definer(statement)
        if kind == "VIEW":
            cleaned = requalify_schema(cleaned, self.source.profile.database, self.target.database)
        self.target.run(cleaned)
        logger.debug("Cloned %s %s", kind.lower(), name)

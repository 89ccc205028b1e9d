"""End-to-end clone of one MySQL database onto another.

A ``CloneSession`` walks a fixed sequence of states::

    connecting_source -> enforcing_read_only -> connecting_target
        -> replicating_schema -> copying_tables -> replicating_routines
        -> finalizing -> succeeded | failed

Failures while connecting or enforcing read-only mode end the run before the
target is touched. Failures of a single table or routine are reported as
warnings and the run moves on; only session level errors (a lost connection,
an unexpected exception) end it as failed. Both connections are closed on
every exit path.

Progress is published as ``ProgressEvent`` objects on a ``ProgressChannel``;
the session never waits for its listeners.
"""

import dataclasses
import logging
import threading
import time

from cloning.errors import CloneError, ConnectionLostError
from cloning.models import CloneResult, CloneState, Level, ProgressEvent, Role, summarize
from cloning.readonly import ReadOnlyGuard
from cloning.routines import RoutineReplicator
from cloning.rows import BATCH_SIZE, BatchRowCopier, error_text
from cloning.schema import SchemaReplicator
from helpers.mysql_connection import MySQLConnection

logger = logging.getLogger(__name__)


class ProgressChannel:
    """Fan-out of progress events to any number of listeners."""

    def __init__(self):
        self._listeners = []
        self._lock = threading.Lock()

    def subscribe(self, listener):
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def publish(self, event):
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Progress listener failed, dropping event for it")


class CloneSession:
    def __init__(self, source, target, batch_size=BATCH_SIZE, max_failed_row_ratio=None,
                 connection_factory=MySQLConnection):
        if not source.database:
            raise ValueError("Source database name is required")
        if not target.database:
            raise ValueError("Target database name is required")
        self.source = dataclasses.replace(source, role=Role.SOURCE)
        self.target = dataclasses.replace(target, role=Role.TARGET)
        self.batch_size = batch_size
        self.max_failed_row_ratio = max_failed_row_ratio
        self.connection_factory = connection_factory
        self.channel = ProgressChannel()
        self.state = None
        self.warnings = 0

    def subscribe(self, listener):
        return self.channel.subscribe(listener)

    def emit(self, stage, message, level=Level.INFO, **data):
        if level is Level.WARNING:
            self.warnings += 1
        self.channel.publish(ProgressEvent(stage=stage, message=message, level=level, data=data))

    def _enter(self, state):
        logger.debug("Clone %s -> %s: %s", self.source.describe(), self.target.describe(), state.value)
        self.state = state

    def run(self):
        if self.state is not None:
            raise RuntimeError("A clone session can only run once")

        started = time.monotonic()
        source_conn = None
        target_conn = None
        results = []
        counts = {"views": 0, "procedures": 0, "functions": 0}
        error = None

        try:
            self._enter(CloneState.CONNECTING_SOURCE)
            self.emit("connect", "Connecting to source database...")
            source_conn = self.connection_factory(self.source).open(self.source.database)

            self._enter(CloneState.ENFORCING_READ_ONLY)
            ReadOnlyGuard(source_conn).enforce()
            self.emit("connect", "Source database connected (READ-ONLY mode enforced)", level=Level.SUCCESS)

            self._enter(CloneState.CONNECTING_TARGET)
            self.emit("connect", "Connecting to target database...")
            target_conn = self.connection_factory(self.target).open()

            self._enter(CloneState.REPLICATING_SCHEMA)
            schema = SchemaReplicator(source_conn, target_conn, self.emit)
            schema.prepare_target(self.target.database)
            schema.clean_target(self.target.database)
            tables = schema.source_tables()

            self._enter(CloneState.COPYING_TABLES)
            copier = BatchRowCopier(source_conn, target_conn, self.emit, batch_size=self.batch_size)
            for index, name in enumerate(tables, start=1):
                self.emit("table", f"Cloning table {index}/{len(tables)}: {name}", table=name)
                try:
                    schema.create_table(name)
                    results.append(copier.copy_table(name))
                except ConnectionLostError:
                    raise
                except Exception as e:
                    self.emit("table", f"  ⚠️ Could not clone table {name}: {error_text(e, 300)}",
                              level=Level.WARNING, table=name)
            schema.finish()

            self._enter(CloneState.REPLICATING_ROUTINES)
            counts = RoutineReplicator(source_conn, target_conn, self.emit).replicate_all()

            self._enter(CloneState.FINALIZING)
            error = self._failed_row_policy(results)
        except CloneError as e:
            error = str(e)
            logger.error("Clone %s -> %s failed: %s", self.source.describe(), self.target.describe(), e)
        except Exception as e:
            error = error_text(e, 1000)
            logger.error("Clone %s -> %s failed: %s", self.source.describe(), self.target.describe(), e,
                         exc_info=True)
        finally:
            self._release(source_conn, target_conn)

        result = CloneResult(
            tables_cloned=len(results),
            views_cloned=counts["views"],
            procedures_cloned=counts["procedures"],
            functions_cloned=counts["functions"],
            success=error is None,
            error=error,
            tables=tuple(results),
            warnings=self.warnings,
            duration_seconds=time.monotonic() - started,
        )

        if result.success:
            self._enter(CloneState.SUCCEEDED)
            message = (
                f"Database cloned successfully! {result.tables_cloned} tables, "
                f"{result.views_cloned} views copied. Source database remains untouched."
            )
            self.channel.publish(ProgressEvent(stage="summary", message=message, status="success",
                                               level=Level.SUCCESS, data=result.to_dict()))
        else:
            self._enter(CloneState.FAILED)
            self.channel.publish(ProgressEvent(stage="summary", message=error, status="error",
                                               level=Level.ERROR, data=result.to_dict()))
        return result

    def _failed_row_policy(self, results):
        if self.max_failed_row_ratio is None:
            return None
        totals = summarize(results)
        ratio = totals["failed"] / max(totals["expected"], 1)
        if ratio > self.max_failed_row_ratio:
            return (
                f"{totals['failed']} of {totals['expected']} rows failed to copy ({ratio:.2%}), "
                f"above the allowed {self.max_failed_row_ratio:.2%}"
            )
        return None

    def _release(self, *connections):
        for conn in connections:
            if conn is None:
                continue
            try:
                conn.close()
            except Exception as e:
                logger.warning("Error releasing %s connection: %s", conn.profile.role.value, e)


def run_clone(source, target, listener=None, max_failed_row_ratio=None):
    """Run one clone session to completion, forwarding progress to ``listener``."""
    session = CloneSession(source, target, max_failed_row_ratio=max_failed_row_ratio)
    if listener is not None:
        session.subscribe(listener)
    return session.run()

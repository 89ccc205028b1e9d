import logging
import threading
import time
from collections import deque
from datetime import datetime, timezone

from cloning.models import Level
from scheduling.jobs import Job, JobNotFoundError, JobValidationError
from scheduling.triggers import CronTrigger

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 50
DEFAULT_RUN_LOG_LIMIT = 200

# Event data keys that mark row level detail, summarised per table instead
_DETAIL_KEYS = ("row", "offset")


class _Entry:
    def __init__(self, job, trigger, history_limit):
        self.job = job
        self.trigger = trigger
        self.history = deque(maxlen=history_limit)


class JobScheduler:
    """Registry of recurring clone jobs, each owning one live cron trigger.

    ``clone_runner(source, target, listener)`` performs one clone and returns
    its ``CloneResult``. ``trigger_factory(schedule, callback, name=...)``
    builds the object that calls back when the schedule comes due.

    A run writes at most ``run_log_limit`` progress entries to the log, so one
    noisy run cannot push its own start entry, or other jobs' entries, out of
    the bounded log window.
    """

    def __init__(self, job_store, log_store, clone_runner, trigger_factory=CronTrigger,
                 history_limit=DEFAULT_HISTORY_LIMIT, run_log_limit=DEFAULT_RUN_LOG_LIMIT):
        self.job_store = job_store
        self.log_store = log_store
        self.clone_runner = clone_runner
        self.trigger_factory = trigger_factory
        self.history_limit = history_limit
        self.run_log_limit = run_log_limit
        self._entries = {}
        self._lock = threading.RLock()

    # Registry

    def _build_trigger(self, job):
        job_id = job.id
        return self.trigger_factory(job.schedule, lambda: self._scheduled_run(job_id), name=job.name)

    def _register(self, job):
        entry = _Entry(job, self._build_trigger(job), self.history_limit)
        self._entries[job.id] = entry
        if job.enabled:
            entry.trigger.start()
        return entry

    def _entry(self, job_id):
        entry = self._entries.get(job_id)
        if entry is None:
            raise JobNotFoundError(job_id)
        return entry

    def _persist(self):
        self.job_store.save([entry.job for entry in self._entries.values()])

    def load(self):
        """Re-arm every persisted job. Jobs that cannot be rebuilt are skipped."""
        armed = 0
        for record in self.job_store.load():
            label = record.get("name") or record.get("id") if isinstance(record, dict) else record
            try:
                job = Job.from_dict(record)
                with self._lock:
                    if job.id in self._entries:
                        raise JobValidationError(f"Duplicate job id {job.id}")
                    self._register(job)
                armed += 1
            except Exception as e:
                logger.error("Could not restore job %s: %s", label, e)
                self.log_store.append(Level.ERROR, f"Could not restore job {label}: {e}",
                                      job_id=record.get("id") if isinstance(record, dict) else None)
        logger.info("Restored %d scheduled jobs", armed)
        return armed

    def create_job(self, name, schedule, source, target, enabled=True):
        job = Job.create(name, schedule, source, target, enabled=enabled)
        with self._lock:
            entry = self._register(job)
            try:
                self._persist()
            except Exception:
                entry.trigger.stop()
                del self._entries[job.id]
                raise
        self.log_store.append(Level.INFO, f"Job created: {job.name} ({job.schedule})",
                              job_id=job.id, job_name=job.name)
        logger.info("Created job %s (%s) with schedule %s", job.name, job.id, job.schedule)
        return job

    def list_jobs(self):
        with self._lock:
            return [entry.job for entry in self._entries.values()]

    def get_job(self, job_id):
        with self._lock:
            return self._entry(job_id).job

    def update_job(self, job_id, enabled=None, name=None, schedule=None):
        changes = {}
        if enabled is not None:
            changes["enabled"] = enabled
        if name is not None:
            changes["name"] = name
        if schedule is not None:
            changes["schedule"] = schedule

        with self._lock:
            entry = self._entry(job_id)
            previous = entry.job
            job = previous.replace(**changes)
            if job == previous:
                return job

            if job.schedule != previous.schedule or job.name != previous.name:
                entry.trigger.stop()
                entry.trigger = self._build_trigger(job)
            entry.job = job
            if job.enabled:
                entry.trigger.start()
            else:
                entry.trigger.stop()
            self._persist()

        if job.enabled != previous.enabled:
            state = "enabled" if job.enabled else "disabled"
            self.log_store.append(Level.INFO, f"Job {state}: {job.name}", job_id=job.id, job_name=job.name)
        if job.schedule != previous.schedule:
            self.log_store.append(Level.INFO, f"Job schedule changed to {job.schedule}",
                                  job_id=job.id, job_name=job.name)
        return job

    def enable_job(self, job_id):
        return self.update_job(job_id, enabled=True)

    def disable_job(self, job_id):
        return self.update_job(job_id, enabled=False)

    def delete_job(self, job_id):
        with self._lock:
            entry = self._entry(job_id)
            entry.trigger.stop()
            del self._entries[job_id]
            self._persist()
        # Logged without the job id: nothing for a deleted job is recorded under it
        self.log_store.append(Level.INFO, f"Job deleted: {entry.job.name}")
        logger.info("Deleted job %s (%s)", entry.job.name, job_id)
        return entry.job

    def history(self, job_id):
        with self._lock:
            return list(reversed(self._entry(job_id).history))

    def shutdown(self):
        with self._lock:
            for entry in self._entries.values():
                entry.trigger.stop()

    # Execution

    def _scheduled_run(self, job_id):
        with self._lock:
            entry = self._entries.get(job_id)
            job = entry.job if entry else None
        if job is None or not job.enabled:
            return None
        return self.execute(job, trigger="schedule")

    def run_now(self, job_id):
        """Start an out of schedule run in the background and return its thread."""
        job = self.get_job(job_id)
        thread = threading.Thread(target=self.execute, args=(job, "manual"),
                                  name=f"run-now-{job.name}", daemon=True)
        thread.start()
        return thread

    def _log_run(self, job, level, message, metadata=None):
        # A job deleted mid-run gets nothing more under its id
        with self._lock:
            if job.id not in self._entries:
                return False
            self.log_store.append(level, message, job_id=job.id, job_name=job.name, metadata=metadata)
        return True

    def execute(self, job, trigger="schedule"):
        kind = "scheduled" if trigger == "schedule" else "manual"
        started_at = datetime.now(timezone.utc)
        started = time.monotonic()
        self._log_run(job, Level.INFO, f"Starting {kind} clone: {job.name}",
                      metadata={"trigger": trigger, "source": job.source.describe(),
                                "target": job.target.describe()})

        logged = 0
        skipped = 0

        def record(event):
            nonlocal logged, skipped
            if event.is_terminal or any(key in event.data for key in _DETAIL_KEYS):
                return
            if logged >= self.run_log_limit:
                skipped += 1
                return
            if self._log_run(job, event.level, event.message.strip(), metadata={"stage": event.stage}):
                logged += 1

        result = None
        try:
            result = self.clone_runner(job.source, job.target, record)
            error = result.error
        except Exception as e:
            logger.exception("Clone run for job %s crashed", job.name)
            error = str(e)

        if skipped:
            self._log_run(job, Level.WARNING,
                          f"{skipped} further progress messages were not logged for this run",
                          metadata={"skipped": skipped})

        duration = time.monotonic() - started
        success = result is not None and result.success
        if success:
            self._log_run(job, Level.SUCCESS, f"Job completed successfully in {duration:.1f}s",
                          metadata={"durationMs": int(duration * 1000), "trigger": trigger,
                                    "tablesCloned": result.tables_cloned,
                                    "failedRows": result.failed_rows,
                                    "warnings": result.warnings})
        else:
            self._log_run(job, Level.ERROR, f"Job failed after {duration:.1f}s: {error}",
                          metadata={"durationMs": int(duration * 1000), "trigger": trigger})

        with self._lock:
            entry = self._entries.get(job.id)
            if entry is not None:
                entry.history.append({
                    "trigger": trigger,
                    "startedAt": started_at.isoformat(),
                    "durationMs": int(duration * 1000),
                    "success": success,
                    "error": None if success else error,
                })
        return result

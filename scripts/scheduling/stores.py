import json
import logging
import os
import tempfile
import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import pandas as pd

from cloning.models import Level

logger = logging.getLogger(__name__)


def _ensure_parent(path):
    parent = os.path.dirname(os.path.abspath(path))
    os.makedirs(parent, exist_ok=True)


def _write_atomically(path, text):
    _ensure_parent(path)
    fd, tmp_path = tempfile.mkstemp(dir=os.path.dirname(os.path.abspath(path)), suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise


class JobStore:
    """JSON file holding every job definition, rewritten wholesale on save."""

    def __init__(self, path):
        self.path = path
        self._lock = threading.Lock()

    def load(self):
        """Return the raw job records; the scheduler validates each one on its own."""
        with self._lock:
            if not os.path.exists(self.path):
                return []
            try:
                with open(self.path, "r", encoding="utf-8") as f:
                    records = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                logger.error("Could not read jobs file %s: %s", self.path, e)
                return []
        if not isinstance(records, list):
            logger.error("Jobs file %s does not hold a list, ignoring it", self.path)
            return []
        return records

    def save(self, jobs):
        records = [job.to_dict() for job in jobs]
        with self._lock:
            _write_atomically(self.path, json.dumps(records, indent=2))
        logger.debug("Saved %d jobs to %s", len(records), self.path)


@dataclass(frozen=True)
class LogEntry:
    id: str
    timestamp: str
    level: Level
    message: str
    job_id: Optional[str] = None
    job_name: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self):
        return {
            "id": self.id,
            "jobId": self.job_id,
            "jobName": self.job_name,
            "timestamp": self.timestamp,
            "level": self.level.value,
            "message": self.message,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data):
        return cls(
            id=data["id"],
            timestamp=data["timestamp"],
            level=Level(data["level"]),
            message=data.get("message", ""),
            job_id=data.get("jobId"),
            job_name=data.get("jobName"),
            metadata=data.get("metadata") or {},
        )


class LogStore:
    """Bounded, append-only record of engine and job events.

    Entries live in a ring buffer of ``max_entries`` and are appended to a
    JSON Lines file one by one. When the file holds more than twice the window
    it is compacted down to the entries still in memory.
    """

    def __init__(self, path, max_entries=1000):
        self.path = path
        self.max_entries = max_entries
        self._entries = deque(maxlen=max_entries)
        self._lines_on_disk = 0
        self._lock = threading.RLock()

    def load(self):
        with self._lock:
            self._entries.clear()
            self._lines_on_disk = 0
            if not os.path.exists(self.path):
                return 0
            with open(self.path, "r", encoding="utf-8") as f:
                for number, line in enumerate(f, start=1):
                    line = line.strip()
                    if not line:
                        continue
                    self._lines_on_disk += 1
                    try:
                        self._entries.append(LogEntry.from_dict(json.loads(line)))
                    except (ValueError, KeyError) as e:
                        logger.warning("Skipping malformed log line %d in %s: %s", number, self.path, e)
            return len(self._entries)

    def append(self, level, message, job_id=None, job_name=None, metadata=None):
        entry = LogEntry(
            id=str(uuid.uuid4()),
            timestamp=datetime.now(timezone.utc).isoformat(),
            level=Level(level),
            message=message,
            job_id=job_id,
            job_name=job_name,
            metadata=metadata or {},
        )
        with self._lock:
            self._entries.append(entry)
            try:
                self._append_line(entry)
                if self._lines_on_disk > 2 * self.max_entries:
                    self._rewrite()
            except OSError as e:
                logger.error("Could not persist log entry to %s: %s", self.path, e)
        return entry

    def _append_line(self, entry):
        _ensure_parent(self.path)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry.to_dict(), default=str) + "\n")
        self._lines_on_disk += 1

    def _rewrite(self):
        lines = "".join(json.dumps(entry.to_dict(), default=str) + "\n" for entry in self._entries)
        _write_atomically(self.path, lines)
        self._lines_on_disk = len(self._entries)

    def _matching(self, job_id=None, level=None):
        level = Level(level) if level else None
        return [
            entry for entry in self._entries
            if (job_id is None or entry.job_id == job_id) and (level is None or entry.level is level)
        ]

    def query(self, job_id=None, level=None, limit=100, offset=0):
        """Return ``(entries, total)`` newest first."""
        with self._lock:
            matching = self._matching(job_id, level)
        matching.reverse()
        return matching[offset:offset + limit], len(matching)

    def clear(self, job_id=None):
        with self._lock:
            before = len(self._entries)
            if job_id is None:
                self._entries.clear()
            else:
                kept = [entry for entry in self._entries if entry.job_id != job_id]
                self._entries.clear()
                self._entries.extend(kept)
            removed = before - len(self._entries)
            self._rewrite()
        return removed

    def stats(self):
        with self._lock:
            records = [entry.to_dict() for entry in self._entries]
        df = pd.DataFrame(records, columns=["id", "jobId", "jobName", "timestamp", "level", "message"])
        levels = [level.value for level in Level]
        by_level = df["level"].value_counts().reindex(levels, fill_value=0)
        by_job = df.dropna(subset=["jobId"]).groupby("jobId").size()
        return {
            "total": int(len(df)),
            "byLevel": {level: int(count) for level, count in by_level.items()},
            "byJob": {job_id: int(count) for job_id, count in by_job.items()},
        }

import dataclasses
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from croniter import croniter

from cloning.models import ConnectionProfile, Role


class JobValidationError(ValueError):
    pass


class JobNotFoundError(LookupError):
    def __init__(self, job_id):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


def validate_schedule(schedule):
    if not isinstance(schedule, str) or not schedule.strip() or not croniter.is_valid(schedule.strip()):
        raise JobValidationError(f"Invalid cron expression: {schedule!r}")
    return schedule.strip()


def validate_enabled(value):
    if not isinstance(value, bool):
        raise JobValidationError(f"enabled must be true or false, got {value!r}")
    return value


def _profile(data, role):
    try:
        profile = ConnectionProfile.from_dict(data, role)
    except (TypeError, ValueError) as e:
        raise JobValidationError(str(e)) from e
    if not profile.database:
        raise JobValidationError(f"{role.value} database name is required")
    return profile


@dataclass(frozen=True)
class Job:
    id: str
    name: str
    schedule: str
    source: ConnectionProfile
    target: ConnectionProfile
    enabled: bool = True
    created_at: str = ""

    @classmethod
    def create(cls, name, schedule, source, target, enabled=True):
        """Build a new job from request data, rejecting anything invalid."""
        if not isinstance(name, str) or not name.strip():
            raise JobValidationError("Job name is required")
        return cls(
            id=str(uuid.uuid4()),
            name=name.strip(),
            schedule=validate_schedule(schedule),
            source=_profile(source, Role.SOURCE),
            target=_profile(target, Role.TARGET),
            enabled=validate_enabled(enabled),
            created_at=datetime.now(timezone.utc).isoformat(),
        )

    @classmethod
    def from_dict(cls, data):
        if not data.get("id"):
            raise JobValidationError("Job id is required")
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or data["id"]),
            schedule=validate_schedule(data.get("schedule")),
            source=_profile(data.get("source"), Role.SOURCE),
            target=_profile(data.get("target"), Role.TARGET),
            enabled=validate_enabled(data.get("enabled", True)),
            created_at=data.get("createdAt") or "",
        )

    def to_dict(self, include_secret=True):
        return {
            "id": self.id,
            "name": self.name,
            "schedule": self.schedule,
            "source": self.source.to_dict(include_secret),
            "target": self.target.to_dict(include_secret),
            "enabled": self.enabled,
            "createdAt": self.created_at,
        }

    def replace(self, **changes):
        if "enabled" in changes:
            changes["enabled"] = validate_enabled(changes["enabled"])
        if "schedule" in changes:
            changes["schedule"] = validate_schedule(changes["schedule"])
        if "name" in changes:
            name = changes["name"]
            if not isinstance(name, str) or not name.strip():
                raise JobValidationError("Job name is required")
            changes["name"] = name.strip()
        return dataclasses.replace(self, **changes)

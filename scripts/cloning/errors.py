class CloneError(Exception):
    """Base class for errors that end a clone session."""


class ConnectionFailedError(CloneError):
    def __init__(self, profile, reason):
        self.profile = profile
        self.reason = reason
        super().__init__(f"Could not connect to {profile.role.value} database {profile.describe()}: {reason}")


class ReadOnlyEnforcementError(CloneError):
    def __init__(self, reason):
        self.reason = reason
        super().__init__(f"Failed to set read-only mode on source. Aborting for safety: {reason}")


class ConnectionLostError(CloneError):
    """A live connection dropped in the middle of a run."""

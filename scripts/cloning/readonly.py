import logging

from cloning.errors import ConnectionLostError, ReadOnlyEnforcementError

logger = logging.getLogger(__name__)


class ReadOnlyGuard:
    """Puts the source session into read-only mode and proves that it took effect.

    Must run before any other statement on the source. Any failure, including
    a server that accepts the SET but still reports a writable session, raises
    ``ReadOnlyEnforcementError``.
    """

    def __init__(self, connection):
        self.connection = connection

    def enforce(self):
        if not self.connection.profile.is_source:
            raise ReadOnlyEnforcementError("connection is not bound to the source role")
        try:
            self.connection.set_session_read_only()
            enforced = self.connection.session_read_only()
        except ConnectionLostError:
            raise
        except Exception as e:
            raise ReadOnlyEnforcementError(e) from e
        if not enforced:
            raise ReadOnlyEnforcementError("server still reports a writable session")
        logger.info("Read-only mode enforced on %s", self.connection.profile.describe())

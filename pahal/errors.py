"""Error types raised by the incident and triage services."""


class PahalError(Exception):
    """Base class for service-level errors."""


class PersistenceError(PahalError):
    """The store rejected a create or update; nothing was written."""


class InvalidTransition(PahalError):
    """A status change or review action is not allowed from the current state."""

    def __init__(self, current, requested, message=None):
        self.current = current
        self.requested = requested
        super().__init__(message or f"Cannot move from '{current}' to '{requested}'")


class NotFound(PahalError):
    """No record with the requested id."""

"""Error taxonomy for the port broker.

Every error carries a stable, upper-case ``code`` (also returned by
``str(exc)``) and the HTTP status the API layer answers with. A free-form
``detail`` message is kept separately for logs and human readers.

Business-rule errors are deterministic and are reported to the caller
immediately. Only ``TransientStorageError`` is retried, and it is turned
into ``StorageUnavailable`` once the retry budget is spent.
"""


class PortBrokerError(Exception):
    """Base class for all errors raised by the engine."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, detail: str | None = None):
        super().__init__(self.code)
        self.detail = detail or self.code

    def __str__(self) -> str:
        return self.code


# ---- Missing entities ----
class NotFound(PortBrokerError):
    code = "NOT_FOUND"
    status_code = 404


class BoxNotFound(NotFound):
    pass


class PortNotFound(NotFound):
    pass


class OrderNotFound(NotFound):
    pass


# ---- State conflicts ----
class InvalidTransition(PortBrokerError):
    """The requested edge is not in the transition table for the current state."""

    code = "INVALID_TRANSITION"
    status_code = 409


class PortConflict(PortBrokerError):
    """Another transaction changed the port first (lost race)."""

    code = "PORT_CONFLICT"
    status_code = 409


class PortUnavailable(PortBrokerError):
    """The port is not in a state that allows the requested operation."""

    code = "PORT_UNAVAILABLE"
    status_code = 409


class IdempotencyConflict(PortBrokerError):
    """An idempotency key was reused with a different payload."""

    code = "IDEMPOTENCY_CONFLICT"
    status_code = 409


# ---- Input validation ----
class InvalidInput(PortBrokerError):
    code = "INVALID_INPUT"
    status_code = 422


class InvalidPrice(InvalidInput):
    code = "INVALID_PRICE"


class InvalidCapacity(InvalidInput):
    code = "INVALID_CAPACITY"


class InvalidSchedule(InvalidInput):
    code = "INVALID_SCHEDULE"


class InvalidNote(InvalidInput):
    code = "INVALID_NOTE"


# ---- Authorization ----
class Unauthorized(PortBrokerError):
    """The actor has no standing for the requested action."""

    code = "UNAUTHORIZED"
    status_code = 403


class Unauthenticated(Unauthorized):
    """No operator identity was supplied with the call."""

    code = "UNAUTHENTICATED"
    status_code = 401


# ---- Storage ----
class StorageUnavailable(PortBrokerError):
    code = "STORAGE_UNAVAILABLE"
    status_code = 503


class TransientStorageError(Exception):
    """Internal signal: the transaction may succeed if simply run again."""

# =============================================================================
# Error Taxonomy
# =============================================================================
#
# Four kinds of failure, each with a fixed propagation policy:
#
#   InputValidationError  bad input; rejected before any state mutation
#   PersistenceError      store I/O failed; the operation was not applied
#   UpstreamError         reasoning service unreachable / failed / empty;
#                         recorded on the task as `failed`, never re-raised
#                         past a queue boundary
#   UpstreamTimeoutError  the deadline expired (distinct from a hard failure)
#
# Programmer errors (UnknownTaskTypeError, InvalidTransitionError) are
# fatal: they abort the run that hit them.
#
# Crash recovery is not an exception type. It is a startup scan that
# demotes `processing` tasks to `pending` (see workers/ingestion.py and
# agents/registry.py).
# =============================================================================


class DocflowError(Exception):
    """Base class for every error raised by docflow."""


class InputValidationError(DocflowError):
    """Caller supplied input that cannot be accepted."""


class NotFoundError(InputValidationError):
    """A referenced record does not exist."""


class PersistenceError(DocflowError):
    """Reading from or writing to the durable store failed."""


class UpstreamError(DocflowError):
    """The external reasoning/generation service failed."""


class UpstreamTimeoutError(UpstreamError):
    """The external service did not answer before the deadline."""


class UnknownTaskTypeError(DocflowError):
    """An agent task names a worker variant that does not exist."""


class InvalidTransitionError(DocflowError):
    """A status change outside pending → processing → completed|failed."""


class OrderingLockedError(InputValidationError):
    """Manual reorder attempted before the automatic chronological reorder."""

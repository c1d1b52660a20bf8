class CoordinatorError(Exception):
    """Base class for coordination errors."""


class ConfigurationError(CoordinatorError):
    """Missing or invalid startup configuration."""


class TransientIOError(CoordinatorError):
    """A network or API hiccup; safe to retry."""


class QuotaExceededError(TransientIOError):
    """The record store rejected a request because its rate limit was hit."""


class LeaseAcquisitionError(TransientIOError):
    """Reading or writing a lease failed. The lease is not held."""

    def __init__(self, record_id: str, cause: Exception):
        super().__init__(f"Could not acquire lease on '{record_id}': {cause}")
        self.record_id = record_id
        self.cause = cause


class LockContentionError(CoordinatorError):
    """The record is leased by another worker. Raised to skip an item, not to fail it."""


class NonRetryableError(CoordinatorError):
    """Fails a work item immediately without spending further attempts."""


class NoAvailableResourcesError(NonRetryableError):
    def __init__(self, partition_key: str):
        super().__init__(f"No active resources for partition '{partition_key}'")
        self.partition_key = partition_key


class WorkItemFailure(CoordinatorError):
    """A work item exhausted its attempts."""

    def __init__(self, identifier: str, attempts: int, last_error: str):
        super().__init__(f"{identifier} failed after {attempts} attempt(s): {last_error}")
        self.identifier = identifier
        self.attempts = attempts
        self.last_error = last_error

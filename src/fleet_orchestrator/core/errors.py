"""Domain errors shared by the record store and the web layer."""


class NotFoundError(Exception):
    """Raised when a record does not exist or is not owned by the caller."""


class ValidationError(ValueError):
    """Raised when caller-supplied data is rejected."""

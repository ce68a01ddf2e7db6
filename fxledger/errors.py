class ValidationError(ValueError):
    """Raised when input is malformed. Nothing is written when it is raised."""


class PersistenceError(RuntimeError):
    """Raised when the backing store fails to read or write."""


class NotFoundError(LookupError):
    """Raised when a record does not exist for the requesting user."""

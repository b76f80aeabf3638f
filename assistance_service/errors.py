class AssistanceError(Exception):
    """
    Base class for failures raised by the request lifecycle.

    Parameters
    ----------
    message : str
        Human-readable description returned to REST callers.
    """

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(AssistanceError):
    """Input is malformed or outside the allowed values (HTTP 400)."""


class NotFoundError(AssistanceError):
    """The referenced record does not exist (HTTP 404)."""


class StorageError(AssistanceError):
    """The database rejected or failed the operation (HTTP 500)."""

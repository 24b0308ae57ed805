class AppError(Exception):
    """Base class for errors that map onto an HTTP status."""
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(AppError):
    """Malformed or missing input, or a reference to an unknown column."""
    status_code = 400


class ConflictError(AppError):
    """Duplicate column registration."""
    status_code = 400


class NotFoundError(AppError):
    status_code = 404


class UnavailableError(AppError):
    """No database connection became free in time. Safe to retry."""
    status_code = 503

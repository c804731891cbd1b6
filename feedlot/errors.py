"""Application errors raised by the service layer.

Every error carries a human-readable message and the HTTP status code the
API layer should answer with.
"""


class AppError(Exception):
    """Base error for expected, user-facing failures."""
    status_code = 500

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self):
        return {'error': self.message}


class NotFoundError(AppError):
    status_code = 404


class ValidationError(AppError):
    status_code = 400


class InvalidQuantityError(ValidationError):
    """Requested quantity is larger than what the pen holds."""


class InsufficientQuantityError(ValidationError):
    """The source allocation does not hold enough animals."""


class InsufficientCapacityError(ValidationError):
    """The destination pen has no room for the animals."""


class ConflictError(AppError):
    status_code = 409

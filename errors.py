class ShopError(Exception):
    """Base for errors a handler turns into a JSON error response."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ShopError):
    status_code = 400


class StateError(ShopError):
    """Operation not allowed in the record's current state."""

    status_code = 400


class InsufficientStock(ValidationError):
    pass


class AuthenticationError(ShopError):
    status_code = 401


class PermissionDenied(ShopError):
    status_code = 403


class NotFound(ShopError):
    status_code = 404


class Conflict(ShopError):
    status_code = 409

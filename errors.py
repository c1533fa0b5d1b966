"""Errors raised by the service layer and turned into JSON responses by the app."""


class ServiceError(Exception):
    status_code = 500

    def __init__(self, message):
        super().__init__(message)
        self.message = message


class ValidationError(ServiceError):
    status_code = 400


class ConflictError(ServiceError):
    """The record is not in the status the requested action needs."""
    status_code = 400


class UnauthorizedError(ServiceError):
    status_code = 401


class ForbiddenError(ServiceError):
    status_code = 403


class NotFoundError(ServiceError):
    status_code = 404


class PaymentGatewayError(ServiceError):
    status_code = 500

    def __init__(self, message, detail=''):
        super().__init__(message)
        self.detail = detail


class TooManyRequestsError(ServiceError):
    status_code = 429

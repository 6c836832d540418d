"""Errors raised by the DeSciL connector."""


class DescilServiceException(Exception):
    """Some error from the DeSciL connector"""


class ConfigurationError(DescilServiceException):
    """The service key, project code or endpoint is missing or invalid."""


class ValidationError(DescilServiceException):
    """An operation was called with missing or wrongly typed arguments."""


class NotFoundError(DescilServiceException):
    """No record with the given access code exists in the registry."""


class InvalidStateError(DescilServiceException):
    """The requested change would leave a record in an invalid state."""


class TransportError(DescilServiceException):
    """A request to the remote service failed.

    ``status_code`` and ``body`` hold whatever part of the response was
    received before the failure, or None.
    """

    def __init__(self, message, status_code=None, body=None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body

"""Errors raised by the device coordinator and its collaborators.

Every error carries the HTTP status the API reports it with; the kind is the
class name.
"""


class CoordinatorError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    @property
    def kind(self) -> str:
        return type(self).__name__


class InvalidClaim(CoordinatorError):
    status_code = 400


class AlreadyLinked(CoordinatorError):
    status_code = 400


class AccessDenied(CoordinatorError):
    status_code = 403


class TargetNotFound(CoordinatorError):
    status_code = 404


class NotFound(CoordinatorError):
    status_code = 404


class DispatchFailed(CoordinatorError):
    status_code = 500


class StoreError(CoordinatorError):
    status_code = 500


class DecodeError(CoordinatorError):
    """Malformed inbound telemetry. Never leaves the ingestor."""
    status_code = 400

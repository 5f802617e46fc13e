"""Error kinds surfaced to callers of the listener services.

Each kind carries a stable ``code`` a client can switch on and the HTTP
status the API answers with.
"""


class ServiceError(Exception):
    code = "internal"
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__

    def to_dict(self) -> dict:
        return {"detail": self.message, "code": self.code}


class Unauthenticated(ServiceError):
    code = "unauthenticated"
    status_code = 401


class PermissionDenied(ServiceError):
    code = "permission-denied"
    status_code = 403


class InvalidArgument(ServiceError):
    code = "invalid-argument"
    status_code = 400


class NotFound(ServiceError):
    code = "not-found"
    status_code = 404


class FailedPrecondition(ServiceError):
    code = "failed-precondition"
    status_code = 400


class AlreadyExists(ServiceError):
    code = "already-exists"
    status_code = 409


class Internal(ServiceError):
    code = "internal"
    status_code = 500


class InvalidSessionError(InvalidArgument):
    """A session handed to the earnings calculator has the wrong shape."""
    code = "invalid-session"

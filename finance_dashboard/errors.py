from enum import Enum
from functools import wraps

from .db import DATABASE_ERRORS


class ErrorKind(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    NOT_FOUND = "not_found"
    STORAGE_ERROR = "storage_error"
    VALIDATION_ERROR = "validation_error"


STATUS_BY_KIND = {
    ErrorKind.UNAUTHENTICATED: 401,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.STORAGE_ERROR: 500,
    ErrorKind.VALIDATION_ERROR: 400,
}


class DatabaseInitError(RuntimeError):
    """Raised when the database cannot be opened or migrated."""


class DashboardError(Exception):
    """Failure of a dashboard operation, tagged with the kind of failure.

    Every JSON endpoint reports errors through this type so clients always
    receive ``{"error": message, "kind": kind}`` with a status derived from
    the kind.
    """

    def __init__(self, kind, message):
        super().__init__(message)
        self.kind = ErrorKind(kind)
        self.message = message

    @property
    def status_code(self):
        return STATUS_BY_KIND[self.kind]

    def to_dict(self):
        return {"error": self.message, "kind": self.kind.value}

    @classmethod
    def unauthenticated(cls, message="Not authenticated"):
        return cls(ErrorKind.UNAUTHENTICATED, message)

    @classmethod
    def not_found(cls, message):
        return cls(ErrorKind.NOT_FOUND, message)

    @classmethod
    def storage(cls, exc):
        return cls(ErrorKind.STORAGE_ERROR, str(exc))

    @classmethod
    def validation(cls, message):
        return cls(ErrorKind.VALIDATION_ERROR, message)


def require_user(user_id):
    if user_id is None:
        raise DashboardError.unauthenticated()
    return user_id


def storage_errors(fn):
    """Report driver exceptions from a gateway call as ``storage_error``."""

    @wraps(fn)
    def wrapped(db, *args, **kwargs):
        try:
            return fn(db, *args, **kwargs)
        except DATABASE_ERRORS as exc:
            db.rollback()
            raise DashboardError.storage(exc) from exc

    return wrapped

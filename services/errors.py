"""
Service Errors
==============
Typed failures raised inside services and the result wrapper returned by
lifecycle / account operations.

Taxonomy:
- validation      -> bad input, rejected before any write
- authorization   -> role or state guard failed
- not_found       -> referenced row does not exist
- persistence     -> database / network failure, retryable by the user
- partial_failure -> a multi-step operation committed its primary write but a
                     later step failed; never retry the whole operation blindly
"""

import enum
import logging
from dataclasses import dataclass
from functools import wraps
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


class ErrorKind(str, enum.Enum):
    VALIDATION = "validation"
    AUTHORIZATION = "authorization"
    NOT_FOUND = "not_found"
    PERSISTENCE = "persistence"
    PARTIAL_FAILURE = "partial_failure"


class ServiceError(Exception):
    kind = ErrorKind.PERSISTENCE

    def __init__(self, message: str, value: Any = None):
        super().__init__(message)
        self.message = message
        # Authoritative row to hand back alongside the error, if any
        self.value = value


class InvalidInputError(ServiceError, ValueError):
    kind = ErrorKind.VALIDATION


class NotPermittedError(ServiceError, PermissionError):
    kind = ErrorKind.AUTHORIZATION


class NotFoundError(ServiceError, LookupError):
    kind = ErrorKind.NOT_FOUND


class PersistenceError(ServiceError):
    kind = ErrorKind.PERSISTENCE


class PartialFailureError(ServiceError):
    kind = ErrorKind.PARTIAL_FAILURE


@dataclass
class OperationResult:
    value: Any = None
    error: Optional[ServiceError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def friendly_error(message: str) -> str:
    """Map raw database / network messages to something a person can act on."""
    lower = (message or "").lower()

    if any(s in lower for s in ("schema", "connection", "503", "502", "500", "internal server")):
        return "Temporary server issue. Please try again in a moment."

    if any(s in lower for s in ("network", "fetch", "timeout", "timed out")):
        return "Network error. Please check your connection and try again."

    return message


def orchestrated(operation: str):
    """
    Wrap a service method so it returns an OperationResult instead of raising.

    The wrapped object must expose ``self.db`` (a SQLAlchemy session); any
    uncommitted work is rolled back on failure. SQLAlchemy errors and
    unexpected exceptions are reported as persistence errors.
    """
    def decorator(fn):
        @wraps(fn)
        def wrapper(self, *args, **kwargs):
            try:
                return OperationResult(value=fn(self, *args, **kwargs))
            except PartialFailureError as e:
                logger.error(f"{operation} partially failed: {e.message}")
                return OperationResult(value=e.value, error=e)
            except ServiceError as e:
                self.db.rollback()
                logger.warning(f"{operation} rejected ({e.kind.value}): {e.message}")
                return OperationResult(error=e)
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error(f"{operation} failed in database: {e}")
                return OperationResult(error=PersistenceError(friendly_error(str(e))))
            except Exception as e:
                self.db.rollback()
                logger.exception(f"{operation} failed unexpectedly")
                return OperationResult(error=PersistenceError(friendly_error(str(e))))
        return wrapper
    return decorator

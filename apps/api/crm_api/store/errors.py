from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.orm import Session

from crm_api.errors import (
    ApiError,
    DuplicateRecord,
    InsufficientPermissions,
    InvalidColumnReference,
    StoreOperationFailed,
)
from crm_api.metrics import observe_store_error


logger = logging.getLogger("crm_api.store")

INSUFFICIENT_PRIVILEGE = "42501"
UNDEFINED_COLUMN = "42703"
UNIQUE_VIOLATION = "23505"

_SQLSTATE_ERRORS: dict[str, type[ApiError]] = {
    INSUFFICIENT_PRIVILEGE: InsufficientPermissions,
    UNDEFINED_COLUMN: InvalidColumnReference,
    UNIQUE_VIOLATION: DuplicateRecord,
}

# SQLite reports no SQLSTATE, only messages.
_MESSAGE_SQLSTATES = (
    ("unique constraint failed", UNIQUE_VIOLATION),
    ("no such column", UNDEFINED_COLUMN),
    ("has no column named", UNDEFINED_COLUMN),
    ("permission denied", INSUFFICIENT_PRIVILEGE),
)


def store_error_code(exc: BaseException) -> str | None:
    orig = exc.orig if isinstance(exc, DBAPIError) else exc
    for attribute in ("sqlstate", "pgcode", "code"):
        value = getattr(orig, attribute, None)
        if isinstance(value, str) and len(value) == 5:
            return value

    message = str(orig).lower()
    for fragment, sqlstate in _MESSAGE_SQLSTATES:
        if fragment in message:
            return sqlstate
    return None


def translate_store_error(exc: BaseException) -> ApiError:
    """Map a record store failure onto the client-facing error taxonomy."""
    error_cls = _SQLSTATE_ERRORS.get(store_error_code(exc) or "", StoreOperationFailed)
    return error_cls()


@contextmanager
def store_operation(session: Session, operation: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        session.rollback()
        translated = translate_store_error(exc)
        observe_store_error(translated.code)
        logger.error(
            "store.operation_failed",
            extra={
                "operation": operation,
                "store_code": store_error_code(exc),
                "error_code": translated.code,
                "error": str(exc),
            },
        )
        raise translated from exc

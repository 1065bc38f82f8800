from __future__ import annotations

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

_SQLSTATE_CODES: dict[str, tuple[str, bool]] = {
    "23505": ("unique_violation", False),
    "23503": ("foreign_key_violation", False),
    "23502": ("not_null_violation", False),
    "23514": ("check_violation", False),
    "40P01": ("deadlock_detected", True),
    "40001": ("serialization_failure", True),
    "55P03": ("lock_not_available", True),
    "57014": ("query_canceled", True),
}


class DatabaseOperationError(RuntimeError):
    def __init__(self, *, error_code: str, sqlstate: str | None, retryable: bool) -> None:
        super().__init__(error_code)
        self.error_code = error_code
        self.sqlstate = sqlstate
        self.retryable = retryable


def _sqlstate(exc: DBAPIError) -> str | None:
    orig = getattr(exc, "orig", None)
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


def map_db_error(exc: DBAPIError) -> DatabaseOperationError:
    sqlstate = _sqlstate(exc)
    if sqlstate in _SQLSTATE_CODES:
        code, retryable = _SQLSTATE_CODES[sqlstate]
        return DatabaseOperationError(error_code=code, sqlstate=sqlstate, retryable=retryable)
    if sqlstate and sqlstate.startswith("08"):
        return DatabaseOperationError(error_code="connection_exception", sqlstate=sqlstate, retryable=True)
    if isinstance(exc, IntegrityError):
        return DatabaseOperationError(error_code="integrity_error", sqlstate=sqlstate, retryable=False)
    if isinstance(exc, OperationalError) or exc.connection_invalidated:
        return DatabaseOperationError(error_code="operational_error", sqlstate=sqlstate, retryable=True)
    return DatabaseOperationError(error_code="database_error", sqlstate=sqlstate, retryable=False)


def is_unique_violation(exc: BaseException) -> bool:
    if isinstance(exc, DatabaseOperationError):
        return exc.error_code == "unique_violation"
    if isinstance(exc, DBAPIError):
        return map_db_error(exc).error_code == "unique_violation"
    return False


async def commit_or_raise(db) -> None:
    try:
        await db.commit()
    except DBAPIError as exc:
        await db.rollback()
        raise map_db_error(exc) from exc

"""Error types and helpers for the orchestration core."""

from __future__ import annotations

import re
from collections.abc import Iterator

import click


class TaskcoreError(Exception):
    """Base class for failures raised by the orchestration core."""


class ValidationError(TaskcoreError):
    """Bad enum value or missing required field; raised before any state change."""


class NotFoundError(TaskcoreError):
    """Unknown task, gate, conflict or workflow id."""


class AlreadyRunningError(TaskcoreError):
    """Duplicate start of the executor or of a workflow that is already executing."""


class InvalidStateError(TaskcoreError):
    """Operation not allowed in the entity's current state."""


class UpstreamFailure(TaskcoreError):
    """The agent runner or approval assessor errored or exited non-zero."""


class SchemaNotInitializedError(click.ClickException):
    """The tables have not been created; printed by the CLI as a one-line hint."""


# (postgres, sqlite) wordings of "table is missing"
_MISSING_TABLE_PATTERNS = (
    re.compile(r'relation "(?P<table>[^"]+)" does not exist', re.IGNORECASE),
    re.compile(r"no such table:\s*(?P<table>\w+)", re.IGNORECASE),
)


def _causes(exc: BaseException | None) -> Iterator[BaseException]:
    seen: set[int] = set()
    while exc is not None and id(exc) not in seen:
        seen.add(id(exc))
        yield exc
        exc = exc.__cause__ or exc.__context__


def missing_table_name(exc: BaseException) -> str | None:
    for cause in _causes(exc):
        for pattern in _MISSING_TABLE_PATTERNS:
            found = pattern.search(str(cause))
            if found:
                return found.group("table")
    return None


def is_schema_missing_error(exc: BaseException) -> bool:
    """True when ``exc`` (or anything it wraps) reports a missing table."""
    if missing_table_name(exc) is not None:
        return True
    # asyncpg sometimes only surfaces the exception class name
    return any("undefinedtableerror" in str(cause).lower() for cause in _causes(exc))


def schema_not_initialized_message(exc: BaseException) -> str:
    table = missing_table_name(exc)
    where = f" (table `{table}` is missing)" if table else ""
    return (
        f"Database schema is not initialized{where}.\n"
        "Create it with `taskcore init-db` or `alembic upgrade head`."
    )

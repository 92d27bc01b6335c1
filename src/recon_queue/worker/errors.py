"""Typed job failures raised by the worker pipeline."""

from __future__ import annotations

import errno
from enum import Enum


class JobErrorKind(str, Enum):
    """Failure kinds; retriability is a property of the kind."""

    DIRECTORY_MISSING = "directory_missing"
    INVALID_INPUT = "invalid_input"
    CORRUPT_ARCHIVE = "corrupt_archive"
    PERMISSION_DENIED = "permission_denied"
    TOOL_NOT_FOUND = "tool_not_found"
    TOOL_EXIT_NONZERO = "tool_exit_nonzero"
    MESH_NOT_FOUND = "mesh_not_found"
    IO_FAILURE = "io_failure"
    RESOURCE_EXHAUSTED = "resource_exhausted"
    CONNECTION_FAILURE = "connection_failure"
    TIMEOUT = "timeout"

    @property
    def retriable(self) -> bool:
        return self in _RETRIABLE_KINDS


_RETRIABLE_KINDS = frozenset(
    {
        JobErrorKind.IO_FAILURE,
        JobErrorKind.RESOURCE_EXHAUSTED,
        JobErrorKind.CONNECTION_FAILURE,
        JobErrorKind.TIMEOUT,
    },
)


class JobError(RuntimeError):
    """Job failure tagged with its kind at the point it was raised."""

    def __init__(self, message: str, *, kind: JobErrorKind, stage: str | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.stage = stage

    @property
    def retriable(self) -> bool:
        return self.kind.retriable


class StageFailedError(JobError):
    """A pipeline stage exited with a non-zero code."""

    def __init__(self, *, stage: str, exit_code: int, stderr_tail: str) -> None:
        detail = f": {stderr_tail}" if stderr_tail else ""
        super().__init__(
            f"Stage {stage} failed with exit code {exit_code}{detail}",
            kind=JobErrorKind.TOOL_EXIT_NONZERO,
            stage=stage,
        )
        self.exit_code = exit_code
        self.stderr_tail = stderr_tail


def kind_for_os_error(error: OSError) -> JobErrorKind:
    """Map filesystem errors to job error kinds."""

    if isinstance(error, PermissionError):
        return JobErrorKind.PERMISSION_DENIED
    if isinstance(error, FileNotFoundError):
        return JobErrorKind.DIRECTORY_MISSING
    if isinstance(error, ConnectionError):
        return JobErrorKind.CONNECTION_FAILURE
    if isinstance(error, TimeoutError):
        return JobErrorKind.TIMEOUT
    if error.errno in _RESOURCE_ERRNOS:
        return JobErrorKind.RESOURCE_EXHAUSTED
    return JobErrorKind.IO_FAILURE


_RESOURCE_ERRNOS = frozenset(
    code
    for code in (
        errno.ENOSPC,
        getattr(errno, "EDQUOT", None),
        errno.ENOMEM,
        errno.EMFILE,
        errno.ENFILE,
    )
    if code is not None
)

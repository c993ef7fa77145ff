"""Error values for the module proxy.

Every error carries the operation that produced it and, optionally, the
module path and version involved, a kind (an HTTP status code) and a log
severity. Errors wrap each other, so the chain of operations forms a
readable trace that can be queried with :func:`ops`.

Build errors with :func:`e`; the operation comes first, everything else is
optional and recognised by its type.
"""

from __future__ import annotations

import inspect
from enum import IntEnum
from http import HTTPStatus

__all__ = [
    "Kind",
    "Level",
    "ModulePath",
    "ModuleVersion",
    "AthensError",
    "e",
    "is_kind",
    "severity",
    "expect",
    "kind",
    "kind_text",
    "ops",
    "is_repo_not_found_err",
    "is_not_found_err",
]


class Kind(IntEnum):
    """Error categories, expressed as HTTP status codes."""

    NOT_FOUND = HTTPStatus.NOT_FOUND
    BAD_REQUEST = HTTPStatus.BAD_REQUEST
    UNEXPECTED = HTTPStatus.INTERNAL_SERVER_ERROR
    ALREADY_EXISTS = HTTPStatus.CONFLICT
    RATE_LIMIT = HTTPStatus.TOO_MANY_REQUESTS
    NOT_IMPLEMENTED = HTTPStatus.NOT_IMPLEMENTED
    REDIRECT = HTTPStatus.MOVED_PERMANENTLY


class Level(IntEnum):
    """Log severities, most serious first."""

    PANIC = 0
    FATAL = 1
    ERROR = 2
    WARN = 3
    INFO = 4
    DEBUG = 5
    TRACE = 6

    @property
    def label(self) -> str:
        """The lower-case name used in log output."""
        return "warning" if self is Level.WARN else self.name.lower()

    def __str__(self) -> str:
        return self.label


class ModulePath(str):
    """A module path, distinguished from plain message strings."""


class ModuleVersion(str):
    """A module version, distinguished from plain message strings."""


class AthensError(Exception):
    """An error raised by the proxy, carrying context about its cause."""

    def __init__(
        self,
        op: str,
        *,
        kind: int = 0,
        module: str = "",
        version: str = "",
        err: BaseException | None = None,
        severity: Level | None = None,
    ) -> None:
        super().__init__(op)
        self.op = op
        self.kind = kind
        self.module = module
        self.version = version
        self.err = err
        self.severity = severity

    def __str__(self) -> str:
        return str(self.err) if self.err is not None else ""

    def __repr__(self) -> str:
        return (
            f"AthensError(op={self.op!r}, kind={self.kind!r}, module={self.module!r}, "
            f"version={self.version!r}, err={self.err!r}, severity={self.severity!r})"
        )


def e(op: str, *args: object) -> AthensError:
    """Build an :class:`AthensError` for operation ``op``.

    Each argument is recognised by type: an exception becomes the wrapped
    error, a plain string its message, a :class:`ModulePath` or
    :class:`ModuleVersion` the module or version, a :class:`Level` the
    severity and an integer the kind. Other values are ignored.
    """
    err = AthensError(op)
    if not args:
        msg = "errors.E called with 0 args"
        frame = inspect.currentframe()
        caller = frame.f_back if frame is not None else None
        if caller is not None:
            msg = f"{msg} - {caller.f_code.co_filename}:{caller.f_lineno}"
        err.err = Exception(msg)
    for arg in args:
        if isinstance(arg, BaseException):
            err.err = arg
        elif isinstance(arg, ModulePath):
            err.module = arg
        elif isinstance(arg, ModuleVersion):
            err.version = arg
        elif isinstance(arg, str):
            err.err = Exception(arg)
        elif isinstance(arg, Level):
            err.severity = arg
        elif isinstance(arg, int) and not isinstance(arg, bool):
            err.kind = arg
    if err.err is None:
        err.err = Exception(kind_text(err))
    return err


def _kind_of(err: BaseException | None) -> int:
    if not isinstance(err, AthensError):
        return Kind.UNEXPECTED
    if err.kind != 0:
        return err.kind
    return _kind_of(err.err)


def is_kind(err: BaseException | None, kind: int) -> bool:
    """Report whether ``err`` is of the given kind; ``None`` never is."""
    if err is None:
        return False
    return _kind_of(err) == kind


def severity(err: BaseException | None) -> Level:
    """Return the log level of an error, searching wrapped errors.

    Errors without a severity of their own are logged at ERROR level.
    """
    if not isinstance(err, AthensError):
        return Level.ERROR
    if err.severity is None or err.severity < Level.ERROR:
        return severity(err.err)
    return err.severity


def expect(err: BaseException | None, *args: int) -> Level:
    """Return INFO if the error has one of the expected kinds, else ERROR."""
    if any(_kind_of(err) == expected for expected in args):
        return Level.INFO
    return Level.ERROR


def kind(err: BaseException | None) -> int:
    """Return the first kind found along the chain of wrapped errors."""
    return _kind_of(err)


def kind_text(err: BaseException | None) -> str:
    """Return the HTTP status text of an error's kind."""
    try:
        return HTTPStatus(_kind_of(err)).phrase
    except ValueError:
        return ""


def ops(err: AthensError) -> list[str]:
    """Return the operations of an error and all the errors it wraps."""
    result = [err.op]
    inner = err.err
    while isinstance(inner, AthensError):
        result.append(inner.op)
        inner = inner.err
    return result


def is_repo_not_found_err(err: BaseException) -> bool:
    """Report whether the go command hinted at a missing repository."""
    return "remote: Repository not found" in str(err)


def is_not_found_err(err: BaseException | None) -> bool:
    """Report whether the error is of kind NOT_FOUND."""
    return _kind_of(err) == Kind.NOT_FOUND
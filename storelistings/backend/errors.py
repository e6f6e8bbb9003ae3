"""Failure kinds and the ``Result`` wrapper returned by ``Store``.

Backend modules raise the exceptions below; ``backend.store`` catches them at
its boundary and hands callers a ``Result`` instead, tagged with the stage
that failed (``"syncing updates"``, ``"getting file URL for file X"`` …).
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Generic, Iterator, TypeVar

T = TypeVar("T")


class StoreError(Exception):
    """Base class for every failure this package reports."""

    def __init__(self, message: str, *, stage: str = "") -> None:
        super().__init__(message)
        self.stage = stage

    def describe(self) -> str:
        """One-line message including the failing stage, when known."""
        if self.stage:
            return f"Error while {self.stage}: {self}"
        return str(self)


class NetworkError(StoreError):
    """Transport-level failure (DNS, TLS, connection reset, timeout)."""


class UpstreamError(StoreError):
    """The service answered with a non-success HTTP status."""

    def __init__(self, status: int, body: str = "", *, stage: str = "") -> None:
        detail = f": {body}" if body else ""
        super().__init__(f"HTTP {status}{detail}", stage=stage)
        self.status = status
        self.body = body


class SchemaError(StoreError):
    """A required field is missing or has the wrong shape."""

    def __init__(self, field: str, message: str = "", *, stage: str = "") -> None:
        super().__init__(message or f"Missing or malformed field {field!r}", stage=stage)
        self.field = field


class NoApplicablePackage(StoreError):
    """No catalog package targets the requested device family / OS version."""


class DependencyUnsatisfied(StoreError):
    """No framework file satisfies a package's declared dependency."""

    def __init__(self, identity: str, min_version: object, *, stage: str = "") -> None:
        super().__init__(
            f"No applicable framework package {identity} >= {min_version}", stage=stage
        )
        self.identity = identity
        self.min_version = min_version


class NoInstallerFound(StoreError):
    """The package manifest lists no usable installer."""


class Cancelled(StoreError):
    """The caller's cancel event was set."""

    def __init__(self, message: str = "Operation cancelled", *, stage: str = "") -> None:
        super().__init__(message, stage=stage)


class DownloadError(StoreError):
    """Fetching or verifying a resolved file failed."""


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class Result(Generic[T]):
    """Explicit success/failure outcome of one public operation."""

    value: T | None = None
    error: StoreError | None = None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: StoreError) -> "Result[T]":
        return cls(error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        """Return the value, or raise the stored error."""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


def raise_if_cancelled(cancel_event) -> None:
    """Raise ``Cancelled`` when *cancel_event* (a ``threading.Event``) is set."""
    if cancel_event is not None and cancel_event.is_set():
        raise Cancelled()


@contextmanager
def stage(name: str) -> Iterator[None]:
    """Tag any ``StoreError`` raised inside the block with *name*.

    An error that already carries a stage keeps it, so the innermost stage
    is the one reported.
    """
    try:
        yield
    except StoreError as exc:
        if not exc.stage:
            exc.stage = name
        raise

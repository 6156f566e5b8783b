from __future__ import annotations

from typing import Any


class JobRunStoreError(RuntimeError):
    pass


class StorageUnavailable(JobRunStoreError):
    """The backing store could not complete the operation (locked, I/O, disk full...)."""


class NotFound(JobRunStoreError):
    def __init__(self, message: str, *, run_id: int | None = None) -> None:
        super().__init__(message)
        self.run_id = run_id


class InvalidArgument(JobRunStoreError, ValueError):
    def __init__(self, message: str, *, details: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.details = details or []

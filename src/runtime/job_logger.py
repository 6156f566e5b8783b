from __future__ import annotations

import logging
from types import TracebackType

from src.storage.errors import JobRunStoreError
from src.storage.sqlite_store import SQLiteStore


logger = logging.getLogger(__name__)

# Recorded when the job body raises before reporting its own exit code.
EXIT_CODE_ABORTED = -1


class JobLogger:
    """Records one execution of a job into the run store.

    The run is created on construction. Output is appended line by line; the run
    is finished by `complete()`, or by leaving the `with` block:
    - normal exit without `complete()` records 0
    - an exception records `EXIT_CODE_ABORTED` and propagates
    """

    def __init__(self, store: SQLiteStore, name: str) -> None:
        self._store = store
        self.name = name
        self.run_id = store.create_job_run(name)
        self._exit_code: int | None = None

    @property
    def completed(self) -> bool:
        return self._exit_code is not None

    def stdout_writeline(self, line: str) -> None:
        self._store.update_job_stdout(self.run_id, f"{line}\n")

    def stderr_writeline(self, line: str) -> None:
        self._store.update_job_stderr(self.run_id, f"{line}\n")

    def complete(self, exit_code: int) -> None:
        if self._exit_code is not None:
            raise RuntimeError(f"Job run {self.run_id} already completed with exit code {self._exit_code}.")
        self._store.update_job_status(self.run_id, exit_code)
        self._exit_code = int(exit_code)

    def __enter__(self) -> "JobLogger":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if self.completed:
            return
        if exc_type is None:
            self.complete(0)
            return

        logger.warning("job %r (run %d) aborted: %s", self.name, self.run_id, exc)
        try:
            self.stderr_writeline(f"{exc_type.__name__}: {exc}")
        except JobRunStoreError as e:
            logger.warning("job %r (run %d): cannot record abort reason: %s", self.name, self.run_id, e)
        self.complete(EXIT_CODE_ABORTED)

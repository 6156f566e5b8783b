from __future__ import annotations

import tempfile
from pathlib import Path

import pytest

from src.config.load_config import StoreConfig
from src.runtime.job_logger import EXIT_CODE_ABORTED, JobLogger
from src.runtime.startup import cleanup_stale_runs_on_startup
from src.storage.errors import StorageUnavailable
from src.storage.sqlite_store import SQLiteStore


def test_job_logger_records_lines_and_exit_code() -> None:
    with tempfile.TemporaryDirectory() as td:
        with SQLiteStore(f"{td}/app.db") as store:
            job = JobLogger(store, "update_index")
            job.stdout_writeline("step 1")
            job.stderr_writeline("careful")
            job.stdout_writeline("step 2")
            job.complete(0)

            run = store.get_job_run(job.run_id)
            assert run is not None
            assert run.name == "update_index"
            assert run.stdout == "step 1\nstep 2\n"
            assert run.stderr == "careful\n"
            assert run.exit_code == 0
            assert job.completed


def test_job_logger_complete_only_once() -> None:
    with tempfile.TemporaryDirectory() as td:
        with SQLiteStore(f"{td}/app.db") as store:
            job = JobLogger(store, "x")
            job.complete(2)
            with pytest.raises(RuntimeError):
                job.complete(0)
            run = store.get_job_run(job.run_id)
            assert run is not None
            assert run.exit_code == 2


def test_job_logger_context_defaults_to_success() -> None:
    with tempfile.TemporaryDirectory() as td:
        with SQLiteStore(f"{td}/app.db") as store:
            with JobLogger(store, "x") as job:
                job.stdout_writeline("ok")

            run = store.get_job_run(job.run_id)
            assert run is not None
            assert run.exit_code == 0


def test_job_logger_context_keeps_explicit_exit_code() -> None:
    with tempfile.TemporaryDirectory() as td:
        with SQLiteStore(f"{td}/app.db") as store:
            with JobLogger(store, "x") as job:
                job.complete(5)

            run = store.get_job_run(job.run_id)
            assert run is not None
            assert run.exit_code == 5


def test_job_logger_context_records_abort_on_exception() -> None:
    with tempfile.TemporaryDirectory() as td:
        with SQLiteStore(f"{td}/app.db") as store:
            with pytest.raises(ValueError):
                with JobLogger(store, "x") as job:
                    job.stdout_writeline("started")
                    raise ValueError("boom")

            run = store.get_job_run(job.run_id)
            assert run is not None
            assert run.exit_code == EXIT_CODE_ABORTED
            assert run.stdout == "started\n"
            assert run.stderr == "ValueError: boom\n"


def test_startup_cleanup_sweeps_unfinished_runs() -> None:
    with tempfile.TemporaryDirectory() as td:
        cfg = StoreConfig(db_path=Path(td) / "app.db", cleanup_on_startup=True)
        with SQLiteStore.from_config(cfg) as store:
            done = JobLogger(store, "a")
            done.complete(0)
            JobLogger(store, "b")

        assert cleanup_stale_runs_on_startup(config=cfg) == 1

        with SQLiteStore.from_config(cfg) as store:
            assert [r.id for r in store.list_job_runs_with_filter()] == [done.run_id]


def test_startup_cleanup_can_be_disabled() -> None:
    with tempfile.TemporaryDirectory() as td:
        cfg = StoreConfig(db_path=Path(td) / "app.db", cleanup_on_startup=False)
        with SQLiteStore.from_config(cfg) as store:
            JobLogger(store, "b")
            assert cleanup_stale_runs_on_startup(store, config=cfg) == 0
            assert store.compute_job_run_stats().pending == 1


def test_job_logger_still_completes_when_abort_reason_cannot_be_written(monkeypatch: pytest.MonkeyPatch) -> None:
    with tempfile.TemporaryDirectory() as td:
        with SQLiteStore(f"{td}/app.db") as store:

            def _stderr_unavailable(run_id: int, fragment: str) -> None:
                raise StorageUnavailable("disk full")

            with pytest.raises(ValueError):
                with JobLogger(store, "x") as job:
                    monkeypatch.setattr(store, "update_job_stderr", _stderr_unavailable)
                    raise ValueError("boom")

            assert job.completed
            run = store.get_job_run(job.run_id)
            assert run is not None
            assert run.exit_code == EXIT_CODE_ABORTED
            assert run.stderr == ""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator

from src.config.load_config import StoreConfig, default_db_path
from src.storage.errors import InvalidArgument, NotFound, StorageUnavailable
from src.storage.pagination import (
    SQLITE_INT_MAX,
    SQLITE_INT_MIN,
    id_in_condition,
    make_pagination_query_with_condition,
    reject_bare_string,
    validate_list_params,
)


logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2

JOB_RUN_COLUMNS = (
    "id",
    "job",
    "exit_code",
    "stdout",
    "stderr",
    "created_at",
    "updated_at",
    "finished_at",
)

_OUTPUT_COLUMNS = frozenset({"stdout", "stderr"})


def _utc_ts() -> float:
    return time.time()


def _require_id(value: Any, *, key: str = "run_id") -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidArgument(f"Invalid {key}: expected int, got {value!r}")
    if not SQLITE_INT_MIN <= value <= SQLITE_INT_MAX:
        raise InvalidArgument(f"Invalid {key}: {value!r} is outside the 64-bit integer range")
    return int(value)


@dataclass(frozen=True)
class JobRunRecord:
    id: int
    name: str
    exit_code: int | None
    stdout: str
    stderr: str
    created_at: float
    updated_at: float
    finished_at: float | None

    @property
    def is_running(self) -> bool:
        return self.exit_code is None


@dataclass(frozen=True)
class JobRunStats:
    success: int
    failed: int
    pending: int

    @property
    def total(self) -> int:
        return self.success + self.failed + self.pending


def _row_to_job_run(r: sqlite3.Row) -> JobRunRecord:
    return JobRunRecord(
        id=int(r["id"]),
        name=str(r["job"]),
        exit_code=int(r["exit_code"]) if r["exit_code"] is not None else None,
        stdout=str(r["stdout"]),
        stderr=str(r["stderr"]),
        created_at=float(r["created_at"]),
        updated_at=float(r["updated_at"]),
        finished_at=float(r["finished_at"]) if r["finished_at"] is not None else None,
    )


def _names_condition(names: Iterable[str], *, column: str = "job") -> tuple[str, list[str]]:
    unique = sorted(set(names))
    if not unique:
        return "1 = 0", []
    return "%s IN (%s)" % (column, ",".join(["?"] * len(unique))), unique


class SQLiteStore:
    """SQLite-backed store for background job runs.

    - One row per run; stdout/stderr grow by in-place `||` appends.
    - Every write is a single statement inside `BEGIN IMMEDIATE`, so concurrent
      appends to the same run are serialized by SQLite and never lost.
    - The instance may be shared across threads (one connection, guarded by a lock);
      separate instances on the same file rely on SQLite's file locking.
    """

    def __init__(
        self,
        db_path: str | Path | None = None,
        *,
        busy_timeout_s: float = 5.0,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.db_path = Path(db_path or default_db_path()).expanduser().resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._clock = clock or _utc_ts
        self._lock = threading.RLock()

        try:
            self._conn = sqlite3.connect(
                str(self.db_path),
                timeout=float(busy_timeout_s),
                check_same_thread=False,
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode = WAL;")
            self._conn.execute("PRAGMA synchronous = NORMAL;")
        except sqlite3.Error as e:
            raise StorageUnavailable(f"Cannot open job run database at {self.db_path}: {e}") from e

        try:
            self._init_schema()
        except Exception:
            self._conn.close()
            raise

    @classmethod
    def from_config(cls, cfg: StoreConfig, *, clock: Callable[[], float] | None = None) -> "SQLiteStore":
        return cls(cfg.db_path, busy_timeout_s=cfg.busy_timeout_s, clock=clock)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self) -> "SQLiteStore":
        return self

    def __exit__(self, *_exc: object) -> None:
        self.close()

    @contextmanager
    def transaction(self, *, mode: str = "IMMEDIATE") -> Iterator[None]:
        """Run the block as one SQLite transaction.

        Any sqlite3 failure rolls back and surfaces as `StorageUnavailable`;
        other exceptions roll back and propagate unchanged.
        """
        with self._lock:
            try:
                self._conn.execute(f"BEGIN {mode};")
            except sqlite3.Error as e:
                logger.warning("job_runs: cannot begin transaction: %s", e)
                raise StorageUnavailable(f"Cannot begin transaction: {e}") from e
            try:
                yield
                self._conn.commit()
            except sqlite3.Error as e:
                self._rollback_quietly()
                logger.warning("job_runs: write failed, rolled back: %s", e)
                raise StorageUnavailable(f"Job run write failed: {e}") from e
            except BaseException:
                self._rollback_quietly()
                raise

    @contextmanager
    def _reading(self) -> Iterator[None]:
        with self._lock:
            try:
                yield
            except sqlite3.Error as e:
                logger.warning("job_runs: read failed: %s", e)
                raise StorageUnavailable(f"Job run read failed: {e}") from e

    def _rollback_quietly(self) -> None:
        # Connection may already be closed.
        try:
            self._conn.rollback()
        except sqlite3.Error as e:
            logger.debug("job_runs: rollback failed: %s", e)

    def _now(self) -> float:
        return float(self._clock())

    # --- Schema
    def _init_schema(self) -> None:
        with self.transaction():
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS meta (
                  key TEXT PRIMARY KEY,
                  value TEXT NOT NULL
                );
                """
            )
            # AUTOINCREMENT: ids of swept runs are never handed out again.
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS job_runs (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  job TEXT NOT NULL,
                  exit_code INTEGER,
                  stdout TEXT NOT NULL DEFAULT '',
                  stderr TEXT NOT NULL DEFAULT '',
                  created_at REAL NOT NULL,
                  updated_at REAL NOT NULL,
                  finished_at REAL
                );
                """
            )
            # New databases start at schema_version=1 and migrate forward below.
            self._conn.execute(
                "INSERT OR IGNORE INTO meta(key, value) VALUES(?, ?);",
                ("schema_version", "1"),
            )

        self._migrate_if_needed()

    def _get_schema_version(self) -> int:
        row = self._conn.execute("SELECT value FROM meta WHERE key = ?;", ("schema_version",)).fetchone()
        if row is None:
            return 0
        try:
            return int(row["value"])
        except ValueError:
            return 0

    def _set_schema_version(self, version: int) -> None:
        self._conn.execute(
            "INSERT INTO meta(key, value) VALUES(?, ?) ON CONFLICT(key) DO UPDATE SET value = excluded.value;",
            ("schema_version", str(int(version))),
        )

    def schema_version(self) -> int:
        with self._reading():
            return self._get_schema_version()

    def _migrate_if_needed(self) -> None:
        target = int(SCHEMA_VERSION)
        with self.transaction():
            # Re-read under the write lock: another process may have migrated already.
            current = self._get_schema_version()
            if current == target:
                return
            if current > target:
                raise RuntimeError(f"DB schema_version={current} is newer than code expects ({target}).")

            while current < target:
                if current == 1:
                    self._migrate_1_to_2()
                    current = 2
                else:
                    raise RuntimeError(f"Missing migration step for schema_version={current} -> {current+1}")
                self._set_schema_version(current)
                logger.info("job_runs: migrated schema to version %d", current)

    def _migrate_1_to_2(self) -> None:
        # Name-filtered listing / latest-run lookups, and the stale sweep.
        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_job_runs_job_id ON job_runs(job, id);")
        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_job_runs_exit_code ON job_runs(exit_code);")

    # --- Writes
    def create_job_run(self, name: str) -> int:
        if not isinstance(name, str):
            raise InvalidArgument(f"Invalid job name: expected str, got {name!r}")

        with self.transaction():
            ts = self._now()
            cur = self._conn.execute(
                """
                INSERT INTO job_runs(job, exit_code, stdout, stderr, created_at, updated_at, finished_at)
                VALUES(?, NULL, '', '', ?, ?, NULL);
                """,
                (name, ts, ts),
            )
            run_id = int(cur.lastrowid)

        logger.debug("job_runs: created run %d for job %r", run_id, name)
        return run_id

    def _append_output(self, column: str, run_id: int, fragment: str) -> None:
        if column not in _OUTPUT_COLUMNS:
            raise InvalidArgument(f"Unknown output channel: {column!r}")
        run_id = _require_id(run_id)
        if not isinstance(fragment, str):
            raise InvalidArgument(f"Invalid {column} fragment: expected str, got {type(fragment).__name__}")

        with self.transaction():
            cur = self._conn.execute(
                f"""
                UPDATE job_runs
                SET
                  {column} = {column} || ?,
                  updated_at = MAX(updated_at, ?)
                WHERE id = ?;
                """,
                (fragment, self._now(), run_id),
            )
            if cur.rowcount != 1:
                raise NotFound(f"Job run {run_id} not found.", run_id=run_id)

    def update_job_stdout(self, run_id: int, fragment: str) -> None:
        self._append_output("stdout", run_id, fragment)

    def update_job_stderr(self, run_id: int, fragment: str) -> None:
        self._append_output("stderr", run_id, fragment)

    def update_job_status(self, run_id: int, exit_code: int) -> None:
        """Record the exit code and finish time.

        Not guarded against a second call: the later exit code and finish time win.
        """
        run_id = _require_id(run_id)
        exit_code = _require_id(exit_code, key="exit_code")

        with self.transaction():
            ts = self._now()
            cur = self._conn.execute(
                """
                UPDATE job_runs
                SET
                  exit_code = ?,
                  finished_at = ?,
                  updated_at = MAX(updated_at, ?)
                WHERE id = ?;
                """,
                (exit_code, ts, ts, run_id),
            )
            if cur.rowcount != 1:
                raise NotFound(f"Job run {run_id} not found.", run_id=run_id)

        logger.debug("job_runs: run %d finished with exit code %d", run_id, exit_code)

    def cleanup_stale_job_runs(self) -> int:
        """Delete every run without an exit code.

        Only safe when no run can legitimately be in flight, e.g. once at process
        start before any new run is created. Returns the number of runs removed.
        """
        with self.transaction():
            cur = self._conn.execute("DELETE FROM job_runs WHERE exit_code IS NULL;")
            removed = int(cur.rowcount)

        logger.info("job_runs: removed %d stale run(s)", removed)
        return removed

    # --- Reads
    def get_job_run(self, run_id: int) -> JobRunRecord | None:
        run_id = _require_id(run_id)
        with self._reading():
            row = self._conn.execute(
                f"SELECT {', '.join(JOB_RUN_COLUMNS)} FROM job_runs WHERE id = ? LIMIT 1;",
                (run_id,),
            ).fetchone()
        return _row_to_job_run(row) if row is not None else None

    def get_latest_job_run(self, name: str) -> JobRunRecord | None:
        with self._reading():
            row = self._conn.execute(
                f"""
                SELECT {', '.join(JOB_RUN_COLUMNS)}
                FROM job_runs
                WHERE job = ?
                ORDER BY id DESC
                LIMIT 1;
                """,
                (str(name),),
            ).fetchone()
        return _row_to_job_run(row) if row is not None else None

    def compute_job_run_stats(self, *, names: Iterable[str] | None = None) -> JobRunStats:
        where_sql = ""
        params: list[Any] = []
        if names is not None:
            reject_bare_string(names, key="names")
            condition, params = _names_condition([str(n) for n in names])
            where_sql = f"WHERE {condition}"

        with self._reading():
            row = self._conn.execute(
                f"""
                SELECT
                  COALESCE(SUM(CASE WHEN exit_code = 0 THEN 1 ELSE 0 END), 0) AS success,
                  COALESCE(SUM(CASE WHEN exit_code IS NOT NULL AND exit_code != 0 THEN 1 ELSE 0 END), 0) AS failed,
                  COALESCE(SUM(CASE WHEN exit_code IS NULL THEN 1 ELSE 0 END), 0) AS pending
                FROM job_runs
                {where_sql};
                """,
                params,
            ).fetchone()
        return JobRunStats(success=int(row["success"]), failed=int(row["failed"]), pending=int(row["pending"]))

    def list_job_runs_with_filter(
        self,
        ids: Iterable[int] | None = None,
        limit: int | None = None,
        skip_id: int | None = None,
        backwards: bool = False,
        *,
        names: Iterable[str] | None = None,
    ) -> list[JobRunRecord]:
        """Keyset page over runs, always returned in ascending id order.

        - `ids` / `names`: optional inclusion filters; an empty collection matches nothing.
        - `skip_id`: exclusive cursor; rows strictly after it (or before it when `backwards`).
        - `limit`: page size; None returns every remaining row in that direction.
        """
        p = validate_list_params(ids=ids, names=names, limit=limit, skip_id=skip_id, backwards=backwards)

        conditions: list[str] = []
        params: list[Any] = []
        if p.ids is not None:
            conditions.append(id_in_condition(p.ids))
        if p.names is not None:
            condition, name_params = _names_condition(p.names)
            conditions.append(condition)
            params.extend(name_params)

        sql, bound = make_pagination_query_with_condition(
            "job_runs",
            JOB_RUN_COLUMNS,
            limit=p.limit,
            skip_id=p.skip_id,
            backwards=p.backwards,
            condition=" AND ".join(conditions) or None,
            params=params,
        )

        with self._reading():
            rows = self._conn.execute(sql, bound).fetchall()
        return [_row_to_job_run(r) for r in rows]

    def list_job_runs_page(
        self,
        *,
        limit: int,
        cursor: int | None = None,
        backwards: bool = False,
        ids: Iterable[int] | None = None,
        names: Iterable[str] | None = None,
    ) -> dict[str, Any]:
        """Page envelope on top of `list_job_runs_with_filter`.

        `next_cursor` continues in the same direction: the last id going forward,
        the first id going backwards. It is None when no further rows exist.
        """
        if isinstance(limit, bool) or not isinstance(limit, int) or not 1 <= limit < SQLITE_INT_MAX:
            # limit + 1 is bound below, so the largest 64-bit value is excluded.
            raise InvalidArgument(f"Invalid limit: expected int in [1, {SQLITE_INT_MAX - 1}], got {limit!r}")

        rows = self.list_job_runs_with_filter(
            ids=ids,
            limit=limit + 1,
            skip_id=cursor,
            backwards=backwards,
            names=names,
        )

        has_more = len(rows) > limit
        if has_more:
            # The extra row sits at the far end of the traversal direction.
            rows = rows[1:] if backwards else rows[:limit]

        next_cursor: int | None = None
        if has_more and rows:
            next_cursor = rows[0].id if backwards else rows[-1].id

        return {"items": rows, "has_more": has_more, "next_cursor": next_cursor}

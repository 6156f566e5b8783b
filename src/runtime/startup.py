from __future__ import annotations

import logging

from src.config.load_config import StoreConfig, load_store_config
from src.storage.sqlite_store import SQLiteStore


logger = logging.getLogger(__name__)


def cleanup_stale_runs_on_startup(
    store: SQLiteStore | None = None,
    *,
    config: StoreConfig | None = None,
) -> int:
    """Drop runs left unfinished by a previous process.

    Call once, before this process creates any run. Returns the number removed
    (0 when `cleanup_on_startup` is disabled).
    """
    cfg = config or load_store_config()
    if not cfg.cleanup_on_startup:
        logger.info("job_runs: startup cleanup disabled")
        return 0

    if store is not None:
        return store.cleanup_stale_job_runs()

    with SQLiteStore.from_config(cfg) as owned:
        return owned.cleanup_stale_job_runs()

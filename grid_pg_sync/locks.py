from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from typing import Dict, Iterator

import psycopg2
from psycopg2.extensions import parse_dsn

LOG = logging.getLogger(__name__)

_registry_lock = threading.Lock()
_run_locks: Dict[str, threading.Lock] = {}


def target_key(dsn: str) -> str:
    """host:port/dbname for a DSN; the raw text when it cannot be parsed."""
    try:
        params = parse_dsn(dsn)
    except psycopg2.ProgrammingError:
        return dsn.strip().lower()
    host = (params.get("host") or "localhost").lower()
    port = params.get("port") or "5432"
    dbname = (params.get("dbname") or params.get("user") or "").lower()
    return f"{host}:{port}/{dbname}"


def lock_for(key: str) -> threading.Lock:
    with _registry_lock:
        lock = _run_locks.get(key)
        if lock is None:
            lock = _run_locks[key] = threading.Lock()
        return lock


@contextmanager
def exclusive_run(dsn: str) -> Iterator[str]:
    """Serialize export runs that target the same database."""
    key = target_key(dsn)
    lock = lock_for(key)
    t0 = time.perf_counter()
    lock.acquire()
    LOG.debug("Acquired run lock for %s (waited %.3fs)", key, time.perf_counter() - t0)
    try:
        yield key
    finally:
        lock.release()
        LOG.debug("Released run lock for %s", key)

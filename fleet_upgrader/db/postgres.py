from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any


def _import_psycopg() -> Any:
    try:
        import psycopg  # type: ignore
    except ImportError as exc:
        raise RuntimeError("psycopg is required for PostgreSQL backends; install psycopg[binary]") from exc
    return psycopg


class PostgresTxRunner:
    """Run callback logic in one PostgreSQL transaction."""

    def __init__(self, dsn: str) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()

    def run_in_tx(self, *, fn: Callable[[Any], Any]) -> Any:
        psycopg = _import_psycopg()
        with psycopg.connect(self._dsn) as conn:
            result = fn(conn)
            conn.commit()
            return result

    @contextmanager
    def advisory_lock(self, name: str) -> Iterator[None]:
        """Hold a transaction-scoped advisory lock; ending the transaction releases it."""
        if not name.strip():
            raise ValueError("lock name must not be empty")
        psycopg = _import_psycopg()
        with psycopg.connect(self._dsn) as conn:
            try:
                with conn.cursor() as cur:
                    cur.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (name,))
                yield
            finally:
                conn.rollback()

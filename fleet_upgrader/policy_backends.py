from __future__ import annotations

import re
import sqlite3
import threading
import time
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from fleet_upgrader.config import UpgraderConfig
from fleet_upgrader.db.postgres import PostgresTxRunner
from fleet_upgrader.policy_store import (
    CONFIDENCE_OVERRIDES_KEY,
    DEFAULT_UPGRADES_PER_MINUTE,
    TARGET_MAJOR_VERSION_KEY,
    UPGRADES_PER_MINUTE_KEY,
    InMemoryPolicyStore,
    UpgradePolicyMixin,
)


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


class SqlitePolicyStore(UpgradePolicyMixin):
    """SQLite-backed knob store; the override lock is a `BEGIN IMMEDIATE` transaction."""

    def __init__(
        self,
        db_path: str | Path,
        *,
        default_upgrades_per_minute: float = DEFAULT_UPGRADES_PER_MINUTE,
        busy_poll_interval_ms: int = 50,
    ) -> None:
        self.default_upgrades_per_minute = default_upgrades_per_minute
        self._db_path = Path(db_path).expanduser()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._busy_poll_interval_ms = max(1, int(busy_poll_interval_ms))
        self._guard = threading.Lock()
        self._named_locks: dict[str, threading.Lock] = {}
        self._local = threading.local()
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._session() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS upgrade_settings (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )

    @contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        held = getattr(self._local, "conn", None)
        if held is not None:
            # Inside the exclusive lock: reuse its transaction.
            yield held
            return
        conn = self._connect()
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def _read_setting(self, key: str) -> str | None:
        with self._session() as conn:
            row = conn.execute("SELECT value FROM upgrade_settings WHERE key = ?", (key,)).fetchone()
        return str(row["value"]) if row is not None else None

    def _write_setting(self, key: str, value: str | None) -> None:
        with self._session() as conn:
            if value is None:
                conn.execute("DELETE FROM upgrade_settings WHERE key = ?", (key,))
                return
            conn.execute(
                """
                INSERT INTO upgrade_settings(key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """,
                (key, value, datetime.now(UTC).isoformat()),
            )

    def _begin_immediate(self, conn: sqlite3.Connection) -> None:
        while True:
            try:
                conn.execute("BEGIN IMMEDIATE")
                return
            except sqlite3.OperationalError as exc:
                if "locked" not in str(exc).lower():
                    raise
                time.sleep(self._busy_poll_interval_ms / 1000.0)

    @contextmanager
    def _exclusive_lock(self, name: str) -> Iterator[None]:
        with self._guard:
            named = self._named_locks.setdefault(name, threading.Lock())
        with named:
            conn = self._connect()
            try:
                self._begin_immediate(conn)
                self._local.conn = conn
                try:
                    yield
                except BaseException:
                    conn.rollback()
                    raise
                conn.commit()
            finally:
                self._local.conn = None
                conn.close()

    def reset(self) -> None:
        with self._session() as conn:
            conn.execute("DELETE FROM upgrade_settings")


def _import_redis() -> Any:
    try:
        import redis  # type: ignore
    except ImportError as exc:
        raise RuntimeError("redis is required for UPGRADER_POLICY_BACKEND=redis; install redis>=5") from exc
    return redis


class RedisPolicyStore(UpgradePolicyMixin):
    """Redis-backed knob store shared by every controller in the cluster."""

    def __init__(
        self,
        *,
        dsn: str,
        namespace: str = "upgrader",
        lock_lease_seconds: int = 30,
        default_upgrades_per_minute: float = DEFAULT_UPGRADES_PER_MINUTE,
    ) -> None:
        if not dsn.strip():
            raise ValueError("REDIS_DSN must be provided for redis policy store")
        self.default_upgrades_per_minute = default_upgrades_per_minute
        self._namespace = namespace.strip() or "upgrader"
        self._lock_lease_seconds = max(1, int(lock_lease_seconds))
        redis = _import_redis()
        self._client = redis.Redis.from_url(dsn.strip(), decode_responses=True)

    def _key(self, key: str) -> str:
        return f"{self._namespace}:upgrade:{key}"

    def _lock_key(self, name: str) -> str:
        return f"{self._namespace}:lock:{name}"

    def _read_setting(self, key: str) -> str | None:
        raw = self._client.get(self._key(key))
        return raw if isinstance(raw, str) else None

    def _write_setting(self, key: str, value: str | None) -> None:
        if value is None:
            self._client.delete(self._key(key))
        else:
            self._client.set(self._key(key), value)

    @contextmanager
    def _exclusive_lock(self, name: str) -> Iterator[None]:
        """Hold the redis lock for `name`; acquiring it waits indefinitely.

        The lease (`lock_lease_seconds`) bounds how long a crashed holder keeps
        the lock. A holder that stalls past the lease loses it: another writer
        may then enter and one override update can be lost, and releasing
        raises `redis.exceptions.LockNotOwnedError`. Raise
        `UPGRADER_REDIS_LOCK_LEASE_SECONDS` when stores are slow to respond.
        """
        lock = self._client.lock(
            self._lock_key(name),
            timeout=self._lock_lease_seconds,
            blocking=True,
            blocking_timeout=None,
        )
        with lock:
            yield

    def reset(self) -> None:
        keys = (UPGRADES_PER_MINUTE_KEY, TARGET_MAJOR_VERSION_KEY, CONFIDENCE_OVERRIDES_KEY)
        self._client.delete(*(self._key(key) for key in keys))


class PostgresPolicyStore(UpgradePolicyMixin):
    """PostgreSQL knob store; the override lock is a transaction-scoped advisory lock."""

    def __init__(
        self,
        *,
        tx_runner: PostgresTxRunner,
        table_name: str = "upgrade_settings",
        default_upgrades_per_minute: float = DEFAULT_UPGRADES_PER_MINUTE,
    ) -> None:
        self.default_upgrades_per_minute = default_upgrades_per_minute
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    def ensure_schema(self) -> None:
        sql = f"""
            CREATE TABLE IF NOT EXISTS {self._table_name} (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
            )
        """

        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(sql)

        self._tx_runner.run_in_tx(fn=_op)

    def _read_setting(self, key: str) -> str | None:
        sql = f"SELECT value FROM {self._table_name} WHERE key = %s LIMIT 1"

        def _op(conn: Any) -> str | None:
            with conn.cursor() as cur:
                cur.execute(sql, (key,))
                row = cur.fetchone()
            return str(row[0]) if row is not None else None

        return self._tx_runner.run_in_tx(fn=_op)

    def _write_setting(self, key: str, value: str | None) -> None:
        if value is None:
            sql = f"DELETE FROM {self._table_name} WHERE key = %s"
            params: tuple[Any, ...] = (key,)
        else:
            sql = f"""
                INSERT INTO {self._table_name} (key, value, updated_at) VALUES (%s, %s, now())
                ON CONFLICT (key) DO UPDATE SET value = EXCLUDED.value, updated_at = EXCLUDED.updated_at
            """
            params = (key, value)

        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(sql, params)

        self._tx_runner.run_in_tx(fn=_op)

    def _exclusive_lock(self, name: str):
        return self._tx_runner.advisory_lock(f"{self._table_name}:{name}")


def create_policy_store(
    config: UpgraderConfig,
) -> InMemoryPolicyStore | SqlitePolicyStore | RedisPolicyStore | PostgresPolicyStore:
    backend = config.policy_backend
    default_rate = config.default_upgrades_per_minute
    if backend == "memory":
        return InMemoryPolicyStore(default_upgrades_per_minute=default_rate)
    if backend == "sqlite":
        return SqlitePolicyStore(config.sqlite_path, default_upgrades_per_minute=default_rate)
    if backend == "redis":
        if not config.redis_dsn:
            raise ValueError("REDIS_DSN must be set when UPGRADER_POLICY_BACKEND=redis")
        return RedisPolicyStore(
            dsn=config.redis_dsn,
            namespace=config.key_prefix,
            lock_lease_seconds=config.redis_lock_lease_seconds,
            default_upgrades_per_minute=default_rate,
        )
    if backend == "postgres":
        if not config.postgres_dsn:
            raise ValueError("POSTGRES_DSN must be set when UPGRADER_POLICY_BACKEND=postgres")
        store = PostgresPolicyStore(
            tx_runner=PostgresTxRunner(config.postgres_dsn),
            default_upgrades_per_minute=default_rate,
        )
        store.ensure_schema()
        return store
    raise RuntimeError(f"unsupported policy store backend: {backend}")


def create_policy_store_from_env(
    environ: Mapping[str, str] | None = None,
) -> InMemoryPolicyStore | SqlitePolicyStore | RedisPolicyStore | PostgresPolicyStore:
    return create_policy_store(UpgraderConfig.from_env(environ))

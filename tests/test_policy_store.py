from __future__ import annotations

import logging
import threading
from pathlib import Path

import pytest

from fleet_upgrader.config import UpgraderConfig
from fleet_upgrader.errors import InvalidSettingError
from fleet_upgrader.policy_backends import (
    PostgresPolicyStore,
    RedisPolicyStore,
    SqlitePolicyStore,
    create_policy_store,
    create_policy_store_from_env,
)
from fleet_upgrader.policy_store import InMemoryPolicyStore, decode_overrides
from fleet_upgrader.versions import Confidence, Version


def test_memory_store_defaults_and_roundtrip():
    store = InMemoryPolicyStore()
    assert store.upgrades_per_minute() == 0.5
    assert store.target_major_version() is None
    assert store.confidence_overrides() == {}

    store.set_upgrades_per_minute(2)
    store.set_target_major_version(8)
    store.override_confidence(Version.parse("7.2.0"), Confidence.broken)

    settings = store.settings()
    assert settings.upgrades_per_minute == 2.0
    assert settings.target_major_version == 8
    assert settings.confidence_overrides == {Version.parse("7.2.0"): Confidence.broken}
    assert settings.as_dict()["confidence_overrides"] == {"7.2.0": "broken"}

    store.set_target_major_version(None)
    assert store.target_major_version() is None


def test_memory_store_uses_configured_default_rate():
    assert InMemoryPolicyStore(default_upgrades_per_minute=3.0).upgrades_per_minute() == 3.0


@pytest.mark.parametrize("value", [-1, -0.5, float("nan"), float("inf"), True, "2"])
def test_set_upgrades_per_minute_rejects_invalid_values(value):
    store = InMemoryPolicyStore()
    with pytest.raises(InvalidSettingError, match="Upgrades per minute"):
        store.set_upgrades_per_minute(value)
    assert store.upgrades_per_minute() == 0.5


def test_set_upgrades_per_minute_accepts_zero():
    store = InMemoryPolicyStore()
    store.set_upgrades_per_minute(0)
    assert store.upgrades_per_minute() == 0.0


@pytest.mark.parametrize("value", [-1, 7.5, False])
def test_set_target_major_version_rejects_invalid_values(value):
    with pytest.raises(InvalidSettingError):
        InMemoryPolicyStore().set_target_major_version(value)


def test_remove_confidence_overrides_by_predicate():
    store = InMemoryPolicyStore()
    store.override_confidence(Version.parse("7.1.0"), Confidence.high)
    store.override_confidence(Version.parse("7.2.0"), Confidence.broken)
    store.override_confidence(Version.parse("8.0.0"), Confidence.low)

    removed = store.remove_confidence_overrides(lambda version: version.major == 7)
    assert sorted(removed) == [Version.parse("7.1.0"), Version.parse("7.2.0")]
    assert store.confidence_overrides() == {Version.parse("8.0.0"): Confidence.low}
    assert store.remove_confidence_overrides(lambda version: version.major == 7) == []


def test_remove_single_confidence_override_reports_presence():
    store = InMemoryPolicyStore()
    store.override_confidence(Version.parse("7.1.0"), Confidence.high)
    assert store.remove_confidence_override(Version.parse("7.1.0")) is True
    assert store.remove_confidence_override(Version.parse("7.1.0")) is False


def test_decode_overrides_skips_malformed_entries():
    assert decode_overrides(None) == {}
    assert decode_overrides("not json") == {}
    assert decode_overrides("[1, 2]") == {}
    assert decode_overrides('{"7.1.0": "high", "bad": "high", "7.2.0": "excellent", "7.3.0": 3}') == {
        Version.parse("7.1.0"): Confidence.high
    }


def _override_concurrently(store, count: int = 8) -> None:
    barrier = threading.Barrier(count)

    def _worker(i: int) -> None:
        barrier.wait()
        store.override_confidence(Version(7, i, 0), Confidence.low)

    threads = [threading.Thread(target=_worker, args=(i,)) for i in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()


def test_memory_store_concurrent_overrides_do_not_lose_updates():
    store = InMemoryPolicyStore()
    _override_concurrently(store)
    assert len(store.confidence_overrides()) == 8


def test_sqlite_store_persists_between_instances(tmp_path: Path):
    db_path = tmp_path / "policy.sqlite3"
    first = SqlitePolicyStore(db_path)
    first.set_upgrades_per_minute(1.5)
    first.set_target_major_version(8)
    first.override_confidence(Version.parse("7.2.0"), Confidence.broken)

    second = SqlitePolicyStore(db_path)
    assert second.upgrades_per_minute() == 1.5
    assert second.target_major_version() == 8
    assert second.confidence_overrides() == {Version.parse("7.2.0"): Confidence.broken}

    second.reset()
    assert first.upgrades_per_minute() == 0.5
    assert first.confidence_overrides() == {}


def test_sqlite_store_concurrent_overrides_do_not_lose_updates(tmp_path: Path):
    db_path = tmp_path / "policy_concurrent.sqlite3"
    _override_concurrently(SqlitePolicyStore(db_path))
    assert len(SqlitePolicyStore(db_path).confidence_overrides()) == 8


def test_sqlite_store_rolls_back_failed_override_transaction(tmp_path: Path):
    store = SqlitePolicyStore(tmp_path / "policy_rollback.sqlite3")
    store.override_confidence(Version.parse("7.1.0"), Confidence.high)

    def _explode(_version: Version) -> bool:
        raise RuntimeError("predicate failed")

    with pytest.raises(RuntimeError, match="predicate failed"):
        store.remove_confidence_overrides(_explode)
    assert store.confidence_overrides() == {Version.parse("7.1.0"): Confidence.high}


class FakeRedisLock:
    def __init__(self, client: "FakeRedisClient", name: str, timeout: int) -> None:
        self._client = client
        self._name = name
        self.timeout = timeout

    def __enter__(self):
        self._client.mutex.acquire()
        self._client.lock_calls.append((self._name, self.timeout))
        return self

    def __exit__(self, exc_type, exc, tb):
        self._client.mutex.release()
        return False


class FakeRedisClient:
    def __init__(self) -> None:
        self.kv: dict[str, str] = {}
        self.mutex = threading.Lock()
        self.lock_calls: list[tuple[str, int]] = []

    def get(self, key: str):
        return self.kv.get(key)

    def set(self, key: str, value: str) -> None:
        self.kv[key] = value

    def delete(self, *keys: str) -> None:
        for key in keys:
            self.kv.pop(key, None)

    def lock(self, name: str, timeout: int, blocking: bool = True, blocking_timeout=None):
        assert blocking is True
        return FakeRedisLock(self, name, timeout)


def _fake_redis_module(client: FakeRedisClient):
    class FakeRedisModule:
        class Redis:
            @staticmethod
            def from_url(_dsn: str, decode_responses: bool = True):
                assert decode_responses is True
                return client

    return FakeRedisModule


def test_redis_store_with_fake_driver(monkeypatch):
    client = FakeRedisClient()
    monkeypatch.setattr("fleet_upgrader.policy_backends._import_redis", lambda: _fake_redis_module(client))
    monkeypatch.setenv("UPGRADER_POLICY_BACKEND", "redis")
    monkeypatch.setenv("REDIS_DSN", "redis://localhost:6379/0")
    monkeypatch.setenv("UPGRADER_POLICY_KEY_PREFIX", "ctl")

    store = create_policy_store_from_env()
    assert isinstance(store, RedisPolicyStore)

    store.set_upgrades_per_minute(4)
    store.override_confidence(Version.parse("7.2.0"), Confidence.broken)
    assert client.kv["ctl:upgrade:upgrades_per_minute"] == "4.0"
    assert client.kv["ctl:upgrade:confidence_overrides"] == '{"7.2.0":"broken"}'
    assert client.lock_calls == [("ctl:lock:confidence_overrides", 30)]

    _override_concurrently(store)
    assert len(store.confidence_overrides()) == 8

    store.reset()
    assert client.kv == {}


def test_policy_factory_requires_redis_dsn(monkeypatch):
    monkeypatch.setenv("UPGRADER_POLICY_BACKEND", "redis")
    with pytest.raises(ValueError, match="REDIS_DSN"):
        create_policy_store_from_env()


def test_policy_factory_reports_missing_redis_driver(monkeypatch):
    def _raise_missing():
        raise RuntimeError("redis is required for UPGRADER_POLICY_BACKEND=redis; install redis>=5")

    monkeypatch.setattr("fleet_upgrader.policy_backends._import_redis", _raise_missing)
    with pytest.raises(RuntimeError, match="redis"):
        create_policy_store(UpgraderConfig(policy_backend="redis", redis_dsn="redis://localhost:6379/0"))


def test_policy_factory_rejects_unsupported_backend(monkeypatch):
    monkeypatch.setenv("UPGRADER_POLICY_BACKEND", "etcd")
    with pytest.raises(RuntimeError, match="unsupported policy store backend"):
        create_policy_store_from_env()


def test_policy_factory_defaults_to_memory_and_supports_sqlite(tmp_path: Path):
    assert isinstance(create_policy_store_from_env({}), InMemoryPolicyStore)
    store = create_policy_store_from_env(
        {
            "UPGRADER_POLICY_BACKEND": "sqlite",
            "UPGRADER_POLICY_SQLITE_PATH": str(tmp_path / "factory.sqlite3"),
            "UPGRADER_DEFAULT_UPGRADES_PER_MINUTE": "2",
        }
    )
    assert isinstance(store, SqlitePolicyStore)
    assert store.upgrades_per_minute() == 2.0


class FakePgCursor:
    def __init__(self, db: "FakePgDatabase") -> None:
        self._db = db
        self._row = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, query: str, params=None):
        normalized = " ".join(query.split())
        self._db.statements.append((normalized, params))
        if normalized.startswith("SELECT value"):
            value = self._db.rows.get(params[0])
            self._row = (value,) if value is not None else None
        elif normalized.startswith("INSERT INTO"):
            self._db.rows[params[0]] = params[1]
        elif normalized.startswith("DELETE FROM"):
            self._db.rows.pop(params[0], None)

    def fetchone(self):
        return self._row


class FakePgConnection:
    def __init__(self, db: "FakePgDatabase") -> None:
        self._db = db

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def cursor(self):
        return FakePgCursor(self._db)

    def commit(self):
        self._db.commits += 1

    def rollback(self):
        self._db.rollbacks += 1


class FakePgDatabase:
    def __init__(self) -> None:
        self.rows: dict[str, str] = {}
        self.statements: list[tuple[str, object]] = []
        self.commits = 0
        self.rollbacks = 0
        self.dsn_calls: list[str] = []

    def connect(self, dsn: str):
        self.dsn_calls.append(dsn)
        return FakePgConnection(self)


def test_postgres_store_with_fake_driver(monkeypatch):
    db = FakePgDatabase()
    monkeypatch.setattr("fleet_upgrader.db.postgres._import_psycopg", lambda: db)

    store = create_policy_store(UpgraderConfig(policy_backend="postgres", postgres_dsn="postgresql://u:p@localhost/upg"))
    assert isinstance(store, PostgresPolicyStore)
    assert db.statements[0][0].startswith("CREATE TABLE IF NOT EXISTS upgrade_settings")

    store.set_target_major_version(8)
    store.override_confidence(Version.parse("7.2.0"), Confidence.broken)
    assert store.target_major_version() == 8
    assert store.confidence_overrides() == {Version.parse("7.2.0"): Confidence.broken}

    lock_statements = [params for query, params in db.statements if "pg_advisory_xact_lock" in query]
    assert lock_statements == [("upgrade_settings:confidence_overrides",)]
    assert db.rollbacks == 1

    store.set_target_major_version(None)
    assert store.target_major_version() is None


def test_policy_factory_requires_postgres_dsn():
    with pytest.raises(ValueError, match="POSTGRES_DSN"):
        create_policy_store(UpgraderConfig(policy_backend="postgres"))


def test_postgres_store_rejects_unsafe_table_name():
    from fleet_upgrader.db.postgres import PostgresTxRunner

    with pytest.raises(ValueError, match="invalid SQL identifier"):
        PostgresPolicyStore(tx_runner=PostgresTxRunner("postgresql://localhost/upg"), table_name="x; DROP TABLE y")


def test_decode_overrides_logs_each_dropped_entry(caplog):
    with caplog.at_level(logging.WARNING, logger="fleet_upgrader.policy_store"):
        decoded = decode_overrides('{"7.1.0": "high", "bad": "high", "7.2.0": "excellent"}')
    assert decoded == {Version.parse("7.1.0"): Confidence.high}
    assert caplog.text.count("dropping malformed confidence override") == 2
    assert "'bad'" in caplog.text

    caplog.clear()
    with caplog.at_level(logging.WARNING, logger="fleet_upgrader.policy_store"):
        assert decode_overrides("not json") == {}
    assert "not valid JSON" in caplog.text


def test_redis_lock_lease_comes_from_config(monkeypatch):
    client = FakeRedisClient()
    monkeypatch.setattr("fleet_upgrader.policy_backends._import_redis", lambda: _fake_redis_module(client))
    store = create_policy_store_from_env(
        {
            "UPGRADER_POLICY_BACKEND": "redis",
            "REDIS_DSN": "redis://localhost:6379/0",
            "UPGRADER_REDIS_LOCK_LEASE_SECONDS": "120",
        }
    )
    store.override_confidence(Version.parse("7.2.0"), Confidence.low)
    assert client.lock_calls == [("upgrader:lock:confidence_overrides", 120)]

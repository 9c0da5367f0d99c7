from __future__ import annotations

import math
import os
from collections.abc import Mapping
from dataclasses import dataclass

from fleet_upgrader.policy_store import DEFAULT_UPGRADES_PER_MINUTE


def _as_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_bool(env: Mapping[str, str], name: str, *, default: bool) -> bool:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    return _as_bool(raw)


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_float(env: Mapping[str, str], name: str, *, default: float, minimum: float = 0.0) -> float:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    if not math.isfinite(value):
        return default
    return max(minimum, value)


@dataclass(frozen=True)
class UpgraderConfig:
    policy_backend: str = "memory"
    sqlite_path: str = ".runtime/upgrader_policy.sqlite3"
    redis_dsn: str = ""
    key_prefix: str = "upgrader"
    redis_lock_lease_seconds: int = 30
    postgres_dsn: str = ""
    interval_seconds: int = 60
    enabled: bool = True
    default_upgrades_per_minute: float = DEFAULT_UPGRADES_PER_MINUTE
    require_truestack: bool = False
    fleet_snapshot_path: str = ""

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "UpgraderConfig":
        env = os.environ if environ is None else environ
        return cls(
            policy_backend=str(env.get("UPGRADER_POLICY_BACKEND", "memory")).strip().lower() or "memory",
            sqlite_path=str(env.get("UPGRADER_POLICY_SQLITE_PATH", cls.sqlite_path)).strip() or cls.sqlite_path,
            redis_dsn=str(env.get("REDIS_DSN", "")).strip(),
            key_prefix=str(env.get("UPGRADER_POLICY_KEY_PREFIX", "upgrader")).strip() or "upgrader",
            redis_lock_lease_seconds=_env_int(env, "UPGRADER_REDIS_LOCK_LEASE_SECONDS", default=30, minimum=1),
            postgres_dsn=str(env.get("POSTGRES_DSN", "")).strip(),
            interval_seconds=_env_int(env, "UPGRADER_INTERVAL_SECONDS", default=60, minimum=1),
            enabled=_env_bool(env, "UPGRADER_ENABLED", default=True),
            default_upgrades_per_minute=_env_float(
                env,
                "UPGRADER_DEFAULT_UPGRADES_PER_MINUTE",
                default=DEFAULT_UPGRADES_PER_MINUTE,
            ),
            require_truestack=_env_bool(env, "UPGRADER_REQUIRE_TRUESTACK", default=False),
            fleet_snapshot_path=str(env.get("UPGRADER_FLEET_SNAPSHOT", "")).strip(),
        )

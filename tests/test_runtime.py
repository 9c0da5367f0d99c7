from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from fleet_upgrader.fleet import InMemoryFleet, InMemoryVersionStatus
from fleet_upgrader.main import create_runtime_from_env
from fleet_upgrader.policy_backends import SqlitePolicyStore
from fleet_upgrader.policy_store import InMemoryPolicyStore
from fleet_upgrader.runtime import UPGRADER_JOB, JobControl, MaintenanceRuntime, create_upgrader_runtime_from_env
from fleet_upgrader.upgrader import Upgrader


class ExplodingUpgrader:
    interval_seconds = 60

    def maintain(self):
        raise RuntimeError("registry unavailable")


def test_inactive_job_is_skipped(runtime):
    runtime.job_control.set_active(UPGRADER_JOB, False)
    assert runtime.run_once() == {"runs": 0, "skipped": 1, "failed": 0, "triggered": 0, "cancelled": 0}
    runtime.job_control.set_active(UPGRADER_JOB, True)
    assert runtime.run_once()["runs"] == 1


def test_failed_tick_is_logged_and_loop_continues(caplog):
    sleeps: list[float] = []
    rt = MaintenanceRuntime(upgrader=ExplodingUpgrader(), job_control=JobControl(), sleep=sleeps.append)
    with caplog.at_level(logging.WARNING, logger="fleet_upgrader.runtime"):
        stats = rt.run_forever(stop_after_iterations=3)
    assert stats["failed"] == 3
    assert sleeps == [60.0, 60.0]
    assert "maintenance job Upgrader failed" in caplog.text


def test_runtime_factory_reads_interval_and_enabled_flag(registry):
    fleet = InMemoryFleet()
    rt = create_upgrader_runtime_from_env(
        fleet=fleet,
        registry=registry,
        dispatcher=fleet,
        policy_store=InMemoryPolicyStore(),
        environ={"UPGRADER_INTERVAL_SECONDS": "300", "UPGRADER_ENABLED": "false"},
    )
    assert rt.upgrader.interval_seconds == 300
    assert rt.job_control.is_active(UPGRADER_JOB) is False
    assert rt.run_once()["skipped"] == 1


def test_runtime_factory_builds_policy_store_from_env(registry, tmp_path: Path):
    fleet = InMemoryFleet()
    env = {
        "UPGRADER_POLICY_BACKEND": "sqlite",
        "UPGRADER_POLICY_SQLITE_PATH": str(tmp_path / "policy.sqlite3"),
        "UPGRADER_INTERVAL_SECONDS": "0",
    }
    rt = create_upgrader_runtime_from_env(fleet=fleet, registry=registry, dispatcher=fleet, environ=env)
    assert rt.upgrader.interval_seconds == 1
    rt.upgrader.set_upgrades_per_minute(2)
    assert SqlitePolicyStore(tmp_path / "policy.sqlite3").upgrades_per_minute() == 2.0


def _write_snapshot(path: Path) -> None:
    path.write_text(
        json.dumps(
            {
                "system_version": "7.2.0",
                "versions": [
                    {"version": "7.1.0", "confidence": "high"},
                    {"version": "7.2.0", "confidence": "normal"},
                ],
                "applications": [
                    {
                        "tenant": "tenant_a",
                        "application": "search",
                        "tier": "default",
                        "deployments": [{"zone": "prod.us-east-1", "version": "7.0.0"}],
                    }
                ],
            }
        ),
        encoding="utf-8",
    )


def test_create_runtime_from_env_loads_fleet_snapshot(tmp_path: Path):
    snapshot = tmp_path / "fleet.json"
    _write_snapshot(snapshot)
    rt = create_runtime_from_env({"UPGRADER_FLEET_SNAPSHOT": str(snapshot)})
    assert rt.run_once()["triggered"] == 1
    assert rt.upgrader.target_major_version() is None


def test_create_runtime_from_env_falls_back_to_memory_store(caplog):
    with caplog.at_level(logging.WARNING, logger="fleet_upgrader.main"):
        rt = create_runtime_from_env({"UPGRADER_POLICY_BACKEND": "etcd"})
    assert rt.upgrader.upgrades_per_minute() == 0.5
    assert "policy store backend etcd unavailable" in caplog.text


def test_create_runtime_from_env_requires_truestack_when_configured():
    with pytest.raises(RuntimeError, match="unsupported policy store backend"):
        create_runtime_from_env({"UPGRADER_POLICY_BACKEND": "etcd", "UPGRADER_REQUIRE_TRUESTACK": "true"})


def test_run_forever_aggregates_stats_across_ticks():
    fleet = InMemoryFleet()
    registry = InMemoryVersionStatus()
    upgrader = Upgrader(
        fleet=fleet,
        registry=registry,
        dispatcher=fleet,
        policy_store=InMemoryPolicyStore(),
        interval_seconds=60,
    )
    rt = MaintenanceRuntime(upgrader=upgrader, job_control=JobControl(), sleep=lambda _s: None)
    assert rt.run_forever(stop_after_iterations=2) == {
        "runs": 2,
        "skipped": 0,
        "failed": 0,
        "triggered": 0,
        "cancelled": 0,
    }

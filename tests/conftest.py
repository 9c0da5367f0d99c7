import pathlib
import sys
from datetime import UTC, datetime

import pytest
from fastapi.testclient import TestClient

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from fleet_upgrader.fleet import InMemoryFleet, InMemoryVersionStatus
from fleet_upgrader.main import create_app
from fleet_upgrader.policy_store import InMemoryPolicyStore
from fleet_upgrader.runtime import JobControl, MaintenanceRuntime
from fleet_upgrader.upgrader import Upgrader
from fleet_upgrader.versions import Confidence, Version, VersionRecord

FIXED_NOW = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def isolate_env(monkeypatch: pytest.MonkeyPatch):
    for name in (
        "UPGRADER_POLICY_BACKEND",
        "UPGRADER_POLICY_SQLITE_PATH",
        "UPGRADER_POLICY_KEY_PREFIX",
        "UPGRADER_REDIS_LOCK_LEASE_SECONDS",
        "UPGRADER_DEFAULT_UPGRADES_PER_MINUTE",
        "UPGRADER_FLEET_SNAPSHOT",
        "UPGRADER_INTERVAL_SECONDS",
        "UPGRADER_ENABLED",
        "UPGRADER_REQUIRE_TRUESTACK",
        "REDIS_DSN",
        "POSTGRES_DSN",
    ):
        monkeypatch.delenv(name, raising=False)
    yield


@pytest.fixture
def registry() -> InMemoryVersionStatus:
    return InMemoryVersionStatus(
        [
            VersionRecord(version=Version.parse("7.1.0"), confidence=Confidence.high),
            VersionRecord(version=Version.parse("7.2.0"), confidence=Confidence.normal),
            VersionRecord(version=Version.parse("7.3.0"), confidence=Confidence.low, is_system_version=True),
        ]
    )


@pytest.fixture
def fleet() -> InMemoryFleet:
    return InMemoryFleet()


@pytest.fixture
def runtime(fleet: InMemoryFleet, registry: InMemoryVersionStatus) -> MaintenanceRuntime:
    upgrader = Upgrader(
        fleet=fleet,
        registry=registry,
        dispatcher=fleet,
        policy_store=InMemoryPolicyStore(),
        interval_seconds=60,
        clock=lambda: FIXED_NOW,
    )
    return MaintenanceRuntime(upgrader=upgrader, job_control=JobControl(), sleep=lambda _s: None)


@pytest.fixture
def client(runtime: MaintenanceRuntime) -> TestClient:
    return TestClient(create_app(runtime=runtime))

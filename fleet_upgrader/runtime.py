from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass

from fleet_upgrader.config import UpgraderConfig
from fleet_upgrader.fleet import ConfidenceRegistry, FleetDirectory, TriggerDispatcher
from fleet_upgrader.policy_backends import create_policy_store
from fleet_upgrader.policy_store import UpgradePolicyMixin
from fleet_upgrader.upgrader import Upgrader

logger = logging.getLogger(__name__)

UPGRADER_JOB = "Upgrader"


@dataclass
class MaintenanceRunStats:
    runs: int = 0
    skipped: int = 0
    failed: int = 0
    triggered: int = 0
    cancelled: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "runs": self.runs,
            "skipped": self.skipped,
            "failed": self.failed,
            "triggered": self.triggered,
            "cancelled": self.cancelled,
        }


class JobControl:
    """Enable flags for maintenance jobs; jobs are active unless deactivated."""

    def __init__(self, *, inactive: set[str] | None = None) -> None:
        self._lock = threading.RLock()
        self._inactive = set(inactive or ())

    def is_active(self, job_name: str) -> bool:
        with self._lock:
            return job_name not in self._inactive

    def set_active(self, job_name: str, active: bool) -> None:
        with self._lock:
            if active:
                self._inactive.discard(job_name)
            else:
                self._inactive.add(job_name)


class MaintenanceRuntime:
    """Invokes the upgrader once per interval while its job is active."""

    def __init__(
        self,
        *,
        upgrader: Upgrader,
        job_control: JobControl,
        job_name: str = UPGRADER_JOB,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.upgrader = upgrader
        self.job_control = job_control
        self.job_name = job_name
        self._sleep = sleep

    def run_once(self) -> dict[str, int]:
        stats = MaintenanceRunStats()
        self._run(stats)
        return stats.as_dict()

    def _run(self, stats: MaintenanceRunStats) -> None:
        if not self.job_control.is_active(self.job_name):
            stats.skipped += 1
            return
        try:
            result = self.upgrader.maintain()
        except Exception:
            # Nothing here is fatal; the next tick retries.
            logger.warning("maintenance job %s failed", self.job_name, exc_info=True)
            stats.failed += 1
            return
        stats.runs += 1
        stats.triggered += result.triggered
        stats.cancelled += result.cancelled

    def run_forever(self, *, stop_after_iterations: int | None = None) -> dict[str, int]:
        aggregate = MaintenanceRunStats()
        iterations = 0
        while True:
            self._run(aggregate)
            iterations += 1
            if stop_after_iterations is not None and iterations >= max(1, stop_after_iterations):
                break
            self._sleep(float(self.upgrader.interval_seconds))
        return aggregate.as_dict()


def create_upgrader_runtime_from_env(
    *,
    fleet: FleetDirectory,
    registry: ConfidenceRegistry,
    dispatcher: TriggerDispatcher,
    policy_store: UpgradePolicyMixin | None = None,
    environ: Mapping[str, str] | None = None,
) -> MaintenanceRuntime:
    config = UpgraderConfig.from_env(environ)
    upgrader = Upgrader(
        fleet=fleet,
        registry=registry,
        dispatcher=dispatcher,
        policy_store=policy_store if policy_store is not None else create_policy_store(config),
        interval_seconds=config.interval_seconds,
    )
    job_control = JobControl(inactive=set() if config.enabled else {UPGRADER_JOB})
    return MaintenanceRuntime(upgrader=upgrader, job_control=job_control)

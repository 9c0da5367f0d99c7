from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from fleet_upgrader.application_list import ApplicationList
from fleet_upgrader.cancellation import CancellationEngine
from fleet_upgrader.candidates import CandidateSelector, throttle_budget
from fleet_upgrader.errors import InvalidSettingError
from fleet_upgrader.fleet import ConfidenceRegistry, FleetDirectory, TriggerDispatcher
from fleet_upgrader.models import ApplicationRecord, Change, now_utc
from fleet_upgrader.policy_store import UpgradePolicyMixin
from fleet_upgrader.targets import TIER_POLICIES, TargetSelector
from fleet_upgrader.versions import Confidence, Version

logger = logging.getLogger(__name__)


@dataclass
class UpgradeRunStats:
    targets: dict[str, str | None] = field(default_factory=dict)
    cancelled: int = 0
    cancel_failed: int = 0
    triggered: int = 0
    trigger_failed: int = 0
    skipped_tiers: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        return {
            "targets": dict(self.targets),
            "cancelled": self.cancelled,
            "cancel_failed": self.cancel_failed,
            "triggered": self.triggered,
            "trigger_failed": self.trigger_failed,
            "skipped_tiers": list(self.skipped_tiers),
        }


class Upgrader:
    """Schedules applications for platform version upgrades.

    One call to `maintain` is one tick: compute the tier targets, cancel unsafe
    or stale platform upgrades, then trigger a throttled batch per tier. Nothing
    is kept between ticks except what the policy store persists, and running a
    tick twice without any outside change triggers and cancels nothing new.
    """

    def __init__(
        self,
        *,
        fleet: FleetDirectory,
        registry: ConfidenceRegistry,
        dispatcher: TriggerDispatcher,
        policy_store: UpgradePolicyMixin,
        interval_seconds: int,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._fleet = fleet
        self._registry = registry
        self._dispatcher = dispatcher
        self._policy_store = policy_store
        self.interval_seconds = interval_seconds
        self._clock = clock

    def _applications(self) -> ApplicationList:
        return ApplicationList.of(self._fleet.list_applications())

    def maintain(self) -> UpgradeRunStats:
        settings = self._policy_store.settings()
        selector = TargetSelector(registry=self._registry, overrides=settings.confidence_overrides)
        targets = selector.targets()
        stats = UpgradeRunStats(
            targets={tier.value: str(target) if target is not None else None for tier, target in targets.items()}
        )

        applications = self._applications()
        report = CancellationEngine(dispatcher=self._dispatcher).run(
            applications,
            broken_versions=selector.broken_versions(),
            targets=targets,
        )
        stats.cancelled = len(report.cancelled)
        stats.cancel_failed = len(report.failed)
        if report.cancelled:
            # Selection must see this run's cancellations.
            applications = self._applications()

        candidates = CandidateSelector(
            interval_seconds=self.interval_seconds,
            upgrades_per_minute=settings.upgrades_per_minute,
            target_major_version=settings.target_major_version,
        )
        now = self._clock()
        for policy in TIER_POLICIES:
            target = targets.get(policy.tier)
            if target is None:
                stats.skipped_tiers.append(policy.tier.value)
                continue
            selected = candidates.select_candidates(applications, tier=policy.tier, target=target, now=now)
            triggered = self._trigger(selected, target, stats)
            if triggered:
                logger.info("Triggered %d %s upgrades to %s", triggered, policy.tier.value, target)
        return stats

    def _trigger(self, applications: list[ApplicationRecord], target: Version, stats: UpgradeRunStats) -> int:
        triggered = 0
        for app in applications:
            try:
                self._dispatcher.trigger_change(app.id, Change.of(target))
            except Exception as exc:
                # Retried on the next tick.
                logger.warning("trigger_change failed application=%s target=%s error=%s", app.id, target, exc)
                stats.trigger_failed += 1
                continue
            triggered += 1
        stats.triggered += triggered
        return triggered

    # Knobs

    def upgrades_per_minute(self) -> float:
        return self._policy_store.upgrades_per_minute()

    def set_upgrades_per_minute(self, n: float) -> None:
        self._policy_store.set_upgrades_per_minute(n)

    def target_major_version(self) -> int | None:
        """Target major version for applications not pinning one."""
        return self._policy_store.target_major_version()

    def set_target_major_version(self, major: int | None) -> None:
        self._policy_store.set_target_major_version(major)

    def confidence_overrides(self) -> dict[Version, Confidence]:
        return self._policy_store.confidence_overrides()

    def override_confidence(self, version: Version, confidence: Confidence) -> None:
        """Override confidence for a registry version; the computed value is ignored from then on."""
        if all(record.version != version for record in self._registry.versions()):
            raise InvalidSettingError(f"cannot override confidence of unknown version {version}")
        self._policy_store.override_confidence(version, confidence)

    def remove_confidence_override(self, version: Version) -> bool:
        return self._policy_store.remove_confidence_override(version)

    def throttle_budget(self) -> int:
        return throttle_budget(interval_seconds=self.interval_seconds, upgrades_per_minute=self.upgrades_per_minute())

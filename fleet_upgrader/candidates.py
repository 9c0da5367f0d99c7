from __future__ import annotations

import math
from datetime import datetime

from fleet_upgrader.application_list import ApplicationList
from fleet_upgrader.models import ApplicationRecord, RolloutTier
from fleet_upgrader.versions import Version


def throttle_budget(*, interval_seconds: float, upgrades_per_minute: float) -> int:
    """Applications a tier may trigger per run; never below one."""
    return max(1, math.floor(interval_seconds * upgrades_per_minute / 60))


class CandidateSelector:
    def __init__(self, *, interval_seconds: float, upgrades_per_minute: float, target_major_version: int | None) -> None:
        self.interval_seconds = interval_seconds
        self.upgrades_per_minute = upgrades_per_minute
        self.target_major_version = target_major_version

    @property
    def budget(self) -> int:
        return throttle_budget(interval_seconds=self.interval_seconds, upgrades_per_minute=self.upgrades_per_minute)

    def select_candidates(
        self,
        applications: ApplicationList,
        *,
        tier: RolloutTier,
        target: Version,
        now: datetime,
    ) -> list[ApplicationRecord]:
        default_major = self.target_major_version if self.target_major_version is not None else target.major
        selected = applications.with_tier(tier)
        selected = selected.has_production_deployment()
        selected = selected.on_lower_version_than(target)
        selected = selected.allow_major_version(target.major, default_major)
        selected = selected.not_deploying()  # one change at a time per application
        selected = selected.not_failing_on(target)
        selected = selected.can_upgrade_at(now)
        selected = selected.by_increasing_deployed_version()  # lowest versions first
        selected = selected.first(self.budget)
        return selected.as_list()


from __future__ import annotations

import logging
from dataclasses import dataclass, field

from fleet_upgrader.application_list import ApplicationList
from fleet_upgrader.fleet import TriggerDispatcher
from fleet_upgrader.models import ApplicationId, ChangeKind, RolloutTier
from fleet_upgrader.targets import TIER_POLICIES
from fleet_upgrader.versions import Version

logger = logging.getLogger(__name__)

OUTDATED_CANARY_REASON = "Outdated target version for Canaries"
FAILING_OUTDATED_REASON = "Failing on outdated version"


@dataclass
class CancellationReport:
    cancelled: dict[ApplicationId, str] = field(default_factory=dict)
    failed: list[ApplicationId] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        return {
            "cancelled": {str(app_id): reason for app_id, reason in sorted(self.cancelled.items())},
            "failed": [str(app_id) for app_id in self.failed],
        }


class CancellationEngine:
    """Aborts in-flight platform upgrades that are unsafe or stale.

    Only the PLATFORM change kind is ever cancelled, so pending application
    changes are left alone. An application cancelled by an earlier pass in the
    same run, or whose cancel failed, is skipped by the later passes until the
    next run.
    """

    def __init__(self, *, dispatcher: TriggerDispatcher) -> None:
        self._dispatcher = dispatcher

    def run(
        self,
        applications: ApplicationList,
        *,
        broken_versions: list[Version],
        targets: dict[RolloutTier, Version | None],
    ) -> CancellationReport:
        report = CancellationReport()
        self.cancel_broken_targets(applications, broken_versions=broken_versions, report=report)
        for policy in TIER_POLICIES:
            target = targets.get(policy.tier)
            if policy.cancel_only_when_failing:
                self.cancel_failing_outdated(applications, tier=policy.tier, target=target, report=report)
            else:
                self.cancel_stale(applications, tier=policy.tier, target=target, report=report)
        return report

    def cancel_broken_targets(
        self,
        applications: ApplicationList,
        *,
        broken_versions: list[Version],
        report: CancellationReport,
    ) -> None:
        # Upgrades to other versions are left to complete to avoid starvation.
        candidates = applications
        for policy in TIER_POLICIES:
            if policy.exempt_from_broken_cancellation:
                candidates = candidates.without_tier(policy.tier)
        for version in broken_versions:
            self.cancel_upgrades_of(candidates.upgrading_to(version), reason=f"{version} is broken", report=report)

    def cancel_stale(
        self,
        applications: ApplicationList,
        *,
        tier: RolloutTier,
        target: Version | None,
        report: CancellationReport,
    ) -> None:
        stale = applications.with_tier(tier).upgrading().not_upgrading_to(target)
        self.cancel_upgrades_of(stale, reason=OUTDATED_CANARY_REASON, report=report)

    def cancel_failing_outdated(
        self,
        applications: ApplicationList,
        *,
        tier: RolloutTier,
        target: Version | None,
        report: CancellationReport,
    ) -> None:
        # A newer target may fix the failure.
        failing = applications.with_tier(tier).upgrading().failing().not_upgrading_to(target)
        self.cancel_upgrades_of(failing, reason=FAILING_OUTDATED_REASON, report=report)

    def cancel_upgrades_of(self, applications: ApplicationList, *, reason: str, report: CancellationReport) -> None:
        pending = [app for app in applications if app.id not in report.cancelled and app.id not in report.failed]
        if not pending:
            return
        logger.info("Cancelling upgrading of %d applications: %s", len(pending), reason)
        for app in pending:
            try:
                self._dispatcher.cancel_change(app.id, ChangeKind.PLATFORM)
            except Exception as exc:
                logger.warning("cancel_change failed application=%s reason=%s error=%s", app.id, reason, exc)
                report.failed.append(app.id)
                continue
            report.cancelled[app.id] = reason

from __future__ import annotations

from dataclasses import dataclass

from fleet_upgrader.fleet import ConfidenceRegistry
from fleet_upgrader.models import RolloutTier
from fleet_upgrader.versions import Confidence, Version, VersionRecord


@dataclass(frozen=True)
class TierPolicy:
    tier: RolloutTier
    # None means the tier follows the system version instead of a confidence gate.
    confidence_threshold: Confidence | None
    exempt_from_broken_cancellation: bool = False
    cancel_only_when_failing: bool = True


TIER_POLICIES: tuple[TierPolicy, ...] = (
    TierPolicy(
        tier=RolloutTier.canary,
        confidence_threshold=None,
        exempt_from_broken_cancellation=True,
        cancel_only_when_failing=False,
    ),
    TierPolicy(tier=RolloutTier.default, confidence_threshold=Confidence.normal),
    TierPolicy(tier=RolloutTier.conservative, confidence_threshold=Confidence.high),
)


class TargetSelector:
    """Pure reads over the confidence registry and the current overrides."""

    def __init__(self, *, registry: ConfidenceRegistry, overrides: dict[Version, Confidence]) -> None:
        self._registry = registry
        self._overrides = dict(overrides)

    def effective_confidence(self, record: VersionRecord) -> Confidence:
        return record.effective_confidence(self._overrides)

    def versions(self) -> list[VersionRecord]:
        """Registry records, newest first."""
        return sorted(self._registry.versions(), key=lambda record: record.version, reverse=True)

    def broken_versions(self) -> list[Version]:
        return [record.version for record in self.versions() if self.effective_confidence(record) is Confidence.broken]

    def canary_target(self) -> Version | None:
        system_version = self._registry.system_version()
        if system_version is None:
            return None
        for record in self.versions():
            if record.version == system_version:
                return record.version
        return None

    def select_target(self, threshold: Confidence) -> Version | None:
        """Newest version no newer than the system version with confidence >= threshold."""
        system_version = self._registry.system_version()
        if system_version is None:
            return None
        for record in self.versions():
            if record.version.is_after(system_version):
                continue
            if self.effective_confidence(record).equal_or_higher_than(threshold):
                return record.version
        return None

    def target_for(self, policy: TierPolicy) -> Version | None:
        if policy.confidence_threshold is None:
            return self.canary_target()
        return self.select_target(policy.confidence_threshold)

    def targets(self) -> dict[RolloutTier, Version | None]:
        return {policy.tier: self.target_for(policy) for policy in TIER_POLICIES}

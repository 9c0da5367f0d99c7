from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator
from datetime import datetime

from fleet_upgrader.models import ApplicationRecord, RolloutTier
from fleet_upgrader.versions import Version


class ApplicationList:
    """Immutable fleet snapshot; every query returns a new list."""

    def __init__(self, applications: Iterable[ApplicationRecord]) -> None:
        self._items = tuple(applications)

    @classmethod
    def of(cls, applications: Iterable[ApplicationRecord]) -> "ApplicationList":
        return cls(applications)

    def _filter(self, predicate: Callable[[ApplicationRecord], bool]) -> "ApplicationList":
        return ApplicationList(app for app in self._items if predicate(app))

    def __iter__(self) -> Iterator[ApplicationRecord]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def as_list(self) -> list[ApplicationRecord]:
        return list(self._items)

    def is_empty(self) -> bool:
        return not self._items

    # Policy

    def with_tier(self, tier: RolloutTier) -> "ApplicationList":
        return self._filter(lambda app: app.tier is tier)

    def without_tier(self, tier: RolloutTier) -> "ApplicationList":
        return self._filter(lambda app: app.tier is not tier)

    # In-flight changes

    def upgrading(self) -> "ApplicationList":
        return self._filter(lambda app: app.upgrading_to is not None)

    def upgrading_to(self, version: Version) -> "ApplicationList":
        return self._filter(lambda app: app.upgrading_to == version)

    def not_upgrading_to(self, version: Version | None) -> "ApplicationList":
        """Applications not upgrading to `version`; with no version, all of them."""
        if version is None:
            return self
        return self._filter(lambda app: app.upgrading_to != version)

    def not_deploying(self) -> "ApplicationList":
        return self._filter(lambda app: not app.is_deploying)

    # Deployment state

    def failing(self) -> "ApplicationList":
        return self._filter(lambda app: app.is_failing)

    def not_failing_on(self, version: Version) -> "ApplicationList":
        return self._filter(lambda app: version not in app.failing_on)

    def has_production_deployment(self) -> "ApplicationList":
        return self._filter(lambda app: bool(app.deployments))

    def on_lower_version_than(self, version: Version) -> "ApplicationList":
        return self._filter(lambda app: app.deployed_version is not None and app.deployed_version < version)

    def allow_major_version(self, target_major: int, default_major: int) -> "ApplicationList":
        """Keep applications whose major ceiling, pinned or default, admits `target_major`."""

        def _allowed(app: ApplicationRecord) -> bool:
            ceiling = app.major_version if app.major_version is not None else default_major
            return target_major <= ceiling

        return self._filter(_allowed)

    def can_upgrade_at(self, instant: datetime) -> "ApplicationList":
        return self._filter(lambda app: app.can_upgrade_at(instant))

    # Ordering and limits

    def by_increasing_deployed_version(self) -> "ApplicationList":
        return ApplicationList(
            sorted(
                self._items,
                key=lambda app: (app.deployed_version is None, app.deployed_version or Version(0), app.id),
            )
        )

    def first(self, n: int) -> "ApplicationList":
        return ApplicationList(self._items[: max(0, int(n))])

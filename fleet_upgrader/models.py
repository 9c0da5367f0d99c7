from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from fleet_upgrader.errors import InvalidSettingError
from fleet_upgrader.versions import Version


class RolloutTier(str, Enum):
    canary = "canary"
    default = "default"
    conservative = "conservative"


class ChangeKind(str, Enum):
    PLATFORM = "PLATFORM"
    APPLICATION = "APPLICATION"


@dataclass(frozen=True)
class Change:
    kind: ChangeKind
    platform: Version | None = None
    revision: str = ""

    @classmethod
    def of(cls, version: Version) -> "Change":
        return cls(kind=ChangeKind.PLATFORM, platform=version)

    @classmethod
    def application(cls, revision: str) -> "Change":
        return cls(kind=ChangeKind.APPLICATION, revision=revision)

    def as_dict(self) -> dict[str, str]:
        data = {"kind": self.kind.value}
        if self.platform is not None:
            data["platform"] = str(self.platform)
        if self.revision:
            data["revision"] = self.revision
        return data


@dataclass(frozen=True, order=True)
class ApplicationId:
    tenant: str
    application: str

    def __str__(self) -> str:
        return f"{self.tenant}.{self.application}"


@dataclass(frozen=True)
class Deployment:
    zone: str
    version: Version
    failing: bool = False
    deploying: bool = False


@dataclass(frozen=True)
class BlockWindow:
    """Weekdays (0=Monday) and hours during which platform upgrades are blocked."""

    days: frozenset[int]
    hours: frozenset[int]
    timezone: str = "UTC"

    def __post_init__(self) -> None:
        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise InvalidSettingError(f"unknown block window time zone: '{self.timezone}'") from exc

    def includes(self, instant: datetime) -> bool:
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=UTC)
        local = instant.astimezone(ZoneInfo(self.timezone))
        return local.weekday() in self.days and local.hour in self.hours


@dataclass(frozen=True)
class ApplicationRecord:
    id: ApplicationId
    tier: RolloutTier = RolloutTier.default
    deployments: tuple[Deployment, ...] = ()
    change: Change | None = None
    major_version: int | None = None
    block_windows: tuple[BlockWindow, ...] = ()
    failing_on: frozenset[Version] = field(default_factory=frozenset)

    @property
    def deployed_version(self) -> Version | None:
        """Oldest platform version among the production deployments."""
        if not self.deployments:
            return None
        return min(d.version for d in self.deployments)

    @property
    def upgrading_to(self) -> Version | None:
        if self.change is None or self.change.kind is not ChangeKind.PLATFORM:
            return None
        return self.change.platform

    @property
    def is_failing(self) -> bool:
        return any(d.failing for d in self.deployments)

    @property
    def is_deploying(self) -> bool:
        return self.change is not None or any(d.deploying for d in self.deployments)

    def can_upgrade_at(self, instant: datetime) -> bool:
        return not any(window.includes(instant) for window in self.block_windows)

    def as_dict(self) -> dict[str, object]:
        deployed = self.deployed_version
        return {
            "application_id": str(self.id),
            "tier": self.tier.value,
            "deployed_version": str(deployed) if deployed is not None else None,
            "change": self.change.as_dict() if self.change is not None else None,
            "major_version": self.major_version,
            "failing": self.is_failing,
        }


def now_utc() -> datetime:
    return datetime.now(UTC)

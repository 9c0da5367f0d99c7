from __future__ import annotations

import re
from dataclasses import dataclass
from enum import IntEnum

from fleet_upgrader.errors import InvalidSettingError

VERSION_PATTERN = re.compile(r"^(0|[1-9]\d*)(?:\.(0|[1-9]\d*))?(?:\.(0|[1-9]\d*))?(?:\.([A-Za-z0-9_-]+))?$")


@dataclass(frozen=True, order=True)
class Version:
    """Platform version, ordered by major, minor, micro and then qualifier."""

    major: int
    minor: int = 0
    micro: int = 0
    qualifier: str = ""

    @classmethod
    def parse(cls, raw: str) -> "Version":
        text = str(raw or "").strip()
        match = VERSION_PATTERN.match(text)
        if not match:
            raise InvalidSettingError(f"invalid version: '{raw}'")
        major, minor, micro, qualifier = match.groups()
        return cls(
            major=int(major),
            minor=int(minor or 0),
            micro=int(micro or 0),
            qualifier=qualifier or "",
        )

    def is_after(self, other: "Version") -> bool:
        return self > other

    def __str__(self) -> str:
        base = f"{self.major}.{self.minor}.{self.micro}"
        return f"{base}.{self.qualifier}" if self.qualifier else base


class Confidence(IntEnum):
    """Fleet confidence in a platform version; `broken` is the unsafe floor."""

    broken = 0
    low = 1
    normal = 2
    high = 3

    @classmethod
    def from_name(cls, raw: str) -> "Confidence":
        name = str(raw or "").strip().lower()
        try:
            return cls[name]
        except KeyError:
            allowed = ", ".join(item.name for item in cls)
            raise InvalidSettingError(f"unknown confidence '{raw}', expected one of: {allowed}") from None

    def equal_or_higher_than(self, other: "Confidence") -> bool:
        return self >= other


@dataclass(frozen=True)
class VersionRecord:
    version: Version
    confidence: Confidence
    is_system_version: bool = False

    def effective_confidence(self, overrides: dict[Version, Confidence]) -> Confidence:
        return overrides.get(self.version, self.confidence)

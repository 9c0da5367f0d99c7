from __future__ import annotations

import json
import logging
import math
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

from fleet_upgrader.errors import InvalidSettingError
from fleet_upgrader.versions import Confidence, Version

logger = logging.getLogger(__name__)

UPGRADES_PER_MINUTE_KEY = "upgrades_per_minute"
TARGET_MAJOR_VERSION_KEY = "target_major_version"
CONFIDENCE_OVERRIDES_KEY = "confidence_overrides"
DEFAULT_UPGRADES_PER_MINUTE = 0.5


@dataclass(frozen=True)
class UpgradeSettings:
    upgrades_per_minute: float
    target_major_version: int | None
    confidence_overrides: dict[Version, Confidence]

    def as_dict(self) -> dict[str, Any]:
        return {
            "upgrades_per_minute": self.upgrades_per_minute,
            "target_major_version": self.target_major_version,
            "confidence_overrides": encode_overrides(self.confidence_overrides),
        }


def encode_overrides(overrides: dict[Version, Confidence]) -> dict[str, str]:
    return {str(version): confidence.name for version, confidence in overrides.items()}


def decode_overrides(raw: str | None) -> dict[Version, Confidence]:
    if not raw:
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("confidence overrides are not valid JSON; ignoring stored value")
        return {}
    if not isinstance(payload, dict):
        logger.warning("confidence overrides must be a JSON object; ignoring stored value")
        return {}
    overrides: dict[Version, Confidence] = {}
    for version_raw, confidence_raw in payload.items():
        if not isinstance(version_raw, str) or not isinstance(confidence_raw, str):
            logger.warning("dropping malformed confidence override %r=%r", version_raw, confidence_raw)
            continue
        try:
            overrides[Version.parse(version_raw)] = Confidence.from_name(confidence_raw)
        except InvalidSettingError as exc:
            logger.warning("dropping malformed confidence override %r=%r: %s", version_raw, confidence_raw, exc)
            continue
    return overrides


class UpgradePolicyMixin:
    """Upgrade knob semantics shared by every policy store backend.

    Backends provide `_read_setting`, `_write_setting` and `_exclusive_lock`.
    Plain reads never take the lock; only the override map's read-modify-write
    runs inside it.
    """

    default_upgrades_per_minute: float = DEFAULT_UPGRADES_PER_MINUTE

    def _read_setting(self, key: str) -> str | None:
        raise NotImplementedError

    def _write_setting(self, key: str, value: str | None) -> None:
        raise NotImplementedError

    def _exclusive_lock(self, name: str):
        raise NotImplementedError

    def upgrades_per_minute(self) -> float:
        raw = self._read_setting(UPGRADES_PER_MINUTE_KEY)
        if raw is None:
            return self.default_upgrades_per_minute
        try:
            value = float(raw)
        except ValueError:
            return self.default_upgrades_per_minute
        if not math.isfinite(value) or value < 0:
            return self.default_upgrades_per_minute
        return value

    def set_upgrades_per_minute(self, n: float) -> None:
        if isinstance(n, bool) or not isinstance(n, (int, float)):
            raise InvalidSettingError(f"Upgrades per minute must be a number, got {n!r}")
        if not math.isfinite(n) or n < 0:
            raise InvalidSettingError(f"Upgrades per minute must be >= 0, got {n}")
        self._write_setting(UPGRADES_PER_MINUTE_KEY, repr(float(n)))

    def target_major_version(self) -> int | None:
        raw = self._read_setting(TARGET_MAJOR_VERSION_KEY)
        if raw is None or not raw.strip():
            return None
        try:
            return int(raw)
        except ValueError:
            return None

    def set_target_major_version(self, major: int | None) -> None:
        """Set to None to determine the target major from the target version itself."""
        if major is None:
            self._write_setting(TARGET_MAJOR_VERSION_KEY, None)
            return
        if isinstance(major, bool) or not isinstance(major, int) or major < 0:
            raise InvalidSettingError(f"Target major version must be a non-negative integer, got {major!r}")
        self._write_setting(TARGET_MAJOR_VERSION_KEY, str(major))

    def confidence_overrides(self) -> dict[Version, Confidence]:
        return decode_overrides(self._read_setting(CONFIDENCE_OVERRIDES_KEY))

    def override_confidence(self, version: Version, confidence: Confidence) -> None:
        """Override confidence for the given version, ignoring the computed value."""
        with self._exclusive_lock(CONFIDENCE_OVERRIDES_KEY):
            overrides = self.confidence_overrides()
            overrides[version] = confidence
            self._write_overrides(overrides)

    def remove_confidence_overrides(self, predicate: Callable[[Version], bool]) -> list[Version]:
        with self._exclusive_lock(CONFIDENCE_OVERRIDES_KEY):
            overrides = self.confidence_overrides()
            removed = [version for version in overrides if predicate(version)]
            if not removed:
                return []
            for version in removed:
                overrides.pop(version, None)
            self._write_overrides(overrides)
            return removed

    def remove_confidence_override(self, version: Version) -> bool:
        return bool(self.remove_confidence_overrides(lambda candidate: candidate == version))

    def _write_overrides(self, overrides: dict[Version, Confidence]) -> None:
        self._write_setting(
            CONFIDENCE_OVERRIDES_KEY,
            json.dumps(encode_overrides(overrides), ensure_ascii=True, separators=(",", ":")),
        )

    def settings(self) -> UpgradeSettings:
        return UpgradeSettings(
            upgrades_per_minute=self.upgrades_per_minute(),
            target_major_version=self.target_major_version(),
            confidence_overrides=self.confidence_overrides(),
        )


class InMemoryPolicyStore(UpgradePolicyMixin):
    def __init__(self, *, default_upgrades_per_minute: float = DEFAULT_UPGRADES_PER_MINUTE) -> None:
        self.default_upgrades_per_minute = default_upgrades_per_minute
        self._lock = threading.RLock()
        self._values: dict[str, str] = {}
        self._named_locks: dict[str, threading.Lock] = {}

    def _read_setting(self, key: str) -> str | None:
        with self._lock:
            return self._values.get(key)

    def _write_setting(self, key: str, value: str | None) -> None:
        with self._lock:
            if value is None:
                self._values.pop(key, None)
            else:
                self._values[key] = value

    @contextmanager
    def _exclusive_lock(self, name: str) -> Iterator[None]:
        with self._lock:
            named = self._named_locks.setdefault(name, threading.Lock())
        with named:
            yield

    def reset(self) -> None:
        with self._lock:
            self._values.clear()

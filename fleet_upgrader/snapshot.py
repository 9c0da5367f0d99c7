from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from fleet_upgrader.fleet import InMemoryFleet, InMemoryVersionStatus
from fleet_upgrader.models import (
    ApplicationId,
    ApplicationRecord,
    BlockWindow,
    Change,
    ChangeKind,
    Deployment,
    RolloutTier,
)
from fleet_upgrader.versions import Confidence, Version, VersionRecord


def _int_set(values: Any) -> frozenset[int]:
    if not isinstance(values, list):
        return frozenset()
    return frozenset(int(x) for x in values)


def change_from_dict(raw: Any) -> Change | None:
    if not isinstance(raw, dict):
        return None
    kind = ChangeKind(str(raw.get("kind", "")).upper())
    if kind is ChangeKind.PLATFORM:
        return Change.of(Version.parse(str(raw.get("platform", ""))))
    return Change.application(str(raw.get("revision", "")))


def application_from_dict(raw: dict[str, Any]) -> ApplicationRecord:
    deployments = tuple(
        Deployment(
            zone=str(item.get("zone", "")),
            version=Version.parse(str(item["version"])),
            failing=bool(item.get("failing", False)),
            deploying=bool(item.get("deploying", False)),
        )
        for item in raw.get("deployments", [])
        if isinstance(item, dict)
    )
    windows = tuple(
        BlockWindow(
            days=_int_set(item.get("days")),
            hours=_int_set(item.get("hours")),
            timezone=str(item.get("timezone", "UTC")),
        )
        for item in raw.get("block_windows", [])
        if isinstance(item, dict)
    )
    major = raw.get("major_version")
    return ApplicationRecord(
        id=ApplicationId(tenant=str(raw["tenant"]), application=str(raw["application"])),
        tier=RolloutTier(str(raw.get("tier", "default"))),
        deployments=deployments,
        change=change_from_dict(raw.get("change")),
        major_version=int(major) if major is not None else None,
        block_windows=windows,
        failing_on=frozenset(Version.parse(str(v)) for v in raw.get("failing_on", [])),
    )


def version_record_from_dict(raw: dict[str, Any], *, system_version: Version | None) -> VersionRecord:
    version = Version.parse(str(raw["version"]))
    flagged = bool(raw.get("is_system_version", False))
    return VersionRecord(
        version=version,
        confidence=Confidence.from_name(str(raw.get("confidence", "low"))),
        is_system_version=flagged or version == system_version,
    )


def load_fleet_snapshot(payload: dict[str, Any]) -> tuple[InMemoryFleet, InMemoryVersionStatus]:
    system_raw = payload.get("system_version")
    system_version = Version.parse(str(system_raw)) if system_raw else None
    records = [
        version_record_from_dict(item, system_version=system_version)
        for item in payload.get("versions", [])
        if isinstance(item, dict)
    ]
    applications = [application_from_dict(item) for item in payload.get("applications", []) if isinstance(item, dict)]
    return InMemoryFleet(applications), InMemoryVersionStatus(records)


def load_fleet_snapshot_file(path: str | Path) -> tuple[InMemoryFleet, InMemoryVersionStatus]:
    payload = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise ValueError(f"fleet snapshot must be a JSON object: {path}")
    return load_fleet_snapshot(payload)

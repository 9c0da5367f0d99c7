from __future__ import annotations

import threading
from dataclasses import replace
from typing import Protocol

from fleet_upgrader.errors import DispatchError
from fleet_upgrader.models import ApplicationId, ApplicationRecord, Change, ChangeKind
from fleet_upgrader.versions import Version, VersionRecord


class FleetDirectory(Protocol):
    def list_applications(self) -> list[ApplicationRecord]: ...


class ConfidenceRegistry(Protocol):
    def versions(self) -> list[VersionRecord]: ...

    def system_version(self) -> Version | None: ...


class TriggerDispatcher(Protocol):
    def trigger_change(self, application_id: ApplicationId, change: Change) -> None: ...

    def cancel_change(self, application_id: ApplicationId, kind: ChangeKind) -> None: ...


class InMemoryFleet:
    """Fleet directory and trigger dispatcher backed by a dict of records."""

    def __init__(self, applications: list[ApplicationRecord] | None = None) -> None:
        self._lock = threading.RLock()
        self._applications: dict[ApplicationId, ApplicationRecord] = {}
        self.triggered: list[tuple[ApplicationId, Change]] = []
        self.cancelled: list[tuple[ApplicationId, ChangeKind]] = []
        for app in applications or []:
            self.put(app)

    def put(self, application: ApplicationRecord) -> None:
        with self._lock:
            self._applications[application.id] = application

    def get(self, application_id: ApplicationId) -> ApplicationRecord | None:
        with self._lock:
            return self._applications.get(application_id)

    def list_applications(self) -> list[ApplicationRecord]:
        with self._lock:
            return [self._applications[key] for key in sorted(self._applications)]

    def _require(self, application_id: ApplicationId) -> ApplicationRecord:
        app = self._applications.get(application_id)
        if app is None:
            raise DispatchError(f"unknown application: {application_id}")
        return app

    def trigger_change(self, application_id: ApplicationId, change: Change) -> None:
        with self._lock:
            app = self._require(application_id)
            if app.change == change:
                return
            if app.change is not None:
                raise DispatchError(
                    f"could not start {change.kind.value} change on {application_id}: "
                    f"{app.change.kind.value} change already in progress"
                )
            self._applications[application_id] = replace(app, change=change)
            self.triggered.append((application_id, change))

    def cancel_change(self, application_id: ApplicationId, kind: ChangeKind) -> None:
        with self._lock:
            app = self._require(application_id)
            if app.change is None or app.change.kind is not kind:
                return
            self._applications[application_id] = replace(app, change=None)
            self.cancelled.append((application_id, kind))


class InMemoryVersionStatus:
    """Confidence registry snapshot; records are kept oldest first."""

    def __init__(self, records: list[VersionRecord] | None = None) -> None:
        self._lock = threading.RLock()
        self._records: list[VersionRecord] = []
        self.set_versions(records or [])

    def set_versions(self, records: list[VersionRecord]) -> None:
        with self._lock:
            self._records = sorted(records, key=lambda record: record.version)

    def versions(self) -> list[VersionRecord]:
        with self._lock:
            return list(self._records)

    def system_version(self) -> Version | None:
        with self._lock:
            for record in self._records:
                if record.is_system_version:
                    return record.version
            return None

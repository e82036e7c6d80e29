"""
The bundle registry: a single JSON array of :class:`BundleRecord` on disk.

A :class:`Registry` handle owns the lock for its file. Create one handle per
registry path and pass it to every component that touches that file; all
mutations run load -> modify -> save inside that lock, and ``save`` replaces
the file atomically so readers never observe a half-written registry.
"""

from __future__ import annotations

import json
import os
import tempfile
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from .errors import BundleNotFoundError, InvalidInputError, RegistryConsistencyError
from .logs import Logger, NoOpLogger

_TS_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
LEGACY_LINK_PREFIX = "linked-"


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def format_ts(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime(_TS_FORMAT)


def parse_ts(value: Any) -> datetime:
    if not isinstance(value, str) or not value.strip():
        return datetime.fromtimestamp(0, timezone.utc)
    raw = value.strip()
    try:
        return datetime.strptime(raw, _TS_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        pass
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError as e:
        raise RegistryConsistencyError(f"Invalid timestamp in registry: {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass(frozen=True)
class LinkedProject:
    symlink_path: str
    linked_at: datetime


@dataclass(frozen=True)
class BundleRecord:
    id: str
    name: str
    source_url: str
    store_path: str
    revision: str = ""
    updated_at: datetime = field(default_factory=utcnow)
    linked_projects: dict[str, LinkedProject] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "source_url": self.source_url,
            "revision": self.revision,
            "store_path": self.store_path,
            "updated_at": format_ts(self.updated_at),
        }
        if self.linked_projects:
            out["linked_projects"] = {
                project: {"symlink_path": link.symlink_path, "linked_at": format_ts(link.linked_at)}
                for project, link in sorted(self.linked_projects.items())
            }
        return out

    @classmethod
    def from_dict(cls, raw: Any) -> "BundleRecord":
        if not isinstance(raw, dict):
            raise RegistryConsistencyError(f"Registry entry is not an object: {raw!r}")
        links_raw = raw.get("linked_projects")
        links: dict[str, LinkedProject] = {}
        if isinstance(links_raw, dict):
            for project, info in links_raw.items():
                if not isinstance(project, str) or not isinstance(info, dict):
                    continue
                symlink_path = info.get("symlink_path")
                if not isinstance(symlink_path, str) or not symlink_path:
                    continue
                links[project] = LinkedProject(symlink_path=symlink_path, linked_at=parse_ts(info.get("linked_at")))

        def _s(key: str) -> str:
            value = raw.get(key)
            return value if isinstance(value, str) else ""

        return cls(
            id=_s("id"),
            name=_s("name"),
            source_url=_s("source_url"),
            store_path=_s("store_path"),
            # Older registries recorded the marker as commit_sha.
            revision=_s("revision") or _s("commit_sha"),
            updated_at=parse_ts(raw.get("updated_at")),
            linked_projects=links,
        )

    def with_links(self, links: dict[str, LinkedProject]) -> "BundleRecord":
        return replace(self, linked_projects=dict(links), updated_at=utcnow())


def validate_record(record: BundleRecord) -> None:
    if not record.id.strip():
        raise InvalidInputError("Bundle id cannot be empty.")
    if not record.name.strip():
        raise InvalidInputError("Bundle name cannot be empty.", bundle=record.id)
    if not record.source_url.strip():
        raise InvalidInputError(f"Bundle {record.name!r} has no source URL.", bundle=record.name)
    if not record.store_path.strip():
        raise InvalidInputError(f"Bundle {record.name!r} has no store path.", bundle=record.name)


def _paths_overlap(a: str, b: str) -> bool:
    pa = os.path.normpath(os.path.abspath(a))
    pb = os.path.normpath(os.path.abspath(b))
    if pa == pb:
        return True
    return pa.startswith(pb + os.sep) or pb.startswith(pa + os.sep)


def _write_json_atomic(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=path.name + ".", suffix=".tmp", dir=path.parent)
    tmp = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(json.dumps(data, indent=2) + "\n")
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp, 0o644)
        tmp.replace(path)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


class Registry:
    def __init__(self, path: str | Path, *, logger: Logger | None = None) -> None:
        self.path = Path(path).expanduser()
        self.logger: Logger = logger or NoOpLogger()
        self._lock = threading.RLock()

    def load(self) -> list[BundleRecord]:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except OSError as e:
            raise RegistryConsistencyError(f"Failed to read registry {self.path}: {e}") from e
        if not text.strip():
            return []
        try:
            raw = json.loads(text)
        except json.JSONDecodeError as e:
            raise RegistryConsistencyError(f"Registry {self.path} is not valid JSON: {e}") from e
        if not isinstance(raw, list):
            raise RegistryConsistencyError(f"Registry {self.path} must contain a JSON array.")
        return [BundleRecord.from_dict(item) for item in raw]

    def save(self, records: list[BundleRecord]) -> None:
        with self._lock:
            try:
                _write_json_atomic(self.path, [r.to_dict() for r in records])
            except OSError as e:
                raise RegistryConsistencyError(f"Failed to write registry {self.path}: {e}") from e

    def _check_collision(self, records: list[BundleRecord], bundle_id: str, store_path: str, name: str) -> None:
        for other in records:
            if other.id != bundle_id and _paths_overlap(other.store_path, store_path):
                raise RegistryConsistencyError(
                    f"Store path {store_path} of {name!r} collides with {other.name!r} ({other.store_path}).",
                    bundle=name,
                )

    def check_store_path(self, bundle_id: str, store_path: str | Path, *, name: str = "") -> None:
        """Raise if a different bundle already owns ``store_path`` or a path nested with it."""
        self._check_collision(self.load(), bundle_id, str(store_path), name or bundle_id)

    def upsert(self, record: BundleRecord, *, keep_links: bool = False) -> BundleRecord:
        """
        Insert or replace ``record`` by id and return what was stored.

        With ``keep_links`` the links of the on-disk record with the same id are
        carried over, read under the same lock as the write.
        """
        validate_record(record)
        with self._lock:
            records = self.load()
            self._check_collision(records, record.id, record.store_path, record.name)
            for i, existing in enumerate(records):
                if existing.id == record.id:
                    if keep_links:
                        record = replace(record, linked_projects=dict(existing.linked_projects))
                    records[i] = record
                    break
            else:
                records.append(record)
            self.save(records)
        self.logger.debug("Registry upsert", bundle=record.name, id=record.id)
        return record

    def remove(self, bundle_id: str) -> None:
        if not bundle_id:
            raise InvalidInputError("Bundle id cannot be empty.")
        with self._lock:
            records = self.load()
            kept = [r for r in records if r.id != bundle_id]
            if len(kept) != len(records):
                self.save(kept)
        self.logger.debug("Registry remove", id=bundle_id)

    def update(self, record: BundleRecord) -> None:
        if not record.id:
            raise InvalidInputError("Bundle id cannot be empty.")
        with self._lock:
            records = self.load()
            for i, existing in enumerate(records):
                if existing.id == record.id:
                    records[i] = record
                    break
            else:
                raise RegistryConsistencyError(f"Bundle with id {record.id!r} not found in registry.", bundle=record.name)
            self.save(records)

    def modify(self, bundle_id: str, fn: Callable[[BundleRecord], BundleRecord]) -> BundleRecord:
        """Apply ``fn`` to the current on-disk record under the lock and persist the result."""
        with self._lock:
            records = self.load()
            for i, existing in enumerate(records):
                if existing.id == bundle_id:
                    updated = fn(existing)
                    if updated.id != bundle_id:
                        raise RegistryConsistencyError(f"Bundle id is immutable ({bundle_id!r} -> {updated.id!r}).")
                    records[i] = updated
                    self.save(records)
                    return updated
        raise RegistryConsistencyError(f"Bundle with id {bundle_id!r} not found in registry.")

    def find_by_name(self, name: str) -> BundleRecord:
        if not name:
            raise InvalidInputError("Bundle name cannot be empty.")
        for record in self.load():
            if record.name == name:
                return record
        raise BundleNotFoundError(f"Skill {name!r} not found in registry.", bundle=name)

    def find_by_id(self, bundle_id: str) -> BundleRecord:
        for record in self.load():
            if record.id == bundle_id:
                return record
        raise BundleNotFoundError(f"Skill with id {bundle_id!r} not found in registry.")

    def migrate_legacy_links(self) -> int:
        """
        Fold old-style ``linked-<name>@<project>`` entries into their bundle's
        ``linked_projects`` map. Returns the number of entries migrated.
        """
        with self._lock:
            records = self.load()
            by_name = {r.name: i for i, r in enumerate(records) if not r.id.startswith(LEGACY_LINK_PREFIX)}
            legacy_ids: set[str] = set()
            for record in records:
                if not record.id.startswith(LEGACY_LINK_PREFIX):
                    continue
                name, sep, _ = record.id[len(LEGACY_LINK_PREFIX) :].partition("@")
                if not sep or name not in by_name:
                    self.logger.warn("Skipping legacy link entry", id=record.id)
                    continue
                project = record.source_url.removeprefix("linked:")
                idx = by_name[name]
                owner = records[idx]
                links = dict(owner.linked_projects)
                links[project] = LinkedProject(symlink_path=record.store_path, linked_at=record.updated_at)
                records[idx] = replace(owner, linked_projects=links)
                legacy_ids.add(record.id)

            if legacy_ids:
                self.save([r for r in records if r.id not in legacy_ids])
        return len(legacy_ids)

"""
Reconciliation of registry link claims against the filesystem.

Phase 1 drops ``linked_projects`` entries whose symlink path no longer exists.
Phase 2 scans the link directory of every project seen in phase 1 and deletes
symlinks that do not point at the store path of a registered bundle with the
same name. Both phases run on bounded pools and stop on cancellation.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from .cancel import CancelToken, ensure_token
from .concurrency import run_bounded
from .config import DEFAULT_LINK_NAMESPACE
from .errors import OperationCancelledError
from .logs import Logger, NoOpLogger
from .registry import BundleRecord, Registry

DEFAULT_TIDY_WORKERS = 10


@dataclass(frozen=True)
class TidyReport:
    stale_registry_entries: int = 0
    orphaned_symlinks: int = 0
    skills_checked: int = 0
    projects_scanned: int = 0


def resolve_link_target(symlink: str | Path) -> str:
    """Absolute, normalized target of ``symlink``; relative targets are taken from the link's own directory."""
    target = os.readlink(symlink)
    if not os.path.isabs(target):
        target = os.path.join(os.path.dirname(os.path.abspath(symlink)), target)
    return os.path.normpath(target)


def _norm(path: str) -> str:
    return os.path.normpath(os.path.abspath(path))


class Tidier:
    def __init__(
        self,
        *,
        registry: Registry,
        link_namespace: str = DEFAULT_LINK_NAMESPACE,
        max_workers: int = DEFAULT_TIDY_WORKERS,
        logger: Logger | None = None,
    ) -> None:
        self.registry = registry
        self.link_namespace = link_namespace
        self.max_workers = max_workers
        self.logger: Logger = logger or NoOpLogger()

    def tidy(self, *, cancel: CancelToken | None = None) -> TidyReport:
        cancel = ensure_token(cancel)
        cancel.raise_if_cancelled("tidy")

        all_records = self.registry.load()
        records = [r for r in all_records if r.linked_projects]
        projects = sorted({project for r in records for project in r.linked_projects})

        stale = self._prune_stale_links(records, cancel)
        cancel.raise_if_cancelled("tidy")
        orphaned = self._remove_orphans(projects, cancel)

        report = TidyReport(
            stale_registry_entries=stale,
            orphaned_symlinks=orphaned,
            skills_checked=len(all_records),
            projects_scanned=len(projects),
        )
        self.logger.info(
            "Tidy complete",
            stale=report.stale_registry_entries,
            orphaned=report.orphaned_symlinks,
            skills=report.skills_checked,
            projects=report.projects_scanned,
        )
        return report

    # Phase 1

    def _missing_links(self, record: BundleRecord, cancel: CancelToken) -> list[str]:
        missing: list[str] = []
        for project, link in record.linked_projects.items():
            cancel.raise_if_cancelled("tidy")
            try:
                os.lstat(link.symlink_path)
            except FileNotFoundError:
                missing.append(project)
            except OSError as e:
                self.logger.warn("Failed to check symlink", bundle=record.name, path=link.symlink_path, error=e)
        return missing

    def _prune_stale_links(self, records: list[BundleRecord], cancel: CancelToken) -> int:
        outcomes = run_bounded(
            records,
            lambda record: self._missing_links(record, cancel),
            max_workers=self.max_workers,
            cancel=cancel,
        )
        # Nothing is written unless every check ran.
        cancel.raise_if_cancelled("tidy")

        stale: dict[str, list[str]] = {}
        for outcome in outcomes:
            if isinstance(outcome.error, OperationCancelledError):
                raise outcome.error
            if outcome.error is not None:
                self.logger.error("Failed to check links", outcome.error, bundle=outcome.item.name)
                continue
            if outcome.value:
                stale[outcome.item.id] = outcome.value

        removed = 0
        for bundle_id, projects in stale.items():
            dropped: list[str] = []

            def _drop(current: BundleRecord, projects: list[str] = projects, dropped: list[str] = dropped) -> BundleRecord:
                links = dict(current.linked_projects)
                for project in projects:
                    if links.pop(project, None) is not None:
                        dropped.append(project)
                return current.with_links(links)

            try:
                record = self.registry.modify(bundle_id, _drop)
            except Exception as e:  # noqa: BLE001 - one bundle's failure must not stop the rest
                self.logger.error("Failed to prune stale links", e, id=bundle_id)
                continue
            for project in dropped:
                self.logger.info("Removed stale link entry", bundle=record.name, project=project)
            removed += len(dropped)
        return removed

    # Phase 2

    def _scan_project(self, project: str, valid: dict[str, str], cancel: CancelToken) -> int:
        link_dir = Path(project) / self.link_namespace
        try:
            entries = list(os.scandir(link_dir))
        except FileNotFoundError:
            return 0
        except NotADirectoryError:
            return 0

        removed = 0
        for entry in entries:
            cancel.raise_if_cancelled("tidy")
            if not entry.is_symlink():
                continue
            try:
                target = resolve_link_target(entry.path)
            except OSError as e:
                self.logger.warn("Failed to read symlink", path=entry.path, error=e)
                continue
            if valid.get(target) == entry.name:
                continue
            try:
                os.unlink(entry.path)
            except FileNotFoundError:
                continue
            except OSError as e:
                self.logger.error("Failed to remove orphaned symlink", e, path=entry.path)
                continue
            self.logger.info("Removed orphaned symlink", path=entry.path, target=target)
            removed += 1
        return removed

    def _remove_orphans(self, projects: list[str], cancel: CancelToken) -> int:
        if not projects:
            return 0
        # Re-read so that phase 1 writes and concurrent removals are reflected.
        valid = {_norm(r.store_path): r.name for r in self.registry.load() if r.store_path}

        outcomes = run_bounded(
            projects,
            lambda project: self._scan_project(project, valid, cancel),
            max_workers=self.max_workers,
            cancel=cancel,
        )
        cancel.raise_if_cancelled("tidy")

        removed = 0
        for outcome in outcomes:
            if isinstance(outcome.error, OperationCancelledError):
                raise outcome.error
            if outcome.error is not None:
                self.logger.error("Failed to scan project", outcome.error, project=outcome.item)
                continue
            removed += outcome.value or 0
        return removed

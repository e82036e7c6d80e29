"""
Change detection and in-place updates for installed bundles.

A bundle has an update when the remote branch head differs from the revision
recorded at install time. Applying an update re-materializes the bundle into
its existing store path (atomic replace) and only then records the new
revision, so a failed update leaves both the files and the registry as they were.
"""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field, replace

from .cancel import CancelToken, ensure_token
from .concurrency import run_bounded
from .errors import GskillsError, InvalidInputError
from .installer import RemoteClient
from .logs import Logger, NoOpLogger
from .materializer import Materializer
from .registry import BundleRecord, Registry, utcnow
from .source import SourceRef, parse_source_ref

DEFAULT_CHECK_WORKERS = 5
DEFAULT_UPDATE_WORKERS = 3


class UpdateStatus(enum.Enum):
    UP_TO_DATE = "up-to-date"
    AVAILABLE = "available"
    FAILED = "failed"


@dataclass(frozen=True)
class UpdateCheck:
    record: BundleRecord
    status: UpdateStatus
    new_revision: str = ""
    error: Exception | None = None


@dataclass(frozen=True)
class UpdateStats:
    total: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    duration: float = 0.0  # seconds
    failures: dict[str, str] = field(default_factory=dict)


class Updater:
    def __init__(
        self,
        *,
        client: RemoteClient,
        registry: Registry,
        materializer: Materializer | None = None,
        check_workers: int = DEFAULT_CHECK_WORKERS,
        update_workers: int = DEFAULT_UPDATE_WORKERS,
        logger: Logger | None = None,
    ) -> None:
        self.client = client
        self.registry = registry
        self.logger: Logger = logger or NoOpLogger()
        self.materializer = materializer or Materializer(client, logger=self.logger)
        self.check_workers = check_workers
        self.update_workers = update_workers

    def _source(self, record: BundleRecord) -> SourceRef:
        if not record.source_url:
            raise InvalidInputError(f"Skill {record.name!r} has no source URL.", bundle=record.name)
        try:
            return parse_source_ref(record.source_url)
        except InvalidInputError as e:
            raise InvalidInputError(f"Skill {record.name!r} has an invalid source URL: {e}", bundle=record.name) from e

    def check_update(self, record: BundleRecord, *, cancel: CancelToken | None = None) -> tuple[bool, str]:
        ref = self._source(record)
        try:
            new_revision = self.client.latest_revision(ref, cancel=cancel)
        except GskillsError as e:
            if e.bundle is None:
                e.bundle = record.name
            raise
        return new_revision != record.revision, new_revision

    def check_all_updates(
        self,
        records: list[BundleRecord] | None = None,
        *,
        cancel: CancelToken | None = None,
    ) -> list[UpdateCheck]:
        if records is None:
            records = self.registry.load()

        def _check(record: BundleRecord) -> tuple[bool, str]:
            return self.check_update(record, cancel=cancel)

        results: list[UpdateCheck] = []
        for outcome in run_bounded(records, _check, max_workers=self.check_workers, cancel=cancel):
            if outcome.error is not None:
                self.logger.warn("Update check failed", bundle=outcome.item.name, error=outcome.error)
                results.append(UpdateCheck(record=outcome.item, status=UpdateStatus.FAILED, error=outcome.error))
                continue
            assert outcome.value is not None
            has_update, new_revision = outcome.value
            status = UpdateStatus.AVAILABLE if has_update else UpdateStatus.UP_TO_DATE
            results.append(UpdateCheck(record=outcome.item, status=status, new_revision=new_revision))
        return results

    def apply_update(
        self,
        record: BundleRecord,
        new_revision: str | None = None,
        *,
        cancel: CancelToken | None = None,
    ) -> BundleRecord:
        cancel = ensure_token(cancel)
        if not record.store_path:
            raise InvalidInputError(f"Skill {record.name!r} has no store path.", bundle=record.name)
        ref = self._source(record)

        if new_revision is None:
            has_update, new_revision = self.check_update(record, cancel=cancel)
            if not has_update:
                return record

        self.logger.info("Starting update", bundle=record.name, target=record.store_path)
        try:
            stats = self.materializer.materialize(ref, ref.path, record.store_path, cancel=cancel)
        except GskillsError as e:
            if e.bundle is None:
                e.bundle = record.name
            raise

        revision = new_revision

        def _bump(current: BundleRecord) -> BundleRecord:
            return replace(current, revision=revision, updated_at=utcnow())

        updated = self.registry.modify(record.id, _bump)
        self.logger.info("Update complete", bundle=record.name, files=stats.files)
        return updated

    def apply_all_updates(
        self,
        records: list[BundleRecord],
        *,
        revisions: dict[str, str] | None = None,
        cancel: CancelToken | None = None,
    ) -> UpdateStats:
        """
        Update every record, at most ``update_workers`` at a time.

        ``revisions`` maps bundle id to an already-fetched remote revision (as
        returned by :meth:`check_all_updates`) so those bundles skip the re-check.
        Failures are counted, never raised.
        """
        started = time.monotonic()
        known = dict(revisions or {})

        def _apply(record: BundleRecord) -> bool:
            updated = self.apply_update(record, known.get(record.id), cancel=cancel)
            return updated is not record

        updated = skipped = failed = 0
        failures: dict[str, str] = {}
        for outcome in run_bounded(records, _apply, max_workers=self.update_workers, cancel=cancel):
            if outcome.error is not None:
                failed += 1
                failures[outcome.item.name] = str(outcome.error)
                self.logger.error("Failed to update skill", outcome.error, bundle=outcome.item.name)
            elif outcome.value:
                updated += 1
            else:
                skipped += 1

        return UpdateStats(
            total=len(records),
            updated=updated,
            skipped=skipped,
            failed=failed,
            duration=time.monotonic() - started,
            failures=failures,
        )

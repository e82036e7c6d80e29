from __future__ import annotations

import os
import posixpath
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Protocol

from .cancel import CancelToken, ensure_token
from .errors import FilesystemError, InvalidInputError, RemoteNotFoundError
from .logs import Logger, NoOpLogger
from .materializer import MaterializeStats, Materializer, TreeClient
from .registry import BundleRecord, Registry, utcnow
from .source import SourceRef, parse_source_ref

SKILL_MANIFEST = "SKILL.md"

Confirm = Callable[[str], bool]


class RemoteClient(TreeClient, Protocol):
    def latest_revision(self, ref: SourceRef, *, cancel: CancelToken | None = None) -> str:
        ...

    def path_exists(self, ref: SourceRef, path: str, *, cancel: CancelToken | None = None) -> bool:
        ...


@dataclass(frozen=True)
class InstallResult:
    record: BundleRecord | None
    stats: MaterializeStats = field(default_factory=MaterializeStats)
    cancelled: bool = False


@dataclass(frozen=True)
class RemoveResult:
    record: BundleRecord | None
    removed_links: tuple[str, ...] = ()
    cancelled: bool = False


def _always_yes(prompt: str) -> bool:
    return True


class Installer:
    """Acquires bundles from GitHub into the local store and removes them again."""

    def __init__(
        self,
        *,
        client: RemoteClient | None = None,
        registry: Registry,
        store_dir: str | Path,
        materializer: Materializer | None = None,
        logger: Logger | None = None,
    ) -> None:
        self.client = client
        self.registry = registry
        self.store_dir = Path(store_dir).expanduser().absolute()
        self.logger: Logger = logger or NoOpLogger()
        if materializer is None and client is not None:
            materializer = Materializer(client, logger=self.logger)
        self.materializer = materializer

    def store_path_for(self, ref: SourceRef) -> Path:
        return self.store_dir / ref.name

    def add(self, url: str, *, confirm: Confirm | None = None, cancel: CancelToken | None = None) -> InstallResult:
        if self.client is None or self.materializer is None:
            raise InvalidInputError("Adding a skill requires a remote client.")
        confirm = confirm or _always_yes
        cancel = ensure_token(cancel)
        ref = parse_source_ref(url)

        # Another bundle's files must never be overwritten, even with the user's consent.
        dest = self.store_path_for(ref)
        self.registry.check_store_path(ref.bundle_id, dest, name=ref.name)

        # Reject before staging anything: a missing path would otherwise "succeed" empty.
        if not self.client.path_exists(ref, posixpath.join(ref.path, SKILL_MANIFEST), cancel=cancel):
            raise RemoteNotFoundError(
                f"{SKILL_MANIFEST} not found in {ref.url}. This is not a valid skill package.",
                bundle=ref.name,
            )

        revision = self.client.latest_revision(ref, cancel=cancel)

        if dest.exists() or dest.is_symlink():
            if not confirm(f"Target path {dest} already exists. Overwrite?"):
                self.logger.info("Download cancelled by user", bundle=ref.name)
                return InstallResult(record=None, cancelled=True)

        cancel.raise_if_cancelled("add")
        self.logger.info("Downloading skill", source=ref.url, destination=str(dest))
        stats = self.materializer.materialize(ref, ref.path, dest, cancel=cancel)

        record = BundleRecord(
            id=ref.bundle_id,
            name=ref.name,
            source_url=ref.url,
            store_path=str(dest),
            revision=revision,
            updated_at=utcnow(),
        )
        record = self.registry.upsert(record, keep_links=True)
        return InstallResult(record=record, stats=stats)

    def remove(self, name: str, *, confirm: Confirm | None = None, cancel: CancelToken | None = None) -> RemoveResult:
        if not name:
            raise InvalidInputError("Skill name cannot be empty.")
        confirm = confirm or _always_yes
        cancel = ensure_token(cancel)
        record = self.registry.find_by_name(name)

        if not confirm(f"Are you sure you want to remove skill '{name}'?"):
            return RemoveResult(record=record, cancelled=True)
        cancel.raise_if_cancelled("remove")

        removed_links: list[str] = []
        for project, link in sorted(record.linked_projects.items()):
            if not os.path.islink(link.symlink_path):
                continue
            try:
                os.unlink(link.symlink_path)
            except OSError as e:
                self.logger.error("Failed to remove symlink", e, path=link.symlink_path, project=project)
                continue
            removed_links.append(link.symlink_path)

        store = Path(record.store_path)
        try:
            if store.is_symlink() or store.is_file():
                store.unlink()
            elif store.exists():
                shutil.rmtree(store)
        except OSError as e:
            raise FilesystemError(f"Failed to remove skill directory {store}: {e}", bundle=name) from e

        self.registry.remove(record.id)
        self.logger.info("Removed skill", bundle=name, links=len(removed_links))
        return RemoveResult(record=record, removed_links=tuple(removed_links))

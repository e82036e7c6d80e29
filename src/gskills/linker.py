from __future__ import annotations

import os
from pathlib import Path

from .cancel import CancelToken, ensure_token
from .config import DEFAULT_LINK_NAMESPACE
from .errors import (
    BundleNotFoundError,
    FilesystemError,
    GskillsError,
    InvalidInputError,
    LinkExistsError,
    NotLinkedError,
)
from .logs import Logger, NoOpLogger
from .registry import BundleRecord, LinkedProject, Registry, utcnow


def _lexists(path: Path) -> bool:
    try:
        os.lstat(path)
    except FileNotFoundError:
        return False
    except OSError as e:
        raise FilesystemError(f"Failed to check {path}: {e}") from e
    return True


class Linker:
    """
    Exposes stored bundles inside consumer projects as symlinks under
    ``<project>/<link_namespace>/<name>`` and records each link in the registry.
    """

    def __init__(
        self,
        *,
        registry: Registry,
        link_namespace: str = DEFAULT_LINK_NAMESPACE,
        logger: Logger | None = None,
    ) -> None:
        self.registry = registry
        self.link_namespace = link_namespace
        self.logger: Logger = logger or NoOpLogger()

    def link_dir(self, project: str | Path) -> Path:
        return Path(project) / self.link_namespace

    def link(self, name: str, project_path: str | Path, *, cancel: CancelToken | None = None) -> Path:
        if not name:
            raise InvalidInputError("Skill name cannot be empty.")
        if not str(project_path):
            raise InvalidInputError("Project path cannot be empty.")
        cancel = ensure_token(cancel)

        project = Path(os.path.abspath(os.fspath(project_path)))
        if not project.is_dir():
            raise InvalidInputError(f"Project path {project} does not exist or is not a directory.", bundle=name)

        record = self.registry.find_by_name(name)
        store = Path(record.store_path)
        if not store.is_dir():
            raise BundleNotFoundError(f"Skill {name!r} has no files at {store}. Re-add it first.", bundle=name)

        target = self.link_dir(project) / name
        if _lexists(target):
            raise LinkExistsError(f"Skill {name!r} is already linked in project {project} ({target} exists).", bundle=name)

        cancel.raise_if_cancelled("link")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            os.symlink(store, target, target_is_directory=True)
        except OSError as e:
            raise FilesystemError(f"Failed to create symlink {target}: {e}", bundle=name) from e

        def _record_link(current: BundleRecord) -> BundleRecord:
            links = dict(current.linked_projects)
            links[str(project)] = LinkedProject(symlink_path=str(target), linked_at=utcnow())
            return current.with_links(links)

        try:
            cancel.raise_if_cancelled("link")
            self.registry.modify(record.id, _record_link)
        except (GskillsError, OSError) as e:
            self.logger.error("Failed to record link, removing symlink", e, bundle=name, path=str(target))
            try:
                os.unlink(target)
            except OSError as cleanup_err:
                self.logger.error("Failed to clean up symlink after error", cleanup_err, path=str(target))
            if isinstance(e, GskillsError):
                raise
            raise FilesystemError(f"Failed to record link for {name!r}: {e}", bundle=name) from e

        self.logger.info("Linked skill", bundle=name, path=str(target))
        return target

    def unlink(self, name: str, project_path: str | Path) -> None:
        if not name:
            raise InvalidInputError("Skill name cannot be empty.")
        if not str(project_path):
            raise InvalidInputError("Project path cannot be empty.")

        record = self.registry.find_by_name(name)
        project = os.path.abspath(os.fspath(project_path))
        link = record.linked_projects.get(project)
        if link is None:
            raise NotLinkedError(f"Skill {name!r} is not linked to project {project}.", bundle=name)

        if os.path.lexists(link.symlink_path) and not os.path.islink(link.symlink_path):
            raise FilesystemError(f"Refusing to remove {link.symlink_path}: not a symlink.", bundle=name)
        try:
            os.unlink(link.symlink_path)
        except FileNotFoundError:
            self.logger.warn("Symlink already missing", bundle=name, path=link.symlink_path)
        except OSError as e:
            raise FilesystemError(f"Failed to remove symlink {link.symlink_path}: {e}", bundle=name) from e

        def _drop_link(current: BundleRecord) -> BundleRecord:
            links = dict(current.linked_projects)
            links.pop(project, None)
            return current.with_links(links)

        self.registry.modify(record.id, _drop_link)
        self.logger.info("Unlinked skill", bundle=name, project=project)

    def link_info(self, name: str) -> BundleRecord:
        return self.registry.find_by_name(name)

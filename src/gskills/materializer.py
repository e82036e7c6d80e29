"""
Concurrent, atomic download of a remote directory tree.

The tree is fetched into a uniquely named staging directory beside the
destination by a bounded thread pool. A coordinator loop is the only place that
aggregates results and schedules child directories, so the first failure can
stop the whole walk deterministically. The destination is replaced only after
the full tree has been written.
"""

from __future__ import annotations

import os
import posixpath
import shutil
import tempfile
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from .cancel import CancelToken, ensure_token
from .client import RemoteEntry
from .errors import FilesystemError, OperationCancelledError, RemoteError
from .logs import Logger, NoOpLogger
from .source import SourceRef

DEFAULT_MAX_WORKERS = 3
_POLL_S = 0.1


class TreeClient(Protocol):
    def list_children(self, ref: SourceRef, path: str, *, cancel: CancelToken | None = None) -> list[RemoteEntry]:
        ...

    def fetch_raw(self, url: str, *, cancel: CancelToken | None = None) -> bytes:
        ...


@dataclass(frozen=True)
class MaterializeStats:
    files: int = 0
    dirs: int = 0
    bytes: int = 0

    def __add__(self, other: "MaterializeStats") -> "MaterializeStats":
        return MaterializeStats(
            files=self.files + other.files,
            dirs=self.dirs + other.dirs,
            bytes=self.bytes + other.bytes,
        )


@dataclass(frozen=True)
class _DirJob:
    remote_path: str
    local_dir: Path


def _check_entry_name(name: str) -> None:
    if not name or name in (".", "..") or "/" in name or "\\" in name or "\x00" in name:
        raise RemoteError(f"Remote entry has an invalid name: {name!r}")


class Materializer:
    def __init__(self, client: TreeClient, *, max_workers: int = DEFAULT_MAX_WORKERS, logger: Logger | None = None) -> None:
        self.client = client
        self.max_workers = max(1, max_workers)
        self.logger: Logger = logger or NoOpLogger()

    def materialize(
        self,
        ref: SourceRef,
        remote_path: str,
        destination: str | Path,
        *,
        cancel: CancelToken | None = None,
    ) -> MaterializeStats:
        cancel = ensure_token(cancel)
        cancel.raise_if_cancelled("materialize")
        dest = Path(destination).expanduser().absolute()

        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            staging = Path(tempfile.mkdtemp(prefix=f".tmp.{dest.name}.", dir=dest.parent))
        except OSError as e:
            raise FilesystemError(f"Failed to create staging directory beside {dest}: {e}") from e

        self.logger.debug("Created staging directory", path=str(staging))
        try:
            stats = self._fetch_tree(ref, remote_path, staging, cancel)
            cancel.raise_if_cancelled("materialize")
            self._promote(staging, dest)
        except BaseException:
            self._discard(staging)
            raise

        self.logger.info(
            "Materialized tree",
            source=ref.url,
            destination=str(dest),
            files=stats.files,
            dirs=stats.dirs,
            bytes=stats.bytes,
        )
        return stats

    def _fetch_tree(self, ref: SourceRef, remote_path: str, root: Path, cancel: CancelToken) -> MaterializeStats:
        # Private token for the walk: aborting on a task failure must not cancel the caller's token.
        abort = CancelToken()
        stats = MaterializeStats()
        first_error: BaseException | None = None

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="gskills-fetch") as pool:
            pending: set[Future] = {pool.submit(self._expand, ref, _DirJob(remote_path, root), abort)}
            while pending:
                done, pending = wait(pending, timeout=_POLL_S, return_when=FIRST_COMPLETED)

                if cancel.cancelled and first_error is None:
                    first_error = OperationCancelledError("materialize cancelled")
                    abort.cancel()

                for fut in done:
                    try:
                        partial, children = fut.result()
                    except BaseException as e:  # noqa: BLE001 - first error wins, the rest are discarded
                        if first_error is None:
                            first_error = e
                            abort.cancel()
                            self.logger.debug("Aborting tree fetch", error=e)
                        continue
                    if first_error is not None:
                        continue
                    stats = stats + partial
                    for child in children:
                        pending.add(pool.submit(self._expand, ref, child, abort))

                if first_error is not None:
                    for fut in pending:
                        fut.cancel()

        if first_error is not None:
            raise first_error
        return stats

    def _expand(self, ref: SourceRef, job: _DirJob, abort: CancelToken) -> tuple[MaterializeStats, list[_DirJob]]:
        abort.raise_if_cancelled(f"list {job.remote_path}")
        entries = self.client.list_children(ref, job.remote_path, cancel=abort)

        files = dirs = nbytes = 0
        children: list[_DirJob] = []
        for entry in entries:
            _check_entry_name(entry.name)
            target = job.local_dir / entry.name
            if entry.kind == "dir":
                try:
                    target.mkdir(parents=True, exist_ok=True)
                except OSError as e:
                    raise FilesystemError(f"Failed to create directory {target}: {e}") from e
                dirs += 1
                children.append(_DirJob(entry.path or posixpath.join(job.remote_path, entry.name), target))
            elif entry.kind == "file":
                abort.raise_if_cancelled(f"download {entry.path}")
                data = self.client.fetch_raw(entry.download_url or "", cancel=abort)
                try:
                    target.write_bytes(data)
                except OSError as e:
                    raise FilesystemError(f"Failed to write file {target}: {e}") from e
                files += 1
                nbytes += len(data)
            else:
                self.logger.debug("Skipping unsupported entry", path=entry.path, kind=entry.kind)

        return MaterializeStats(files=files, dirs=dirs, bytes=nbytes), children

    def _promote(self, staging: Path, dest: Path) -> None:
        backup: Path | None = None
        if dest.exists() or dest.is_symlink():
            backup = staging.with_name(staging.name + ".old")
            try:
                os.rename(dest, backup)
            except OSError as e:
                raise FilesystemError(f"Failed to move existing {dest} aside: {e}") from e

        try:
            os.rename(staging, dest)
        except OSError as e:
            if backup is not None:
                try:
                    os.rename(backup, dest)
                except OSError as restore_err:
                    self.logger.error("Failed to restore previous contents", restore_err, path=str(dest))
            raise FilesystemError(f"Failed to move files to {dest}: {e}") from e

        if backup is not None:
            _remove_path(backup, logger=self.logger)

    def _discard(self, staging: Path) -> None:
        if staging.exists():
            self.logger.debug("Cleaning up staging directory", path=str(staging))
            _remove_path(staging, logger=self.logger)


def _remove_path(path: Path, *, logger: Logger) -> None:
    try:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink()
    except OSError as e:
        logger.error("Failed to remove path", e, path=str(path))

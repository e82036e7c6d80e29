from __future__ import annotations

from dataclasses import dataclass


class GskillsError(RuntimeError):
    """Base class for every error raised by gskills."""

    bundle: str | None = None

    def __init__(self, message: str = "", *, bundle: str | None = None) -> None:
        super().__init__(message)
        if bundle is not None:
            self.bundle = bundle


class InvalidInputError(GskillsError):
    pass


class NotFoundError(GskillsError):
    pass


class BundleNotFoundError(NotFoundError):
    pass


class RemoteNotFoundError(NotFoundError):
    pass


class NotLinkedError(NotFoundError):
    pass


class RemoteError(GskillsError):
    """Transport-level failure talking to the remote API."""


class RateLimitError(RemoteError):
    pass


class ResponseParseError(RemoteError):
    pass


@dataclass(eq=False)
class RemoteHTTPError(RemoteError):
    status_code: int
    body: str
    url: str = ""

    def __str__(self) -> str:  # pragma: no cover
        where = f" for {self.url}" if self.url else ""
        return f"HTTP {self.status_code}{where}: {self.body}"


class FilesystemError(GskillsError):
    pass


class LinkExistsError(FilesystemError):
    pass


class RegistryConsistencyError(GskillsError):
    pass


class OperationCancelledError(GskillsError):
    pass

from __future__ import annotations

import posixpath
from dataclasses import dataclass
from urllib.parse import urlsplit

from .errors import InvalidInputError

GITHUB_HOST = "github.com"
_URL_FORMAT = "https://github.com/<owner>/<repo>/tree/<branch>/<path>"


@dataclass(frozen=True)
class SourceRef:
    owner: str
    repo: str
    branch: str
    path: str

    @property
    def name(self) -> str:
        return posixpath.basename(self.path)

    @property
    def url(self) -> str:
        return f"https://{GITHUB_HOST}/{self.owner}/{self.repo}/tree/{self.branch}/{self.path}"

    @property
    def bundle_id(self) -> str:
        return f"{self.owner}/{self.repo}/{self.path}@{self.branch}"


def parse_source_ref(value: str) -> SourceRef:
    raw = (value or "").strip()
    if not raw:
        raise InvalidInputError("Source URL cannot be empty.")
    try:
        parts = urlsplit(raw)
    except ValueError as e:
        raise InvalidInputError(f"Invalid URL {value!r}: {e}") from e

    if parts.scheme not in ("http", "https") or parts.netloc.lower() not in (GITHUB_HOST, "www." + GITHUB_HOST):
        raise InvalidInputError(f"Only GitHub URLs are supported (got {value!r}). Expected {_URL_FORMAT}.")

    segments = [s for s in parts.path.strip("/").split("/")]
    if len(segments) < 2 or not segments[0] or not segments[1]:
        raise InvalidInputError(f"Invalid GitHub URL {value!r}: owner and repo are required.")

    owner, repo = segments[0], segments[1]
    if repo.endswith(".git"):
        repo = repo[: -len(".git")]
    if len(segments) < 4 or segments[2] != "tree":
        raise InvalidInputError(f"Branch must be specified in URL {value!r}. Use format: {_URL_FORMAT}")

    branch = segments[3]
    if not branch:
        raise InvalidInputError(f"Branch cannot be empty in URL {value!r}.")

    rest = [s for s in segments[4:] if s]
    if not rest:
        raise InvalidInputError(f"Path must be specified in URL {value!r}. Use format: {_URL_FORMAT}")
    if any(s in (".", "..") for s in rest):
        raise InvalidInputError(f"Path in URL {value!r} must not contain '.' or '..' segments.")

    return SourceRef(owner=owner, repo=repo, branch=branch, path="/".join(rest))

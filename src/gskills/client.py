from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Callable
from urllib.parse import quote, urlsplit

import httpx

from ._version import __version__
from .cancel import CancelToken, ensure_token
from .config import DEFAULT_TIMEOUT_S
from .errors import (
    OperationCancelledError,
    RateLimitError,
    RemoteError,
    RemoteHTTPError,
    RemoteNotFoundError,
    ResponseParseError,
)
from .logs import Logger, NoOpLogger
from .source import SourceRef

DEFAULT_API_URL = "https://api.github.com"
RAW_HOST = "raw.githubusercontent.com"
MAX_ATTEMPTS = 5
MAX_BACKOFF_S = 16.0
RATE_LIMIT_STATUSES = (403, 429)


@dataclass(frozen=True)
class RemoteEntry:
    name: str
    path: str
    kind: str  # "file" | "dir" (anything else is skipped by the materializer)
    download_url: str | None = None
    size: int = 0


def backoff_delay(attempt: int, *, cap: float = MAX_BACKOFF_S) -> float:
    """Seconds to wait after the ``attempt``-th (0-based) rate-limited try."""
    return float(min(2**attempt, cap))


def _looks_rate_limited(text: str) -> bool:
    lowered = text.lower()
    return "rate limit" in lowered or "429" in lowered


def _interruptible_sleep(delay: float, cancel: CancelToken) -> None:
    if cancel.wait(delay):
        raise OperationCancelledError("cancelled during rate-limit backoff")


def _parse_entry(obj: Any) -> RemoteEntry:
    if not isinstance(obj, dict):
        raise ResponseParseError(f"Unexpected directory entry: {obj!r}")
    name = obj.get("name")
    kind = obj.get("type")
    if not isinstance(name, str) or not name or not isinstance(kind, str):
        raise ResponseParseError(f"Directory entry is missing name/type: {obj!r}")
    path = obj.get("path") if isinstance(obj.get("path"), str) else name
    download_url = obj.get("download_url") if isinstance(obj.get("download_url"), str) else None
    size = obj.get("size") if isinstance(obj.get("size"), int) else 0
    return RemoteEntry(name=name, path=path, kind=kind, download_url=download_url, size=size)


class GitHubClient:
    """
    Read-only client for the GitHub contents API and raw file downloads.

    Every call retries on rate-limit signals (HTTP 403/429, or a transport error
    mentioning a rate limit) with exponential backoff; everything else surfaces
    immediately as a typed error.
    """

    def __init__(
        self,
        *,
        token: str | None = None,
        api_url: str = DEFAULT_API_URL,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        proxy: str | None = None,
        max_attempts: int = MAX_ATTEMPTS,
        transport: httpx.BaseTransport | None = None,
        logger: Logger | None = None,
    ) -> None:
        self.token = token
        self.api_url = api_url.rstrip("/")
        self.timeout_s = timeout_s
        self.max_attempts = max(1, max_attempts)
        self.logger: Logger = logger or NoOpLogger()

        self._http = httpx.Client(
            timeout=timeout_s,
            follow_redirects=True,
            proxy=proxy,
            transport=transport,
            headers={"User-Agent": f"gskills/{__version__}"},
        )
        self._sleep: Callable[[float, CancelToken], None] = _interruptible_sleep

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "GitHubClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _auth_for_url(self, url: str) -> bool:
        if not self.token:
            return False
        host = urlsplit(url).netloc.lower()
        return host in (urlsplit(self.api_url).netloc.lower(), RAW_HOST)

    def _contents_url(self, ref: SourceRef, path: str) -> str:
        return f"{self.api_url}/repos/{quote(ref.owner, safe='')}/{quote(ref.repo, safe='')}/contents/{quote(path.strip('/'), safe='/')}"

    def request(
        self,
        url: str,
        *,
        op: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        cancel: CancelToken | None = None,
    ) -> httpx.Response:
        cancel = ensure_token(cancel)
        req_headers = dict(headers or {})
        if self._auth_for_url(url):
            req_headers["Authorization"] = f"Bearer {self.token}"

        attempts = 0
        while True:
            cancel.raise_if_cancelled(op)
            try:
                resp = self._http.get(url, params=params, headers=req_headers)
            except httpx.HTTPError as e:
                if not _looks_rate_limited(str(e)):
                    raise RemoteError(f"{op} failed: {e}") from e
                reason = str(e)
            else:
                # A response that arrives after cancellation is discarded.
                cancel.raise_if_cancelled(op)
                if resp.status_code == 404:
                    raise RemoteNotFoundError(f"{op}: not found ({url})")
                if resp.status_code in RATE_LIMIT_STATUSES:
                    reason = f"HTTP {resp.status_code}"
                elif resp.status_code >= 400:
                    raise RemoteHTTPError(resp.status_code, resp.text, url)
                else:
                    return resp

            attempts += 1
            if attempts >= self.max_attempts:
                raise RateLimitError(f"{op} rate limited ({reason}) after {self.max_attempts} attempts")
            delay = backoff_delay(attempts - 1)
            self.logger.warn("Rate limit hit, backing off", op=op, attempt=attempts, backoff=delay)
            self._sleep(delay, cancel)

    def _get_json(self, url: str, *, op: str, params: dict[str, Any] | None, cancel: CancelToken | None) -> Any:
        resp = self.request(
            url,
            op=op,
            params=params,
            headers={"Accept": "application/vnd.github+json"},
            cancel=cancel,
        )
        try:
            return resp.json()
        except (json.JSONDecodeError, ValueError) as e:
            raise ResponseParseError(f"{op}: invalid JSON response: {e}") from e

    def list_children(self, ref: SourceRef, path: str, *, cancel: CancelToken | None = None) -> list[RemoteEntry]:
        data = self._get_json(
            self._contents_url(ref, path),
            op=f"list {path}",
            params={"ref": ref.branch},
            cancel=cancel,
        )
        if not isinstance(data, list):
            raise ResponseParseError(f"list {path}: expected a directory listing, got {type(data).__name__}")
        return [_parse_entry(item) for item in data]

    def fetch_raw(self, url: str, *, cancel: CancelToken | None = None) -> bytes:
        if not url:
            raise RemoteError("fetch: entry has no download URL")
        return self.request(url, op=f"download {url}", cancel=cancel).content

    def latest_revision(self, ref: SourceRef, *, cancel: CancelToken | None = None) -> str:
        url = f"{self.api_url}/repos/{quote(ref.owner, safe='')}/{quote(ref.repo, safe='')}/commits/{quote(ref.branch, safe='')}"
        data = self._get_json(url, op=f"revision {ref.owner}/{ref.repo}@{ref.branch}", params=None, cancel=cancel)
        sha = data.get("sha") if isinstance(data, dict) else None
        if not isinstance(sha, str) or not sha.strip():
            raise ResponseParseError(f"revision {ref.owner}/{ref.repo}@{ref.branch}: response has no commit sha")
        return sha.strip()

    def path_exists(self, ref: SourceRef, path: str, *, cancel: CancelToken | None = None) -> bool:
        try:
            self.request(
                self._contents_url(ref, path),
                op=f"stat {path}",
                params={"ref": ref.branch},
                cancel=cancel,
            )
        except RemoteNotFoundError:
            return False
        return True

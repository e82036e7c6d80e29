import unittest

import httpx

from gskills.cancel import CancelToken
from gskills.client import GitHubClient, backoff_delay
from gskills.errors import (
    OperationCancelledError,
    RateLimitError,
    RemoteError,
    RemoteHTTPError,
    RemoteNotFoundError,
    ResponseParseError,
)
from gskills.source import parse_source_ref

REF = parse_source_ref("https://github.com/acme/skills/tree/main/pdf")


def _client(handler, *, token: str | None = None) -> tuple[GitHubClient, list[float]]:
    client = GitHubClient(token=token)
    client._http = httpx.Client(transport=httpx.MockTransport(handler), follow_redirects=True)  # type: ignore[attr-defined]
    delays: list[float] = []
    client._sleep = lambda delay, cancel: delays.append(delay)  # type: ignore[method-assign]
    return client, delays


class TestBackoff(unittest.TestCase):
    def test_exponential_and_capped(self) -> None:
        self.assertEqual([backoff_delay(i) for i in range(6)], [1.0, 2.0, 4.0, 8.0, 16.0, 16.0])


class TestRetry(unittest.TestCase):
    def test_fetch_raw_succeeds_after_two_rate_limits(self) -> None:
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            if calls["n"] <= 2:
                return httpx.Response(429, text="slow down")
            return httpx.Response(200, content=b"hello")

        client, delays = _client(handler)
        try:
            data = client.fetch_raw("https://raw.githubusercontent.com/acme/skills/main/pdf/SKILL.md")
        finally:
            client.close()

        self.assertEqual(data, b"hello")
        self.assertEqual(calls["n"], 3)
        self.assertEqual(delays, [1.0, 2.0])
        self.assertLessEqual(sum(delays), 3.0)

    def test_list_children_retries_on_403(self) -> None:
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            if calls["n"] == 1:
                return httpx.Response(403, json={"message": "API rate limit exceeded"})
            return httpx.Response(
                200,
                json=[
                    {"name": "SKILL.md", "path": "pdf/SKILL.md", "type": "file", "download_url": "https://raw/x", "size": 3},
                    {"name": "scripts", "path": "pdf/scripts", "type": "dir", "download_url": None},
                ],
            )

        client, delays = _client(handler)
        try:
            entries = client.list_children(REF, "pdf")
        finally:
            client.close()

        self.assertEqual(delays, [1.0])
        self.assertEqual([(e.name, e.kind) for e in entries], [("SKILL.md", "file"), ("scripts", "dir")])
        self.assertEqual(entries[0].size, 3)
        self.assertIsNone(entries[1].download_url)

    def test_exhausted_attempts_raise_rate_limit_error(self) -> None:
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            return httpx.Response(429)

        client, delays = _client(handler)
        try:
            with self.assertRaises(RateLimitError):
                client.fetch_raw("https://raw.githubusercontent.com/a")
        finally:
            client.close()

        self.assertEqual(calls["n"], 5)
        self.assertEqual(delays, [1.0, 2.0, 4.0, 8.0])

    def test_single_attempt_raises_without_sleeping(self) -> None:
        client, delays = _client(lambda request: httpx.Response(403))
        client.max_attempts = 1
        try:
            with self.assertRaises(RateLimitError) as ctx:
                client.fetch_raw("https://raw.githubusercontent.com/a")
        finally:
            client.close()

        self.assertEqual(delays, [])
        self.assertIn("HTTP 403", str(ctx.exception))
        self.assertIn("after 1 attempts", str(ctx.exception))

    def test_transport_error_mentioning_rate_limit_is_retried(self) -> None:
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            if calls["n"] == 1:
                raise httpx.ReadError("secondary rate limit", request=request)
            return httpx.Response(200, content=b"ok")

        client, delays = _client(handler)
        try:
            self.assertEqual(client.fetch_raw("https://raw.githubusercontent.com/a"), b"ok")
        finally:
            client.close()
        self.assertEqual(delays, [1.0])

    def test_other_transport_errors_are_not_retried(self) -> None:
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            raise httpx.ConnectError("connection refused", request=request)

        client, delays = _client(handler)
        try:
            with self.assertRaises(RemoteError) as ctx:
                client.fetch_raw("https://raw.githubusercontent.com/a")
        finally:
            client.close()

        self.assertNotIsInstance(ctx.exception, RateLimitError)
        self.assertEqual(calls["n"], 1)
        self.assertEqual(delays, [])

    def test_cancel_during_backoff(self) -> None:
        cancel = CancelToken()

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(429)

        client = GitHubClient()
        client._http = httpx.Client(transport=httpx.MockTransport(handler))  # type: ignore[attr-defined]
        # Cancels "during" the first backoff; the real sleep then returns immediately.
        real_sleep = client._sleep

        def _sleep(delay: float, token: CancelToken) -> None:
            cancel.cancel()
            real_sleep(delay, token)

        client._sleep = _sleep  # type: ignore[method-assign]
        try:
            with self.assertRaises(OperationCancelledError):
                client.fetch_raw("https://raw.githubusercontent.com/a", cancel=cancel)
        finally:
            client.close()


class TestErrors(unittest.TestCase):
    def test_404_is_not_found_and_not_retried(self) -> None:
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            return httpx.Response(404, json={"message": "Not Found"})

        client, delays = _client(handler)
        try:
            with self.assertRaises(RemoteNotFoundError):
                client.list_children(REF, "pdf")
        finally:
            client.close()
        self.assertEqual(calls["n"], 1)
        self.assertEqual(delays, [])

    def test_server_error_surfaces_status(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, text="boom")

        client, _ = _client(handler)
        try:
            with self.assertRaises(RemoteHTTPError) as ctx:
                client.fetch_raw("https://raw.githubusercontent.com/a")
        finally:
            client.close()
        self.assertEqual(ctx.exception.status_code, 500)
        self.assertEqual(ctx.exception.body, "boom")

    def test_invalid_json_is_parse_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=b"<html>", headers={"content-type": "text/html"})

        client, _ = _client(handler)
        try:
            with self.assertRaises(ResponseParseError):
                client.list_children(REF, "pdf")
        finally:
            client.close()

    def test_file_object_instead_of_listing_is_parse_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"name": "pdf", "type": "file"})

        client, _ = _client(handler)
        try:
            with self.assertRaises(ResponseParseError):
                client.list_children(REF, "pdf")
        finally:
            client.close()


class TestOperations(unittest.TestCase):
    def test_latest_revision_reads_branch_head(self) -> None:
        seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.url.path)
            return httpx.Response(200, json={"sha": "abc123"})

        client, _ = _client(handler)
        try:
            self.assertEqual(client.latest_revision(REF), "abc123")
        finally:
            client.close()
        self.assertEqual(seen, ["/repos/acme/skills/commits/main"])

    def test_latest_revision_without_sha_is_parse_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"commit": {}})

        client, _ = _client(handler)
        try:
            with self.assertRaises(ResponseParseError):
                client.latest_revision(REF)
        finally:
            client.close()

    def test_path_exists(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/SKILL.md"):
                self.assertEqual(request.url.params.get("ref"), "main")
                return httpx.Response(200, json={"name": "SKILL.md", "type": "file"})
            return httpx.Response(404)

        client, _ = _client(handler)
        try:
            self.assertTrue(client.path_exists(REF, "pdf/SKILL.md"))
            self.assertFalse(client.path_exists(REF, "pdf/missing.md"))
        finally:
            client.close()

    def test_token_is_sent_only_to_github_hosts(self) -> None:
        seen: dict[str, str | None] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen[request.url.host] = request.headers.get("authorization")
            return httpx.Response(200, content=b"x")

        client, _ = _client(handler, token="ghp_secret")
        try:
            client.fetch_raw("https://raw.githubusercontent.com/acme/skills/main/pdf/SKILL.md")
            client.fetch_raw("https://objects.example.com/blob")
            client.request("https://api.github.com/rate_limit", op="rate")
        finally:
            client.close()

        self.assertEqual(seen["raw.githubusercontent.com"], "Bearer ghp_secret")
        self.assertEqual(seen["api.github.com"], "Bearer ghp_secret")
        self.assertIsNone(seen["objects.example.com"])


if __name__ == "__main__":
    unittest.main()

"""Unit tests for the GitHub REST client."""

from __future__ import annotations

import json
from pathlib import Path

import httpx
import pytest

from hatchway.__version__ import __version__
from hatchway.remote.github import API_VERSION, GitHubAPI
from hatchway.remote.policy import RetryPolicy
from hatchway.utils.exceptions import NetworkError


def test_default_headers(api: GitHubAPI, fake_github) -> None:
    """Every call carries the API version, accept and user agent headers."""
    api.get("/installation/repositories", token="abc")

    request = fake_github.requests[-1]
    assert request.headers["accept"] == "application/vnd.github+json"
    assert request.headers["x-github-api-version"] == API_VERSION
    assert request.headers["user-agent"] == f"hatchway/{__version__}"
    assert request.headers["authorization"] == "Bearer abc"


def test_no_authorization_without_token(api: GitHubAPI, fake_github) -> None:
    api.get("/installation/repositories")

    assert "authorization" not in fake_github.requests[-1].headers


def test_request_updates_rate_limiter(api: GitHubAPI, fake_github, clock) -> None:
    fake_github.rate_remaining = 123

    api.get("/installation/repositories")

    assert api.rate_limiter.remaining == 123
    assert api.rate_limiter.reset_at == int(clock() + 3600)


def test_server_errors_are_retried(api: GitHubAPI, fake_github) -> None:
    fake_github.queued_statuses = [502, 503]

    response = api.get("/installation/repositories")

    assert response.status_code == 200
    assert len(fake_github.requests) == 3


def test_persistent_failure_raises(api: GitHubAPI, fake_github) -> None:
    fake_github.queued_statuses = [500, 500, 500]

    with pytest.raises(NetworkError) as exc_info:
        api.get("/installation/repositories")

    assert exc_info.value.status_code == 500


def test_not_found_is_returned(api: GitHubAPI) -> None:
    assert api.get("/repos/acme/missing/releases/latest").status_code == 404


def test_post_sends_json() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"ok": True})

    with GitHubAPI(transport=httpx.MockTransport(handler)) as api:
        response = api.post("/things", json_data={"name": "x"}, params={"page": 2})

    assert response.json() == {"ok": True}
    assert seen[0].method == "POST"
    assert seen[0].url.params["page"] == "2"
    assert json.loads(seen[0].content) == {"name": "x"}


def test_rate_limit_status(api: GitHubAPI, fake_github) -> None:
    fake_github.rate_remaining = 77

    payload = api.rate_limit_status(token="abc")

    assert payload["resources"]["core"]["limit"] == 5000
    assert api.rate_limiter.remaining == 77


def test_download_writes_file(api: GitHubAPI, fake_github, tmp_path: Path) -> None:
    url = "https://api.github.com/repos/acme/widget/releases/assets/1"
    fake_github.downloads[url] = b"zip bytes"
    destination = tmp_path / "out.zip"

    size = api.download(url, destination, token="abc")

    assert size == len(b"zip bytes")
    assert destination.read_bytes() == b"zip bytes"
    assert fake_github.requests[-1].headers["accept"] == "application/octet-stream"


def test_download_failure_writes_nothing(api: GitHubAPI, tmp_path: Path) -> None:
    destination = tmp_path / "out.zip"

    with pytest.raises(NetworkError) as exc_info:
        api.download("https://api.github.com/repos/acme/widget/releases/assets/404", destination)

    assert exc_info.value.status_code == 404
    assert not destination.exists()


def test_download_follows_redirects(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "api.github.com":
            return httpx.Response(302, headers={"Location": "https://objects.example.com/blob"})
        return httpx.Response(200, content=b"blob")

    with GitHubAPI(transport=httpx.MockTransport(handler),
                   retry_policy=RetryPolicy(initial_delay=0.0)) as api:
        size = api.download("https://api.github.com/asset", tmp_path / "blob.zip")

    assert size == 4


def test_cancel_sets_shared_event() -> None:
    api = GitHubAPI(transport=httpx.MockTransport(lambda request: httpx.Response(200)))

    api.cancel()

    assert api.rate_limiter._cancel.is_set()
    assert api.retry_policy._cancel.is_set()
    api.close()

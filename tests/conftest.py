"""Pytest configuration and fixtures for Hatchway tests."""

from __future__ import annotations

import datetime
import io
import re
import zipfile
from pathlib import Path
from typing import Any, Dict, Generator, List, Optional

import httpx
import jwt
import pytest
import yaml
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from hatchway.core.store import MemoryConfigStore
from hatchway.remote.github import GitHubAPI
from hatchway.remote.policy import RateLimiter, RetryPolicy
from hatchway.security.cache import TokenCache
from hatchway.security.cipher import SecretCipher
from hatchway.security.credentials import CredentialRecord, CredentialStatus, CredentialStore
from hatchway.security.tokens import TokenBroker
from hatchway.updates.backups import BackupManager
from hatchway.updates.host import LocalPackageHost

API_URL = "https://api.github.com"
START_TIME = 1_700_000_000.0
ENCRYPTION_KEY = "test-encryption-key"
WEBHOOK_SECRET = "test-webhook-secret"


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, now: float = START_TIME) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def iso(timestamp: float) -> str:
    return datetime.datetime.fromtimestamp(timestamp, datetime.timezone.utc).strftime(
        "%Y-%m-%dT%H:%M:%SZ"
    )


def make_zip(entries: Dict[str, str]) -> bytes:
    """Build a zip archive in memory from ``{name: content}``."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, content in entries.items():
            archive.writestr(name, content)
    return buffer.getvalue()


def plugin_header(name: str, version: str, repository: str = "") -> str:
    lines = ["<?php", "/*", f" * Plugin Name: {name}", f" * Version: {version}"]
    if repository:
        lines.append(f" * Update URI: https://github.com/{repository}")
    lines.append(" */")
    return "\n".join(lines) + "\n"


def theme_header(name: str, version: str, repository: str = "") -> str:
    lines = ["/*", f"Theme Name: {name}", f"Version: {version}"]
    if repository:
        lines.append(f"Update URI: {repository}")
    lines.append("*/")
    return "\n".join(lines) + "\n"


def plugin_zip(slug: str, version: str, repository: str = "acme/widget", root: Optional[str] = None) -> bytes:
    root = root or f"{slug}-{version}"
    return make_zip({
        f"{root}/{slug}.php": plugin_header(slug.title(), version, repository),
        f"{root}/readme.txt": "Readme",
    })


def write_plugin(plugins_dir: Path, slug: str, version: str, repository: str = "acme/widget") -> Path:
    directory = plugins_dir / slug
    directory.mkdir(parents=True, exist_ok=True)
    (directory / f"{slug}.php").write_text(plugin_header(slug.title(), version, repository))
    return directory


class FakeGitHub:
    """In-memory stand-in for the GitHub endpoints Hatchway calls.

    Serve it through ``httpx.MockTransport(fake.handler)``.
    """

    def __init__(self, clock: FakeClock, public_key: Any = None) -> None:
        self.clock = clock
        self.public_key = public_key
        self.releases: Dict[str, List[Dict[str, Any]]] = {}
        self.downloads: Dict[str, bytes] = {}
        self.requests: List[httpx.Request] = []
        self.token_requests = 0
        self.token_lifetime = 3600
        self.jwt_claims: List[Dict[str, Any]] = []
        self.queued_statuses: List[int] = []
        self.rate_remaining = 4999
        self.redirect_loops: List[str] = []
        self.installation_repositories: List[str] = ["acme/widget"]
        self._asset_ids = 0

    def add_release(
            self,
            repository: str,
            tag: str,
            published_at: Optional[float] = None,
            prerelease: bool = False,
            draft: bool = False,
            archive: Optional[bytes] = None
    ) -> Dict[str, Any]:
        self._asset_ids += 1
        asset_url = f"{API_URL}/repos/{repository}/releases/assets/{self._asset_ids}"
        release = {
            "tag_name": tag,
            "name": tag,
            "draft": draft,
            "prerelease": prerelease,
            "published_at": None if draft else iso(published_at or self.clock()),
            "zipball_url": f"{API_URL}/repos/{repository}/zipball/{tag}",
            "html_url": f"https://github.com/{repository}/releases/tag/{tag}",
            "body": f"Release {tag}",
            "assets": [{
                "name": f"{repository.split('/')[1]}.zip",
                "content_type": "application/zip",
                "url": asset_url,
                "browser_download_url": f"https://github.com/{repository}/releases/download/{tag}/x.zip",
                "size": len(archive or b""),
            }],
        }
        if archive is not None:
            self.downloads[asset_url] = archive
        self.releases.setdefault(repository, []).insert(0, release)
        return release

    def _rate_headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Remaining": str(self.rate_remaining),
            "X-RateLimit-Reset": str(int(self.clock() + 3600)),
        }

    def _published(self, repository: str) -> List[Dict[str, Any]]:
        return sorted(
            self.releases.get(repository, []),
            key=lambda r: (r["published_at"] is not None, r["published_at"] or ""),
            reverse=True,
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.queued_statuses:
            return httpx.Response(self.queued_statuses.pop(0), headers=self._rate_headers())

        url = str(request.url)
        path = request.url.path
        headers = self._rate_headers()

        if url in self.redirect_loops:
            return httpx.Response(302, headers={"Location": url})

        if url in self.downloads:
            return httpx.Response(200, content=self.downloads[url], headers=headers)

        match = re.fullmatch(r"/app/installations/(\d+)/access_tokens", path)
        if match and request.method == "POST":
            token = request.headers.get("authorization", "").removeprefix("Bearer ")
            if self.public_key is not None:
                self.jwt_claims.append(jwt.decode(
                    token,
                    self.public_key,
                    algorithms=["RS256"],
                    options={"verify_exp": False, "verify_iat": False},
                ))
            self.token_requests += 1
            return httpx.Response(201, json={
                "token": f"ghs_installation_{self.token_requests}",
                "expires_at": iso(self.clock() + self.token_lifetime),
            }, headers=headers)

        if path == "/rate_limit":
            return httpx.Response(200, json={
                "resources": {"core": {
                    "limit": 5000,
                    "remaining": self.rate_remaining,
                    "reset": int(self.clock() + 3600),
                }},
            })

        if path == "/installation/repositories":
            per_page = int(request.url.params.get("per_page", 30))
            page = int(request.url.params.get("page", 1))
            names = self.installation_repositories[(page - 1) * per_page:page * per_page]
            return httpx.Response(200, json={
                "total_count": len(self.installation_repositories),
                "repositories": [{"full_name": name, "private": True} for name in names],
            }, headers=headers)

        match = re.fullmatch(r"/repos/([^/]+/[^/]+)/releases(?:/(latest|tags/(.+)))?", path)
        if match and request.method == "GET":
            repository, kind, tag = match.groups()
            releases = self._published(repository)
            if kind is None:
                return httpx.Response(200, json=releases, headers=headers)
            if kind == "latest":
                for release in releases:
                    if not release["draft"] and not release["prerelease"]:
                        return httpx.Response(200, json=release, headers=headers)
            else:
                for release in releases:
                    if release["tag_name"] == tag:
                        return httpx.Response(200, json=release, headers=headers)

        return httpx.Response(404, json={"message": "Not Found"}, headers=headers)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> MemoryConfigStore:
    return MemoryConfigStore(clock=clock)


@pytest.fixture(scope="session")
def rsa_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def private_key_pem(rsa_key: rsa.RSAPrivateKey) -> str:
    return rsa_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


@pytest.fixture
def cipher() -> SecretCipher:
    return SecretCipher(ENCRYPTION_KEY)


@pytest.fixture
def token_cache(store: MemoryConfigStore, clock: FakeClock) -> TokenCache:
    return TokenCache(store, safety_margin=60, clock=clock)


@pytest.fixture
def credential_store(
        store: MemoryConfigStore, cipher: SecretCipher, token_cache: TokenCache
) -> CredentialStore:
    return CredentialStore(store, cipher, token_cache)


@pytest.fixture
def fake_github(clock: FakeClock, rsa_key: rsa.RSAPrivateKey) -> FakeGitHub:
    return FakeGitHub(clock, public_key=rsa_key.public_key())


@pytest.fixture
def api(fake_github: FakeGitHub, clock: FakeClock) -> Generator[GitHubAPI, None, None]:
    client = GitHubAPI(
        base_url=API_URL,
        transport=httpx.MockTransport(fake_github.handler),
        rate_limiter=RateLimiter(clock=clock),
        retry_policy=RetryPolicy(initial_delay=0.0),
    )
    yield client
    client.close()


@pytest.fixture
def installed_record(credential_store: CredentialStore, private_key_pem: str) -> CredentialRecord:
    return credential_store.save({
        "name": "Acme Updater",
        "slug": "acme-updater",
        "signing_id": 12345,
        "installation_id": 678,
        "status": CredentialStatus.INSTALLED,
        "private_key": private_key_pem,
        "webhook_secret": WEBHOOK_SECRET,
        "managed_repositories": ["acme/widget", "https://github.com/acme/Theme.git"],
    })


@pytest.fixture
def broker(
        credential_store: CredentialStore,
        token_cache: TokenCache,
        api: GitHubAPI,
        clock: FakeClock
) -> TokenBroker:
    return TokenBroker(credential_store, token_cache, api, clock=clock)


@pytest.fixture
def host(tmp_path: Path) -> LocalPackageHost:
    return LocalPackageHost(
        tmp_path / "plugins",
        tmp_path / "themes",
        backups=BackupManager(tmp_path / "backups"),
    )


@pytest.fixture
def temp_config_file(tmp_path: Path) -> str:
    """Create a temporary configuration file for testing."""
    config = {
        "logging": {
            "level": "DEBUG",
            "format": "text",
            "file": {"enabled": False},
            "console": {"enabled": True, "level": "DEBUG"},
        },
        "github": {"api_url": API_URL},
        "security": {"encryption_key": ENCRYPTION_KEY},
        "retry": {"initial_delay": 0.0},
        "packages": {
            "plugins_dir": str(tmp_path / "plugins"),
            "themes_dir": str(tmp_path / "themes"),
            "temp_dir": str(tmp_path / "tmp"),
            "backup_dir": str(tmp_path / "backups"),
        },
        "store": {"type": "memory"},
    }
    config_file = tmp_path / "hatchway.yaml"
    config_file.write_text(yaml.safe_dump(config), encoding="utf-8")
    return str(config_file)

"""
GitHub REST API client.

Every call is gated by the :class:`~hatchway.remote.policy.RateLimiter` and
wrapped in the :class:`~hatchway.remote.policy.RetryPolicy`, so callers
only see either a final non-transient response or a
:class:`~hatchway.utils.exceptions.NetworkError`.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from pathlib import Path
from typing import Any, Dict, Optional, Union

import httpx

from hatchway.__version__ import __version__
from hatchway.remote.policy import RateLimiter, RetryPolicy
from hatchway.utils.exceptions import NetworkError

DEFAULT_API_URL = "https://api.github.com"
API_VERSION = "2022-11-28"
CHUNK_SIZE = 64 * 1024


class GitHubAPI:
    """Blocking client for the GitHub REST API.

    Attributes:
        base_url: API root, e.g. ``https://api.github.com``
        timeout: Timeout in seconds for metadata calls
        download_timeout: Timeout in seconds for archive downloads
        rate_limiter: Quota tracker shared by all calls
        retry_policy: Backoff applied to every call
    """

    def __init__(
            self,
            base_url: str = DEFAULT_API_URL,
            timeout: float = 15.0,
            download_timeout: float = 300.0,
            user_agent: Optional[str] = None,
            rate_limiter: Optional[RateLimiter] = None,
            retry_policy: Optional[RetryPolicy] = None,
            transport: Optional[httpx.BaseTransport] = None,
            logger: Optional[logging.Logger] = None
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.download_timeout = download_timeout
        self._logger = logger or logging.getLogger(__name__)
        self._cancel = threading.Event()
        self.rate_limiter = rate_limiter or RateLimiter(
            cancel_event=self._cancel, logger=self._logger
        )
        self.retry_policy = retry_policy or RetryPolicy(
            cancel_event=self._cancel, logger=self._logger
        )
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            follow_redirects=True,
            headers={
                "Accept": "application/vnd.github+json",
                "User-Agent": user_agent or f"hatchway/{__version__}",
                "X-GitHub-Api-Version": API_VERSION,
            },
        )

    def __enter__(self) -> GitHubAPI:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def cancel(self) -> None:
        """Abort pending rate-limit and backoff waits."""
        self._cancel.set()
        self.rate_limiter.cancel()
        self.retry_policy.cancel()

    @staticmethod
    def _auth_headers(token: Optional[str], headers: Optional[Dict[str, str]]) -> Dict[str, str]:
        merged = dict(headers or {})
        if token:
            merged["Authorization"] = f"Bearer {token}"
        return merged

    def request(
            self,
            method: str,
            path: str,
            token: Optional[str] = None,
            params: Optional[Dict[str, Any]] = None,
            json_data: Optional[Dict[str, Any]] = None,
            headers: Optional[Dict[str, str]] = None,
            timeout: Optional[float] = None
    ) -> httpx.Response:
        """
        Send a request through the rate limiter and retry policy.

        Args:
            method: HTTP method
            path: Path relative to ``base_url``, or an absolute URL
            token: Bearer token (signing JWT or installation token)
            params: Query parameters
            json_data: JSON request body
            headers: Additional headers
            timeout: Per-call timeout override in seconds

        Returns:
            The final response; 4xx responses other than 429 are returned as is

        Raises:
            NetworkError: If the call failed after all retries
            RateLimitError: If the remaining quota cannot be waited out
        """
        kwargs: Dict[str, Any] = {"headers": self._auth_headers(token, headers)}
        if params is not None:
            kwargs["params"] = params
        if json_data is not None:
            kwargs["json"] = json_data
        if timeout is not None:
            kwargs["timeout"] = timeout

        def send() -> httpx.Response:
            self.rate_limiter.acquire()
            start_time = time.time()
            response = self._client.request(method, path, **kwargs)
            self.rate_limiter.update_from_headers(response.headers)
            self._logger.debug(
                f"{method} {path} -> {response.status_code}",
                extra={
                    "method": method,
                    "path": path,
                    "status_code": response.status_code,
                    "elapsed": round(time.time() - start_time, 3),
                },
            )
            return response

        return self.retry_policy.call(send, f"{method} {path}")

    def get(self, path: str, token: Optional[str] = None, **kwargs: Any) -> httpx.Response:
        return self.request("GET", path, token=token, **kwargs)

    def post(self, path: str, token: Optional[str] = None, **kwargs: Any) -> httpx.Response:
        return self.request("POST", path, token=token, **kwargs)

    def rate_limit_status(self, token: Optional[str] = None) -> Dict[str, Any]:
        """Fetch the quota from the rate-limit endpoint and feed it to the limiter.

        The endpoint itself does not count against the quota.
        """
        response = self.retry_policy.call(
            lambda: self._client.get("/rate_limit", headers=self._auth_headers(token, None)),
            "GET /rate_limit",
        )
        if not response.is_success:
            raise NetworkError(
                f"Rate limit status request failed with {response.status_code}",
                status_code=response.status_code,
                url=str(response.request.url),
            )
        try:
            payload = response.json()
        except ValueError as e:
            raise NetworkError("Rate limit status returned invalid JSON", url="/rate_limit") from e
        self.rate_limiter.update_from_payload(payload)
        return payload

    def download(
            self,
            url: str,
            destination: Union[str, Path],
            token: Optional[str] = None
    ) -> int:
        """
        Stream ``url`` into ``destination``.

        Asset URLs on the API host are requested as ``application/octet-stream``
        so GitHub redirects to the binary instead of returning asset metadata.

        Returns:
            Number of bytes written

        Raises:
            NetworkError: On a non-2xx response or transport failure
        """
        destination = Path(destination)
        headers = {"Accept": "application/octet-stream"}

        def send() -> httpx.Response:
            self.rate_limiter.acquire()
            with self._client.stream(
                    "GET",
                    url,
                    headers=self._auth_headers(token, headers),
                    timeout=self.download_timeout,
            ) as response:
                self.rate_limiter.update_from_headers(response.headers)
                if response.is_success:
                    with open(destination, "wb") as f:
                        for chunk in response.iter_bytes(CHUNK_SIZE):
                            f.write(chunk)
                return response

        response = self.retry_policy.call(send, f"GET {url}")
        if not response.is_success:
            raise NetworkError(
                f"Download failed with status {response.status_code}",
                status_code=response.status_code,
                url=url,
            )

        size = os.path.getsize(destination) if destination.exists() else 0
        self._logger.info(
            f"Downloaded {size} bytes from {url}",
            extra={"url": url, "bytes": size},
        )
        return size

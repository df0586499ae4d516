"""GitHub REST client for starred repositories and their READMEs.

- Token normalisation: ``Bearer``/``token`` prefixes and surrounding quotes
  are stripped.
- Pagination follows ``Link: <...>; rel="next"`` up to ``max_pages``.
- 401 raises GitHubAuthError; 429 (or 403 with ``x-ratelimit-remaining: 0``)
  sleeps and retries up to ``max_retries`` times, then GitHubRateLimitError.
- README 404 means "no README", not an error.
"""

from __future__ import annotations

import base64
import json
import random
import re
import time
import urllib.error
import urllib.request
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any

from starrecall.github.models import Readme, StarredRepo
from starrecall.logging import get_logger

log = get_logger(__name__)

API_BASE_URL = "https://api.github.com"
_USER_AGENT = "starrecall/0.1"
_TIMEOUT = 30  # seconds
_MAX_BACKOFF_S = 30.0

DEFAULT_PER_PAGE = 100
DEFAULT_MAX_RETRIES = 5
DEFAULT_README_CONCURRENCY = 6

_NEXT_LINK_RE = re.compile(r'<([^>]+)>\s*;\s*rel="([^"]+)"')


class GitHubError(RuntimeError):
    """A GitHub request failed with a non-retryable status."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class GitHubAuthError(GitHubError):
    """The token was rejected (HTTP 401)."""


class GitHubRateLimitError(GitHubError):
    """Rate limiting persisted after all retries."""


@dataclass
class _Response:
    status: int
    headers: Mapping[str, str]
    body: bytes

    def header(self, name: str) -> str | None:
        return self.headers.get(name.lower())

    def json(self) -> Any:
        return json.loads(self.body.decode("utf-8"))


@dataclass
class ReadmeBatch:
    """Outcome of :meth:`GitHubClient.fetch_readmes`.

    ``readmes`` holds successful fetches (including repos without a README);
    ``failed`` maps repo id to the error message for fetches that failed.
    """

    readmes: dict[int, Readme] = field(default_factory=dict)
    failed: dict[int, str] = field(default_factory=dict)

    @property
    def missing_count(self) -> int:
        return sum(1 for readme in self.readmes.values() if readme.missing)


def normalize_token(raw: str) -> str:
    token = raw.strip()
    token = re.sub(r"^bearer\s+", "", token, flags=re.I)
    token = re.sub(r"^token\s+", "", token, flags=re.I)
    return token.strip("'\"").strip()


def extract_next_link(header: str | None) -> str | None:
    if not header:
        return None
    for part in header.split(","):
        match = _NEXT_LINK_RE.search(part.strip())
        if match and match.group(2) == "next":
            return match.group(1)
    return None


def decode_readme_content(payload: Mapping[str, Any]) -> str | None:
    content = payload.get("content")
    if not content or payload.get("encoding") != "base64":
        return None
    return base64.b64decode(str(content).replace("\n", "")).decode("utf-8", errors="replace")


class GitHubClient:
    """Minimal GitHub API client built on ``urllib.request``.

    Args:
        token: Personal access token (raw, ``Bearer ...`` or ``token ...``).
        per_page: Page size for ``/user/starred`` (1-100).
        max_pages: Stop after this many pages (``None`` for no limit).
        max_retries: Rate-limit retries per request.
        readme_concurrency: Worker threads for :meth:`fetch_readmes`.
        urlopen: Injectable ``urllib.request.urlopen`` replacement.
        sleep: Injectable sleep, mainly for tests.
    """

    def __init__(
        self,
        token: str,
        *,
        per_page: int = DEFAULT_PER_PAGE,
        max_pages: int | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        readme_concurrency: int = DEFAULT_README_CONCURRENCY,
        api_base: str = API_BASE_URL,
        urlopen: Callable[..., Any] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._token = normalize_token(token or "")
        if not self._token:
            raise ValueError("GitHub access token is required")
        if not 1 <= per_page <= 100:
            raise ValueError("per_page must be between 1 and 100")
        if max_pages is not None and max_pages < 1:
            raise ValueError("max_pages must be >= 1")
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if readme_concurrency < 1:
            raise ValueError("readme_concurrency must be >= 1")
        self.per_page = per_page
        self.max_pages = max_pages
        self.max_retries = max_retries
        self.readme_concurrency = readme_concurrency
        self.api_base = api_base.rstrip("/")
        self._urlopen = urlopen or urllib.request.urlopen
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _open(self, url: str) -> _Response:
        request = urllib.request.Request(
            url,
            headers={
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
                "Authorization": f"Bearer {self._token}",
                "User-Agent": _USER_AGENT,
            },
        )
        try:
            with self._urlopen(request, timeout=_TIMEOUT) as response:
                return _Response(
                    status=response.status,
                    headers={k.lower(): v for k, v in response.headers.items()},
                    body=response.read(),
                )
        except urllib.error.HTTPError as exc:
            headers = exc.headers.items() if exc.headers is not None else []
            return _Response(status=exc.code, headers={k.lower(): v for k, v in headers}, body=exc.read() or b"")

    @staticmethod
    def _is_rate_limited(response: _Response) -> bool:
        if response.status == 429:
            return True
        return response.status == 403 and response.header("x-ratelimit-remaining") == "0"

    @staticmethod
    def retry_delay(response: _Response, attempt: int, now: float | None = None) -> float:
        """Seconds to wait: ``retry-after``, then ``x-ratelimit-reset``, then backoff."""
        retry_after = response.header("retry-after")
        if retry_after:
            try:
                seconds = float(retry_after)
            except ValueError:
                seconds = -1.0
            if seconds >= 0:
                return seconds
        reset = response.header("x-ratelimit-reset")
        if reset:
            try:
                reset_at = float(reset)
            except ValueError:
                reset_at = None
            if reset_at is not None:
                current = time.time() if now is None else now
                return max(reset_at - current + 0.5, 1.0)
        return min(2.0**attempt, _MAX_BACKOFF_S) + random.uniform(0, 0.3)

    def _get(self, url: str, *, allow_404: bool = False) -> _Response:
        attempt = 0
        while True:
            response = self._open(url)
            if 200 <= response.status < 300 or (allow_404 and response.status == 404):
                return response
            if response.status == 401:
                raise GitHubAuthError(
                    "GitHub authorization failed (401). Use a raw token with access to /user/starred.",
                    status=401,
                )
            if not self._is_rate_limited(response):
                raise GitHubError(f"GitHub request failed ({response.status})", status=response.status)
            if attempt >= self.max_retries:
                raise GitHubRateLimitError(
                    f"GitHub rate limit persisted after {self.max_retries} retries", status=response.status
                )
            wait = self.retry_delay(response, attempt)
            log.warning("github.rate_limited", attempt=attempt + 1, status=response.status, wait_s=round(wait, 2))
            self._sleep(wait)
            attempt += 1

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    def fetch_starred(self) -> list[StarredRepo]:
        """Return every starred repo, following pagination links."""
        repos: list[StarredRepo] = []
        next_url: str | None = f"{self.api_base}/user/starred?per_page={self.per_page}&page=1"
        pages = 0
        while next_url:
            if self.max_pages is not None and pages >= self.max_pages:
                log.warning("github.max_pages_reached", max_pages=self.max_pages, total=len(repos))
                break
            response = self._get(next_url)
            payload = response.json()
            if not isinstance(payload, list):
                raise GitHubError("GitHub starred response was not a list")
            repos.extend(StarredRepo.from_payload(item) for item in payload)
            pages += 1
            log.debug(
                "github.starred_page",
                page=pages,
                count=len(payload),
                total=len(repos),
                remaining=response.header("x-ratelimit-remaining"),
            )
            next_url = extract_next_link(response.header("link"))
        return repos

    def fetch_readme(self, full_name: str, repo_id: int = 0) -> Readme:
        """Fetch and decode the README of *full_name*; 404 yields an empty Readme."""
        response = self._get(f"{self.api_base}/repos/{full_name}/readme", allow_404=True)
        if response.status == 404:
            log.debug("github.readme_missing", repo=full_name)
            return Readme(repo_id=repo_id)
        payload = response.json()
        if not isinstance(payload, dict):
            raise GitHubError(f"GitHub README response for {full_name} had unexpected payload")
        return Readme(repo_id=repo_id, url=payload.get("html_url"), text=decode_readme_content(payload))

    def fetch_readmes(self, repos: Iterable[StarredRepo]) -> ReadmeBatch:
        """Fetch READMEs with a bounded thread pool; per-repo failures are collected."""
        items = list(repos)
        batch = ReadmeBatch()
        if not items:
            return batch

        def fetch(repo: StarredRepo) -> tuple[StarredRepo, Readme | None, str | None]:
            try:
                return repo, self.fetch_readme(repo.full_name, repo.id), None
            except GitHubAuthError:
                raise
            except (GitHubError, urllib.error.URLError, OSError, ValueError) as exc:
                return repo, None, str(exc)

        with ThreadPoolExecutor(max_workers=min(self.readme_concurrency, len(items))) as pool:
            for repo, readme, error in pool.map(fetch, items):
                if readme is not None:
                    batch.readmes[repo.id] = readme
                else:
                    log.warning("github.readme_failed", repo=repo.full_name, error=error)
                    batch.failed[repo.id] = error or "unknown error"
        log.debug(
            "github.readmes_done",
            total=len(items),
            missing=batch.missing_count,
            failed=len(batch.failed),
        )
        return batch

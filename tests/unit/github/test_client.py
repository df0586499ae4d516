"""Tests for the GitHub REST client (transport mocked at urlopen)."""

from __future__ import annotations

import base64
import io
import json
import urllib.error
from email.message import Message
from unittest.mock import MagicMock

import pytest

from starrecall.github.client import (
    GitHubAuthError,
    GitHubClient,
    GitHubError,
    GitHubRateLimitError,
    _Response,
    decode_readme_content,
    extract_next_link,
    normalize_token,
)
from starrecall.github.models import StarredRepo


def _ok(payload, headers=None, status=200):
    response = MagicMock()
    response.__enter__.return_value = response
    response.status = status
    response.headers = dict(headers or {})
    response.read.return_value = json.dumps(payload).encode("utf-8")
    return response


def _http_error(code, headers=None, body=b""):
    msg = Message()
    for key, value in (headers or {}).items():
        msg[key] = value
    return urllib.error.HTTPError("https://api.github.com/x", code, "err", msg, io.BytesIO(body))


class FakeUrlopen:
    """Serves queued responses per URL suffix, recording requested URLs."""

    def __init__(self, routes):
        self.routes = {key: list(value) for key, value in routes.items()}
        self.urls: list[str] = []
        self.headers: list[dict] = []

    def __call__(self, request, timeout=None):
        url = request.full_url
        self.urls.append(url)
        self.headers.append(dict(request.header_items()))
        for suffix, queue in self.routes.items():
            if url.endswith(suffix):
                item = queue.pop(0) if len(queue) > 1 else queue[0]
                if isinstance(item, Exception):
                    raise item
                return item
        raise AssertionError(f"unexpected url {url}")


def _repo_payload(repo_id, name=None):
    name = name or f"repo{repo_id}"
    return {
        "id": repo_id,
        "full_name": f"owner/{name}",
        "name": name,
        "html_url": f"https://github.com/owner/{name}",
        "updated_at": "2024-01-01T00:00:00Z",
        "description": "d",
        "topics": ["cli"],
        "language": "Python",
        "stargazers_count": 5,
        "forks_count": 1,
    }


def _client(urlopen, **kwargs):
    sleeps: list[float] = []
    client = GitHubClient("Bearer abc", urlopen=urlopen, sleep=sleeps.append, **kwargs)
    return client, sleeps


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("abc", "abc"),
        ("  Bearer abc  ", "abc"),
        ("token abc", "abc"),
        ('"abc"', "abc"),
        ("bearer 'abc'", "abc"),
    ],
)
def test_normalize_token(raw, expected):
    assert normalize_token(raw) == expected


def test_empty_token_rejected():
    with pytest.raises(ValueError, match="token"):
        GitHubClient("Bearer ''")


@pytest.mark.parametrize(
    "kwargs",
    [{"per_page": 0}, {"per_page": 101}, {"max_pages": 0}, {"max_retries": -1}, {"readme_concurrency": 0}],
)
def test_invalid_options_rejected(kwargs):
    with pytest.raises(ValueError):
        GitHubClient("abc", **kwargs)


def test_extract_next_link():
    header = (
        '<https://api.github.com/user/starred?page=2>; rel="next", '
        '<https://api.github.com/user/starred?page=5>; rel="last"'
    )
    assert extract_next_link(header) == "https://api.github.com/user/starred?page=2"
    assert extract_next_link('<https://x?page=5>; rel="last"') is None
    assert extract_next_link(None) is None


def test_decode_readme_content():
    encoded = base64.b64encode("# Title\nbody".encode()).decode()
    wrapped = encoded[:4] + "\n" + encoded[4:]
    assert decode_readme_content({"content": wrapped, "encoding": "base64"}) == "# Title\nbody"
    assert decode_readme_content({"content": "x", "encoding": "utf-8"}) is None
    assert decode_readme_content({}) is None


def test_retry_delay_prefers_retry_after():
    response = _Response(status=429, headers={"retry-after": "7"}, body=b"")
    assert GitHubClient.retry_delay(response, attempt=0) == 7.0


def test_retry_delay_uses_reset_header():
    response = _Response(status=403, headers={"x-ratelimit-reset": "110"}, body=b"")
    assert GitHubClient.retry_delay(response, attempt=0, now=100.0) == pytest.approx(10.5)


def test_retry_delay_reset_in_past_waits_one_second():
    response = _Response(status=403, headers={"x-ratelimit-reset": "50"}, body=b"")
    assert GitHubClient.retry_delay(response, attempt=0, now=100.0) == 1.0


def test_retry_delay_backoff_is_capped():
    response = _Response(status=429, headers={}, body=b"")
    assert 2.0 <= GitHubClient.retry_delay(response, attempt=1) <= 2.3
    assert 30.0 <= GitHubClient.retry_delay(response, attempt=10) <= 30.3


# ------------------------------------------------------------------
# fetch_starred
# ------------------------------------------------------------------


def test_fetch_starred_follows_pagination():
    urlopen = FakeUrlopen(
        {
            "page=1": [_ok([_repo_payload(1)], {"Link": '<https://api.github.com/user/starred?page=2>; rel="next"'})],
            "page=2": [_ok([_repo_payload(2)])],
        }
    )
    client, _ = _client(urlopen)
    repos = client.fetch_starred()
    assert [r.id for r in repos] == [1, 2]
    assert repos[0].topics == ["cli"]
    assert repos[0].stars == 5
    assert len(urlopen.urls) == 2


def test_fetch_starred_sends_auth_header():
    urlopen = FakeUrlopen({"page=1": [_ok([])]})
    client, _ = _client(urlopen)
    client.fetch_starred()
    assert urlopen.headers[0]["Authorization"] == "Bearer abc"


def test_fetch_starred_stops_at_max_pages():
    link = {"Link": '<https://api.github.com/user/starred?per_page=1&page=1>; rel="next"'}
    urlopen = FakeUrlopen({"page=1": [_ok([_repo_payload(1)], link)]})
    client, _ = _client(urlopen, per_page=1, max_pages=3)
    assert len(client.fetch_starred()) == 3
    assert len(urlopen.urls) == 3


def test_fetch_starred_401_raises_auth_error():
    urlopen = FakeUrlopen({"page=1": [_http_error(401)]})
    client, _ = _client(urlopen)
    with pytest.raises(GitHubAuthError) as info:
        client.fetch_starred()
    assert info.value.status == 401


def test_fetch_starred_retries_rate_limit():
    urlopen = FakeUrlopen({"page=1": [_http_error(429, {"Retry-After": "2"}), _ok([_repo_payload(1)])]})
    client, sleeps = _client(urlopen)
    assert len(client.fetch_starred()) == 1
    assert sleeps == [2.0]


def test_secondary_rate_limit_403_is_retried():
    limited = _http_error(403, {"X-RateLimit-Remaining": "0", "Retry-After": "1"})
    urlopen = FakeUrlopen({"page=1": [limited, _ok([])]})
    client, sleeps = _client(urlopen)
    assert client.fetch_starred() == []
    assert sleeps == [1.0]


def test_rate_limit_exhaustion_raises():
    urlopen = FakeUrlopen({"page=1": [_http_error(429, {"Retry-After": "0"})]})
    client, sleeps = _client(urlopen, max_retries=2)
    with pytest.raises(GitHubRateLimitError, match="after 2 retries"):
        client.fetch_starred()
    assert len(sleeps) == 2


def test_plain_403_is_not_retried():
    urlopen = FakeUrlopen({"page=1": [_http_error(403, {"X-RateLimit-Remaining": "10"})]})
    client, sleeps = _client(urlopen)
    with pytest.raises(GitHubError) as info:
        client.fetch_starred()
    assert info.value.status == 403
    assert not isinstance(info.value, GitHubRateLimitError)
    assert sleeps == []


def test_non_list_payload_raises():
    urlopen = FakeUrlopen({"page=1": [_ok({"message": "nope"})]})
    client, _ = _client(urlopen)
    with pytest.raises(GitHubError, match="not a list"):
        client.fetch_starred()


# ------------------------------------------------------------------
# READMEs
# ------------------------------------------------------------------


def _readme_payload(text):
    return {
        "html_url": "https://github.com/owner/r/blob/main/README.md",
        "content": base64.b64encode(text.encode()).decode(),
        "encoding": "base64",
    }


def test_fetch_readme_decodes_content():
    urlopen = FakeUrlopen({"/repos/owner/r/readme": [_ok(_readme_payload("hello"))]})
    client, _ = _client(urlopen)
    readme = client.fetch_readme("owner/r", 9)
    assert readme.repo_id == 9
    assert readme.text == "hello"
    assert readme.url.endswith("README.md")
    assert not readme.missing


def test_fetch_readme_404_means_missing():
    urlopen = FakeUrlopen({"/repos/owner/r/readme": [_http_error(404)]})
    client, _ = _client(urlopen)
    readme = client.fetch_readme("owner/r", 9)
    assert readme.missing
    assert readme.url is None


def test_fetch_readmes_collects_failures():
    urlopen = FakeUrlopen(
        {
            "/repos/owner/repo1/readme": [_ok(_readme_payload("one"))],
            "/repos/owner/repo2/readme": [_http_error(404)],
            "/repos/owner/repo3/readme": [_http_error(500)],
        }
    )
    client, _ = _client(urlopen, readme_concurrency=2)
    repos = [StarredRepo.from_payload(_repo_payload(i)) for i in (1, 2, 3)]
    batch = client.fetch_readmes(repos)
    assert batch.readmes[1].text == "one"
    assert batch.readmes[2].missing
    assert batch.missing_count == 1
    assert batch.failed == {3: "GitHub request failed (500)"}


def test_fetch_readmes_network_error_is_a_failure():
    urlopen = FakeUrlopen({"/repos/owner/repo1/readme": [urllib.error.URLError("connection reset")]})
    client, _ = _client(urlopen)
    batch = client.fetch_readmes([StarredRepo.from_payload(_repo_payload(1))])
    assert 1 in batch.failed
    assert batch.readmes == {}


def test_fetch_readmes_auth_error_propagates():
    urlopen = FakeUrlopen({"/repos/owner/repo1/readme": [_http_error(401)]})
    client, _ = _client(urlopen)
    with pytest.raises(GitHubAuthError):
        client.fetch_readmes([StarredRepo.from_payload(_repo_payload(1))])


def test_fetch_readmes_empty_input():
    client, _ = _client(FakeUrlopen({}))
    batch = client.fetch_readmes([])
    assert batch.readmes == {} and batch.failed == {}


# ------------------------------------------------------------------
# Models
# ------------------------------------------------------------------


def test_starred_repo_from_minimal_payload():
    repo = StarredRepo.from_payload({"id": "4", "full_name": "a/b"})
    assert repo.id == 4
    assert repo.name == "b"
    assert repo.html_url == "https://github.com/a/b"
    assert repo.topics == []


def test_starred_repo_from_payload_missing_id():
    with pytest.raises(ValueError, match="malformed"):
        StarredRepo.from_payload({"full_name": "a/b"})

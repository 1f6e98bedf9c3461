"""GitHub REST client: retries, error mapping and pagination."""

from __future__ import annotations

import httpx
import pytest
from processbot.config import LimitsConfig
from processbot.errors import BotError
from processbot.github_client import GitHubClient


async def token_provider() -> str:
    return "tok"


def _client(handler, *, max_attempts: int = 3) -> GitHubClient:
    return GitHubClient(
        token_provider=token_provider,
        limits=LimitsConfig(max_attempts=max_attempts, max_backoff_s=0.0),
        transport=httpx.MockTransport(handler),
    )


def test_github_client_rejects_non_https_base_url() -> None:
    with pytest.raises(BotError) as exc:
        _ = GitHubClient(token_provider=token_provider, limits=LimitsConfig(), api_base_url="http://api.github.com")

    assert exc.value.code == "Config"


@pytest.mark.asyncio
async def test_github_client_sends_installation_token() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"ok": True})

    out = await _client(handler).request_json(method="GET", path="/rate_limit")

    assert out == {"ok": True}
    assert seen[0].headers["Authorization"] == "Bearer tok"
    assert seen[0].url == httpx.URL("https://api.github.com/rate_limit")


@pytest.mark.asyncio
async def test_github_client_retries_on_429_then_succeeds() -> None:
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        if calls["n"] < 3:
            return httpx.Response(429, json={"message": "rate limited"})
        return httpx.Response(200, json={"ok": True})

    out = await _client(handler).request_json(method="GET", path="/rate_limit")

    assert out == {"ok": True}
    assert calls["n"] == 3


@pytest.mark.asyncio
async def test_github_client_gives_up_after_max_attempts() -> None:
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(502, json={"message": "bad gateway"})

    with pytest.raises(BotError) as exc:
        _ = await _client(handler, max_attempts=2).request_json(method="GET", path="/x")

    assert calls["n"] == 2
    assert exc.value.code == "GitHub"
    assert exc.value.status_code == 502


@pytest.mark.asyncio
async def test_github_client_transport_errors_become_network_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("boom", request=request)

    with pytest.raises(BotError) as exc:
        _ = await _client(handler, max_attempts=2).request_json(method="GET", path="/x")

    assert exc.value.code == "Network"


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [401, 403])
async def test_github_client_maps_auth_failures_to_forbidden(status: int) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json={"message": "nope"})

    with pytest.raises(BotError) as exc:
        _ = await _client(handler).request_json(method="GET", path="/x")

    assert exc.value.code == "Forbidden"
    assert exc.value.status_code == status


@pytest.mark.asyncio
async def test_github_client_404_keeps_status_and_hint() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"message": "Not Found"})

    with pytest.raises(BotError) as exc:
        _ = await _client(handler).request_json(method="GET", path="/x")

    assert exc.value.status_code == 404
    assert exc.value.hint == "Not Found"


@pytest.mark.asyncio
async def test_github_client_invalid_json() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"not json")

    with pytest.raises(BotError) as exc:
        _ = await _client(handler).request_json(method="GET", path="/x")

    assert "invalid JSON" in exc.value.message


@pytest.mark.asyncio
async def test_github_client_follows_link_header_pagination() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        if request.url.params.get("page") == "2":
            return httpx.Response(200, json={"repositories": [{"name": "b"}]})
        return httpx.Response(
            200,
            json={"repositories": [{"name": "a"}]},
            headers={"Link": '<https://api.github.com/installation/repositories?per_page=100&page=2>; rel="next"'},
        )

    items = await _client(handler).request_paginated(path="/installation/repositories", items_key="repositories")

    assert items == [{"name": "a"}, {"name": "b"}]
    assert seen == [
        "https://api.github.com/installation/repositories?per_page=100",
        "https://api.github.com/installation/repositories?per_page=100&page=2",
    ]


@pytest.mark.asyncio
async def test_github_client_pagination_rejects_non_list_page() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"unexpected": True})

    with pytest.raises(BotError) as exc:
        _ = await _client(handler).request_paginated(path="/orgs/o/teams/t/members")

    assert exc.value.code == "GitHub"


@pytest.mark.asyncio
async def test_github_client_undecodable_body_becomes_network_error() -> None:
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(200, headers={"Content-Encoding": "gzip"}, stream=httpx.ByteStream(b"not gzip at all"))

    with pytest.raises(BotError) as exc:
        _ = await _client(handler, max_attempts=2).request_json(method="GET", path="/x")

    assert exc.value.code == "Network"
    assert calls["n"] == 2

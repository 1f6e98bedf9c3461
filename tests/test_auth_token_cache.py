"""GitHub App auth: installation lookup and token caching."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from processbot.auth import GitHubAppAuth
from processbot.config import BambooConfig, BotConfig, LimitsConfig, MatrixConfig
from processbot.errors import BotError


def _write_test_key(tmp_path: Path) -> Path:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    path = tmp_path / "key.pem"
    path.write_bytes(pem)
    return path


def _cfg(tmp_path: Path, login: str = "Octo-Org") -> BotConfig:
    return BotConfig(
        app_id=1,
        private_key_path=_write_test_key(tmp_path),
        installation_login=login,
        db_path=tmp_path / "db",
        bamboo=BambooConfig(token="b"),
        matrix=MatrixConfig(homeserver="https://matrix.example", access_token="m", default_channel_id="!d:m"),
        main_tick_secs=900,
        bamboo_tick_secs=7200,
        core_devs_team="core-devs",
        audit_log_path=None,
        audit_max_bytes=5 * 1024 * 1024,
        audit_max_backups=2,
        limits=LimitsConfig(),
    )


def _expires(delta: timedelta) -> str:
    return (datetime.now(timezone.utc) + delta).isoformat().replace("+00:00", "Z")


INSTALLATIONS = [
    {"id": 7, "account": {"login": "someone-else"}},
    {"id": 9, "account": {"login": "octo-org"}},
]


@pytest.mark.asyncio
async def test_installation_is_found_by_login_and_token_is_cached(tmp_path: Path) -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(f"{request.method} {request.url.path}")
        if request.url.path == "/app/installations":
            return httpx.Response(200, json=INSTALLATIONS)
        return httpx.Response(201, json={"token": "t1", "expires_at": _expires(timedelta(minutes=5))})

    auth = GitHubAppAuth(config=_cfg(tmp_path), transport=httpx.MockTransport(handler))

    t1 = await auth.get_installation_token()
    t2 = await auth.get_installation_token()

    assert t1 == t2 == "t1"
    assert calls == ["GET /app/installations", "POST /app/installations/9/access_tokens"]


@pytest.mark.asyncio
async def test_token_refreshes_near_expiry_without_new_lookup(tmp_path: Path) -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        if request.url.path == "/app/installations":
            return httpx.Response(200, json=INSTALLATIONS)
        n = len(calls)
        return httpx.Response(201, json={"token": f"t{n}", "expires_at": _expires(timedelta(seconds=10))})

    auth = GitHubAppAuth(config=_cfg(tmp_path), transport=httpx.MockTransport(handler))

    t1 = await auth.get_installation_token()
    t2 = await auth.get_installation_token()

    assert t1 != t2
    assert calls.count("/app/installations") == 1


@pytest.mark.asyncio
async def test_app_jwt_is_signed_for_app_id(tmp_path: Path) -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.headers["Authorization"].removeprefix("Bearer "))
        if request.url.path == "/app/installations":
            return httpx.Response(200, json=INSTALLATIONS)
        return httpx.Response(201, json={"token": "t", "expires_at": _expires(timedelta(minutes=5))})

    await GitHubAppAuth(config=_cfg(tmp_path), transport=httpx.MockTransport(handler)).get_installation_token()

    claims = jwt.decode(seen[0], options={"verify_signature": False})
    assert claims["iss"] == "1"
    assert claims["exp"] > claims["iat"]


@pytest.mark.asyncio
async def test_not_installed_on_login_is_an_auth_error(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=INSTALLATIONS)

    auth = GitHubAppAuth(config=_cfg(tmp_path, login="missing-org"), transport=httpx.MockTransport(handler))

    with pytest.raises(BotError) as exc:
        _ = await auth.get_installation_token()

    assert exc.value.code == "Auth"
    assert "not installed" in exc.value.message


@pytest.mark.asyncio
async def test_rejected_app_jwt_is_an_auth_error(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"message": "Bad credentials"})

    auth = GitHubAppAuth(config=_cfg(tmp_path), transport=httpx.MockTransport(handler))

    with pytest.raises(BotError) as exc:
        _ = await auth.get_installation_token()

    assert exc.value.code == "Auth"


@pytest.mark.asyncio
async def test_token_response_missing_fields(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/app/installations":
            return httpx.Response(200, json=INSTALLATIONS)
        return httpx.Response(201, json={"token": "t"})

    auth = GitHubAppAuth(config=_cfg(tmp_path), transport=httpx.MockTransport(handler))

    with pytest.raises(BotError, match="missing required fields"):
        _ = await auth.get_installation_token()


@pytest.mark.asyncio
async def test_installation_lookup_follows_pagination(tmp_path: Path) -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        if request.url.path == "/app/installations":
            if request.url.params.get("page") == "2":
                return httpx.Response(200, json=[{"id": 9, "account": {"login": "octo-org"}}])
            return httpx.Response(
                200,
                json=[{"id": 7, "account": {"login": "someone-else"}}],
                headers={"Link": '<https://api.github.com/app/installations?per_page=100&page=2>; rel="next"'},
            )
        return httpx.Response(201, json={"token": "t", "expires_at": _expires(timedelta(minutes=5))})

    auth = GitHubAppAuth(config=_cfg(tmp_path), transport=httpx.MockTransport(handler))

    assert await auth.get_installation_token() == "t"
    assert seen == [
        "https://api.github.com/app/installations?per_page=100",
        "https://api.github.com/app/installations?per_page=100&page=2",
        "https://api.github.com/app/installations/9/access_tokens",
    ]


@pytest.mark.asyncio
async def test_installation_listing_with_invalid_json_is_a_github_error(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"<html>oops</html>")

    auth = GitHubAppAuth(config=_cfg(tmp_path), transport=httpx.MockTransport(handler))

    with pytest.raises(BotError) as exc:
        _ = await auth.get_installation_token()

    assert exc.value.code == "GitHub"
    assert "invalid JSON" in exc.value.message


@pytest.mark.asyncio
async def test_installation_lookup_network_failure_is_a_network_error(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("boom", request=request)

    auth = GitHubAppAuth(config=_cfg(tmp_path), transport=httpx.MockTransport(handler))

    with pytest.raises(BotError) as exc:
        _ = await auth.get_installation_token()

    assert exc.value.code == "Network"

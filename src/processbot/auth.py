"""GitHub App authentication.

The bot is configured with an App id, its private key, and the login of the account the
App is installed on. The installation id is looked up once from that login; installation
tokens are then exchanged on demand and cached until shortly before they expire.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import jwt

from .config import BotConfig
from .errors import BotError
from .github_client import GITHUB_API_BASE_URL

logger = logging.getLogger(__name__)

_TOKEN_REFRESH_MARGIN_S = 30
_MAX_INSTALLATION_PAGES = 20


@dataclass(frozen=True, slots=True)
class InstallationToken:
    """Cached installation access token + expiry."""

    token: str
    expires_at: datetime


class GitHubAppAuth:
    """Manages App JWT signing, installation lookup and token caching."""

    def __init__(
        self,
        *,
        config: BotConfig,
        api_base_url: str = GITHUB_API_BASE_URL,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._api_base_url = api_base_url.rstrip("/")
        self._transport = transport
        self._lock = asyncio.Lock()
        self._installation_id: int | None = None
        self._cached: InstallationToken | None = None

    def _build_app_jwt(self) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            # Backdated to tolerate clock drift between us and GitHub.
            "iat": int((now - timedelta(seconds=60)).timestamp()),
            "exp": int((now + timedelta(minutes=9)).timestamp()),
            "iss": str(self._config.app_id),
        }
        private_key_pem = self._config.private_key_path.read_text(encoding="utf-8")
        return jwt.encode(payload, private_key_pem, algorithm="RS256")

    def _app_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._build_app_jwt()}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    async def _request(self, client: httpx.AsyncClient, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            resp = await client.request(method, url, headers=self._app_headers(), **kwargs)
        except httpx.HTTPError as exc:
            raise BotError(code="Network", message="Network request failed", hint=type(exc).__name__) from exc
        if resp.status_code in (401, 403):
            raise BotError(code="Auth", message="GitHub App authentication failed")
        return resp

    @staticmethod
    def _decode(resp: httpx.Response) -> object:
        try:
            return resp.json()
        except ValueError as exc:
            raise BotError(code="GitHub", message="GitHub returned invalid JSON") from exc

    async def _find_installation_id(self, client: httpx.AsyncClient) -> int:
        wanted = self._config.installation_login.lower()
        url: str | None = f"{self._api_base_url}/app/installations"
        params: dict[str, str] | None = {"per_page": "100"}

        for _ in range(_MAX_INSTALLATION_PAGES):
            if url is None:
                break
            resp = await self._request(client, "GET", url, params=params)
            if resp.status_code >= 400:
                raise BotError(
                    code="GitHub", message="Failed to list App installations", status_code=resp.status_code
                )

            installations = self._decode(resp)
            if not isinstance(installations, list):
                raise BotError(code="GitHub", message="Unexpected installations response")

            for installation in installations:
                account = installation.get("account") if isinstance(installation, dict) else None
                login = account.get("login") if isinstance(account, dict) else None
                if isinstance(login, str) and login.lower() == wanted and isinstance(installation.get("id"), int):
                    logger.info("Using GitHub App installation for %s", login)
                    return installation["id"]

            next_link = resp.links.get("next")
            url = next_link.get("url") if next_link else None
            # The next URL already carries the query string.
            params = None

        raise BotError(
            code="Auth",
            message="GitHub App is not installed on the configured account",
            hint=self._config.installation_login,
        )

    async def get_installation_token(self) -> str:
        """Get a valid installation access token (refreshing if needed)."""
        async with self._lock:
            if self._cached is not None:
                remaining = (self._cached.expires_at - datetime.now(timezone.utc)).total_seconds()
                if remaining > _TOKEN_REFRESH_MARGIN_S:
                    return self._cached.token

            async with httpx.AsyncClient(
                follow_redirects=False,
                timeout=30.0,
                transport=self._transport,
            ) as client:
                if self._installation_id is None:
                    self._installation_id = await self._find_installation_id(client)

                url = f"{self._api_base_url}/app/installations/{self._installation_id}/access_tokens"
                resp = await self._request(client, "POST", url, json={})

            if resp.status_code >= 400:
                raise BotError(code="GitHub", message="Failed to obtain installation token")

            data = self._decode(resp)
            token = data.get("token") if isinstance(data, dict) else None
            expires_at_raw = data.get("expires_at") if isinstance(data, dict) else None
            if not token or not expires_at_raw:
                raise BotError(code="Auth", message="GitHub token response missing required fields")

            # RFC3339 timestamp like 2025-01-01T00:00:00Z
            expires_at = datetime.fromisoformat(expires_at_raw.replace("Z", "+00:00")).astimezone(timezone.utc)
            self._cached = InstallationToken(token=token, expires_at=expires_at)
            logger.debug("Installation token refreshed, expires at %s", expires_at.isoformat())
            return token

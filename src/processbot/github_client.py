"""GitHub REST client wrapper.

Provides:
- no-redirect requests against a single API host
- bounded retries with backoff on 429/5xx and transport errors
- Link-header pagination for list endpoints
- translation of failures into `BotError`
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from .config import LimitsConfig
from .errors import BotError, github_auth_forbidden

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], Awaitable[str]]

GITHUB_API_BASE_URL = "https://api.github.com"


class GitHubClient:
    """Minimal GitHub REST client authenticated with an installation token."""

    def __init__(
        self,
        *,
        token_provider: TokenProvider,
        limits: LimitsConfig,
        api_base_url: str = GITHUB_API_BASE_URL,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Create a GitHub REST client.

        Args:
            token_provider: Async callable that returns an installation token.
            limits: Timeouts/retry limits.
            api_base_url: Base URL of the REST API.
            transport: Optional httpx transport for tests.
        """
        self._token_provider = token_provider
        self._limits = limits
        self._api_base_url = api_base_url.rstrip("/")
        self._transport = transport

        if not self._api_base_url.startswith("https://"):
            raise BotError(code="Config", message="GitHub API base URL must use https")

    @property
    def api_base_url(self) -> str:
        return self._api_base_url

    def _headers(self, token: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    def _timeout(self) -> httpx.Timeout:
        return httpx.Timeout(
            timeout=self._limits.total_timeout_s,
            connect=self._limits.connect_timeout_s,
            read=self._limits.read_timeout_s,
        )

    def _compute_backoff_s(self, attempt_index: int) -> float:
        # attempt_index: 1 for first retry, 2 for second retry...
        base = min(self._limits.max_backoff_s, 0.5 * (2 ** (attempt_index - 1)))
        jitter = min(0.05, 0.01 * attempt_index)
        return min(self._limits.max_backoff_s, base + jitter)

    def _is_retryable(self, status_code: int) -> bool:
        if status_code == 429:
            return True
        return 500 <= status_code <= 599

    @staticmethod
    def _error_hint(resp: httpx.Response) -> str | None:
        try:
            payload = resp.json()
        except ValueError:
            return None
        if isinstance(payload, dict) and isinstance(payload.get("message"), str):
            return payload["message"]
        return None

    async def _send(
        self,
        client: httpx.AsyncClient,
        *,
        method: str,
        url: str,
        token: str,
        json_body: dict[str, Any] | None,
        params: dict[str, str] | None,
    ) -> httpx.Response:
        last_exc: Exception | None = None
        last_status: int | None = None

        for attempt in range(1, self._limits.max_attempts + 1):
            try:
                resp = await client.request(
                    method,
                    url,
                    headers=self._headers(token),
                    json=json_body,
                    params=params,
                )
            except httpx.HTTPError as exc:
                last_exc = exc
                if attempt < self._limits.max_attempts:
                    logger.warning("GitHub %s %s failed (%s), retrying", method, url, type(exc).__name__)
                    await asyncio.sleep(self._compute_backoff_s(attempt))
                    continue
                raise BotError(code="Network", message="Network request failed") from exc

            last_status = resp.status_code
            if resp.status_code < 400:
                return resp

            if resp.status_code in (401, 403):
                raise github_auth_forbidden(status_code=resp.status_code)

            if attempt < self._limits.max_attempts and self._is_retryable(resp.status_code):
                logger.warning("GitHub %s %s returned %s, retrying", method, url, resp.status_code)
                await asyncio.sleep(self._compute_backoff_s(attempt))
                continue

            raise BotError(
                code="GitHub",
                message="GitHub request failed",
                hint=self._error_hint(resp),
                status_code=resp.status_code,
            )

        raise BotError(code="Network", message=f"Request failed (status={last_status})") from last_exc

    async def request_json(
        self,
        *,
        method: str,
        path: str,
        json_body: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
    ) -> object:
        """Make a request and return decoded JSON.

        GitHub APIs may return either an object (dict) or an array (list).
        """
        token = await self._token_provider()
        async with httpx.AsyncClient(
            follow_redirects=False,
            timeout=self._timeout(),
            transport=self._transport,
        ) as client:
            resp = await self._send(
                client,
                method=method,
                url=f"{self._api_base_url}{path}",
                token=token,
                json_body=json_body,
                params=params,
            )
        try:
            return resp.json()
        except json.JSONDecodeError as exc:
            raise BotError(code="GitHub", message="GitHub returned invalid JSON") from exc

    async def request_paginated(
        self,
        *,
        path: str,
        params: dict[str, str] | None = None,
        items_key: str | None = None,
        max_pages: int = 50,
    ) -> list[Any]:
        """GET every page of a list endpoint, following `Link: rel="next"`.

        Args:
            items_key: For endpoints that wrap the list in an object
                (e.g. `/installation/repositories` returns `{"repositories": [...]}`).
        """
        token = await self._token_provider()
        query: dict[str, str] | None = {"per_page": "100", **(params or {})}
        url: str | None = f"{self._api_base_url}{path}"
        items: list[Any] = []

        async with httpx.AsyncClient(
            follow_redirects=False,
            timeout=self._timeout(),
            transport=self._transport,
        ) as client:
            for _ in range(max_pages):
                if url is None:
                    break
                resp = await self._send(
                    client, method="GET", url=url, token=token, json_body=None, params=query
                )
                try:
                    payload = resp.json()
                except json.JSONDecodeError as exc:
                    raise BotError(code="GitHub", message="GitHub returned invalid JSON") from exc

                page = payload.get(items_key) if items_key and isinstance(payload, dict) else payload
                if not isinstance(page, list):
                    raise BotError(code="GitHub", message="Unexpected list response")
                items.extend(page)

                next_link = resp.links.get("next")
                url = next_link.get("url") if next_link else None
                # The next URL already carries the query string.
                query = None
        return items

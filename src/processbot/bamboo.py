"""BambooHR employee directory client.

BambooHR is the source of truth for which employees exist and which GitHub login and
Matrix id each of them uses. Both identities live in custom employee fields whose names
are configurable.
"""

from __future__ import annotations

import asyncio
import logging

import httpx

from .config import BambooConfig, LimitsConfig
from .errors import BotError

logger = logging.getLogger(__name__)

BAMBOO_API_BASE_URL = "https://api.bamboohr.com/api/gateway.php"

# Per-employee lookups are cheap but numerous; keep a handful in flight.
_MAX_CONCURRENT_LOOKUPS = 8


class BambooClient:
    """Fetches the GitHub login to Matrix id mapping from BambooHR."""

    def __init__(
        self,
        *,
        config: BambooConfig,
        limits: LimitsConfig,
        api_base_url: str = BAMBOO_API_BASE_URL,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._limits = limits
        self._base_url = f"{api_base_url.rstrip('/')}/{config.company}/v1"
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            auth=(self._config.token, "x"),
            headers={"Accept": "application/json"},
            follow_redirects=False,
            timeout=httpx.Timeout(
                timeout=self._limits.total_timeout_s,
                connect=self._limits.connect_timeout_s,
                read=self._limits.read_timeout_s,
            ),
            transport=self._transport,
        )

    async def _get_json(self, client: httpx.AsyncClient, path: str, params: dict[str, str] | None = None) -> object:
        try:
            resp = await client.get(f"{self._base_url}{path}", params=params)
        except httpx.HTTPError as exc:
            raise BotError(code="Directory", message="BambooHR request failed", hint=type(exc).__name__) from exc
        if resp.status_code in (401, 403):
            raise BotError(code="Directory", message="BambooHR rejected the API token", status_code=resp.status_code)
        if resp.status_code >= 400:
            raise BotError(code="Directory", message="BambooHR request failed", status_code=resp.status_code)
        try:
            return resp.json()
        except ValueError as exc:
            raise BotError(code="Directory", message="BambooHR returned invalid JSON") from exc

    async def _employee_ids(self, client: httpx.AsyncClient) -> list[str]:
        data = await self._get_json(client, "/employees/directory")
        employees = data.get("employees") if isinstance(data, dict) else None
        if not isinstance(employees, list):
            raise BotError(code="Directory", message="Unexpected BambooHR directory response")
        return [str(e["id"]) for e in employees if isinstance(e, dict) and e.get("id") is not None]

    async def _identities(self, client: httpx.AsyncClient, employee_id: str) -> tuple[str, str] | None:
        fields = f"{self._config.github_field},{self._config.matrix_field}"
        data = await self._get_json(client, f"/employees/{employee_id}", params={"fields": fields})
        if not isinstance(data, dict):
            return None
        github = data.get(self._config.github_field)
        matrix = data.get(self._config.matrix_field)
        if not isinstance(github, str) or not isinstance(matrix, str):
            return None
        github, matrix = github.strip(), matrix.strip()
        if not github or not matrix:
            return None
        return github, matrix

    async def fetch_directory(self) -> dict[str, str]:
        """Return `{github_login: matrix_id}` for every employee with both fields set.

        Any failed request fails the whole fetch; a partial directory is never returned.

        Raises:
            BotError: code "Directory".
        """
        semaphore = asyncio.Semaphore(_MAX_CONCURRENT_LOOKUPS)
        async with self._client() as client:
            ids = await self._employee_ids(client)

            async def lookup(employee_id: str) -> tuple[str, str] | None:
                async with semaphore:
                    return await self._identities(client, employee_id)

            results = await asyncio.gather(*(lookup(i) for i in ids), return_exceptions=True)

        for result in results:
            if isinstance(result, BaseException):
                raise result
        github_to_matrix = dict(r for r in results if r is not None)
        logger.info("Fetched %s directory entries from %s employees", len(github_to_matrix), len(ids))
        return github_to_matrix

"""Organization-scoped GitHub queries used by the bot."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .constants import PROCESS_FILE_NAME
from .errors import BotError
from .github_client import GitHubClient
from .process import ProcessWrapper, process_from_contents


@dataclass(frozen=True, slots=True)
class Team:
    id: int
    slug: str
    name: str


@dataclass(frozen=True, slots=True)
class Repository:
    name: str
    full_name: str
    html_url: str


def _require(data: Any, key: str, kind: type) -> Any:
    value = data.get(key) if isinstance(data, dict) else None
    if not isinstance(value, kind):
        raise BotError(code="GitHub", message=f"Unexpected response: missing {key}")
    return value


class GithubBot:
    """Thin domain layer over `GitHubClient` for one organization."""

    def __init__(self, *, client: GitHubClient, organization: str, max_file_bytes: int = 100 * 1024) -> None:
        self._client = client
        self.organization = organization
        self._max_file_bytes = max_file_bytes

    async def team(self, slug: str) -> Team:
        data = await self._client.request_json(method="GET", path=f"/orgs/{self.organization}/teams/{slug}")
        return Team(id=_require(data, "id", int), slug=_require(data, "slug", str), name=_require(data, "name", str))

    async def team_members(self, team_id: int) -> list[str]:
        """Logins of every member of the team."""
        members = await self._client.request_paginated(
            path=f"/organizations/{self.organization}/team/{team_id}/members",
        )
        return [m["login"] for m in members if isinstance(m, dict) and isinstance(m.get("login"), str)]

    async def repositories(self) -> list[Repository]:
        """Repositories the App installation can access."""
        repos = await self._client.request_paginated(path="/installation/repositories", items_key="repositories")
        return [
            Repository(
                name=_require(r, "name", str),
                full_name=_require(r, "full_name", str),
                html_url=_require(r, "html_url", str),
            )
            for r in repos
        ]

    async def contents(self, repo_name: str, path: str) -> str:
        """Raw base64 `content` of a file, as returned by the contents API."""
        data = await self._client.request_json(
            method="GET",
            path=f"/repos/{self.organization}/{repo_name}/contents/{path}",
        )
        if not isinstance(data, dict) or data.get("type") != "file":
            raise BotError(code="GitHub", message="Path is not a file", hint=path)
        if data.get("encoding") != "base64" or not isinstance(data.get("content"), str):
            raise BotError(code="GitHub", message="Unexpected file content encoding")
        size = data.get("size")
        if isinstance(size, int) and size > self._max_file_bytes:
            raise BotError(code="GitHub", message="File exceeds size limit", hint=path)
        return data["content"]

    async def process(self, repo_name: str) -> list[ProcessWrapper] | None:
        """Parsed Process.toml of a repository, or None when the repository has none.

        Raises:
            BotError: code "MalformedProcess" when the file exists but cannot be decoded.
        """
        try:
            content = await self.contents(repo_name, PROCESS_FILE_NAME)
        except BotError as exc:
            if exc.status_code == 404:
                return None
            raise
        return process_from_contents(content)


"""Bot working state and the per-tick process pass.

`Bot` carries what the business rules need on every tick: GitHub and Matrix clients, the
shared store, the core-devs roster, the GitHub to Matrix identity mapping, and the parsed
Process.toml of every repository. The rules themselves are injected as a `RuleEngine`.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from .constants import LOCAL_STATE_KEY, MALFORMED_PROCESS_FILE
from .errors import BotError
from .github_bot import GithubBot, Repository
from .matrix_bot import MatrixBot
from .process import (
    CombinedProcessInfo,
    ProcessFeatures,
    ProcessInfo,
    combine_process_info,
    process_info_map,
    split_process,
)
from .store import LockedStore

logger = logging.getLogger(__name__)

RuleEngine = Callable[["Bot"], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class RepositoryProcess:
    """Validated Process.toml of one repository."""

    repo: Repository
    features: ProcessFeatures
    projects: dict[str, ProcessInfo] = field(default_factory=dict)

    def combined(self, project_names: Sequence[str | None]) -> CombinedProcessInfo:
        """Resolve the projects an issue/PR is attached to, primary first."""
        return combine_process_info(project_names, list(self.projects.values()))


class Bot:
    """Mutable per-process state shared by the reconciliation loop and the rules."""

    def __init__(
        self,
        *,
        store: LockedStore,
        github_bot: GithubBot,
        matrix_bot: MatrixBot,
        engine: RuleEngine | None = None,
    ) -> None:
        self.store = store
        self.github_bot = github_bot
        self.matrix_bot = matrix_bot
        self._engine = engine
        self.core_devs: list[str] = []
        self.github_to_matrix: dict[str, str] = {}
        self.processes: dict[str, RepositoryProcess] = {}
        self._reported_malformed: set[str] = set()

    def matrix_id(self, login: str) -> str | None:
        return self.github_to_matrix.get(login)

    def is_core_dev(self, login: str) -> bool:
        return login in self.core_devs

    async def _load_process(self, repo: Repository) -> RepositoryProcess | None:
        try:
            wrappers = await self.github_bot.process(repo.name)
        except BotError as exc:
            if exc.code != "MalformedProcess":
                logger.warning("Skipping %s: unable to load process file: %s", repo.full_name, exc)
                return None
            logger.warning("Malformed process file in %s: %s", repo.full_name, exc)
            if repo.full_name not in self._reported_malformed:
                try:
                    await self.matrix_bot.send_to_default(MALFORMED_PROCESS_FILE.format(repo_url=repo.html_url))
                except BotError as send_exc:
                    logger.error("Unable to report malformed process file for %s: %s", repo.full_name, send_exc)
                else:
                    self._reported_malformed.add(repo.full_name)
            return None

        self._reported_malformed.discard(repo.full_name)
        if wrappers is None:
            return None
        features, infos = split_process(wrappers)
        return RepositoryProcess(repo=repo, features=features, projects=process_info_map(infos))

    async def load_processes(self) -> dict[str, RepositoryProcess]:
        """Load the process file of every installation repository, keyed by repo name."""
        processes: dict[str, RepositoryProcess] = {}
        for repo in await self.github_bot.repositories():
            loaded = await self._load_process(repo)
            if loaded is not None:
                processes[repo.name] = loaded
        logger.info("Loaded process files for %s repositories", len(processes))
        return processes

    async def update(self) -> None:
        """One pass: refresh process catalogs, then run the business rules."""
        self.processes = await self.load_processes()
        if self._engine is not None:
            await self._engine(self)

    async def load_local_state(self) -> dict[str, Any]:
        """Rule-engine state persisted across restarts; empty if absent or corrupt."""
        raw = await asyncio.to_thread(self.store.read, LOCAL_STATE_KEY)
        if raw is None:
            return {}
        try:
            state = json.loads(raw)
        except ValueError:
            logger.error("Local state in store is corrupt, starting from empty state")
            return {}
        return state if isinstance(state, dict) else {}

    async def save_local_state(self, state: dict[str, Any]) -> None:
        payload = json.dumps(state, sort_keys=True).encode("utf-8")
        await asyncio.to_thread(self.store.replace, LOCAL_STATE_KEY, payload)

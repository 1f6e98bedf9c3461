"""Process wiring: build every collaborator from the environment and run the bot.

Startup order:
1. load configuration (fail fast on anything missing)
2. open the store and build GitHub, Matrix and BambooHR clients
3. cold start: block on one directory fetch if the store has no identity mapping
4. start the background directory refresh task
5. run the reconciliation loop until the process dies
"""

from __future__ import annotations

import asyncio
import logging
import sys
from dataclasses import dataclass

from .audit import AuditLogger
from .auth import GitHubAppAuth
from .bamboo import BambooClient
from .bot import Bot, RuleEngine
from .config import BotConfig, load_config_from_env
from .directory_cache import DirectoryCache
from .errors import BotError
from .github_bot import GithubBot
from .github_client import GitHubClient
from .matrix_bot import MatrixBot
from .reconcile import run_reconcile_loop
from .store import DirStore, LockedStore

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass
class Runtime:
    """Long-lived dependencies shared by the loop and the background refresh."""

    config: BotConfig
    audit: AuditLogger
    store: LockedStore
    auth: GitHubAppAuth
    github_bot: GithubBot
    matrix_bot: MatrixBot
    bamboo: BambooClient
    cache: DirectoryCache


_RUNTIME: Runtime | None = None


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stderr)],
    )
    # httpx logs every request at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)


def build_runtime(config: BotConfig) -> Runtime:
    audit = AuditLogger(
        sink_path=config.audit_log_path,
        max_bytes=config.audit_max_bytes,
        max_backups=config.audit_max_backups,
    )
    store = LockedStore(DirStore(config.db_path))
    auth = GitHubAppAuth(config=config)
    github = GitHubClient(token_provider=auth.get_installation_token, limits=config.limits)
    github_bot = GithubBot(
        client=github,
        organization=config.installation_login,
        max_file_bytes=config.limits.process_file_max_bytes,
    )
    matrix_bot = MatrixBot(config=config.matrix, limits=config.limits)
    bamboo = BambooClient(config=config.bamboo, limits=config.limits)
    cache = DirectoryCache(store=store, fetch_directory=bamboo.fetch_directory, audit=audit)
    return Runtime(
        config=config,
        audit=audit,
        store=store,
        auth=auth,
        github_bot=github_bot,
        matrix_bot=matrix_bot,
        bamboo=bamboo,
        cache=cache,
    )


def initialize_runtime_from_env() -> Runtime:
    """Initialize and cache the runtime from environment variables."""
    global _RUNTIME  # pylint: disable=global-statement
    if _RUNTIME is not None:
        return _RUNTIME
    _RUNTIME = build_runtime(load_config_from_env())
    return _RUNTIME


async def run_bot(runtime: Runtime, *, engine: RuleEngine | None = None, max_ticks: int | None = None) -> None:
    """Cold-start the directory cache, start its refresh task, then reconcile forever."""
    config = runtime.config
    logger.info("Processbot starting for %s", config.installation_login)

    if not await runtime.cache.warm_up():
        logger.warning("Starting without directory data; identity mapping is empty until a refresh succeeds")

    refresh_task = asyncio.create_task(
        runtime.cache.run_forever(config.bamboo_tick_secs),
        name="directory-refresh",
    )
    bot = Bot(
        store=runtime.store,
        github_bot=runtime.github_bot,
        matrix_bot=runtime.matrix_bot,
        engine=engine,
    )
    try:
        await run_reconcile_loop(
            bot,
            runtime.cache,
            interval_s=config.main_tick_secs,
            team_name=config.core_devs_team,
            audit=runtime.audit,
            max_ticks=max_ticks,
        )
    finally:
        refresh_task.cancel()


async def main_async(log_level: str = "INFO") -> None:
    configure_logging(log_level)
    try:
        runtime = initialize_runtime_from_env()
    except BotError as exc:
        logger.error("Startup configuration error: %s", exc.message)
        raise
    await run_bot(runtime)

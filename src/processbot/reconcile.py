"""Fixed-interval reconciliation loop.

Each tick takes two independent snapshots, the core-devs roster from GitHub and the
identity mapping from the store, puts them on the `Bot`, and runs one `Bot.update()`.
Roster failures degrade to an empty roster for that tick. Store read failures and
failures inside `Bot.update()` propagate and end the loop.
"""

from __future__ import annotations

import asyncio
import logging

from .audit import AuditLogger, build_event, new_correlation_id
from .bot import Bot
from .directory_cache import DirectoryCache
from .errors import BotError

logger = logging.getLogger(__name__)


async def fetch_roster(bot: Bot, team_name: str) -> list[str]:
    """Members of `team_name`, or an empty list if GitHub cannot tell us."""
    try:
        team = await bot.github_bot.team(team_name)
        return await bot.github_bot.team_members(team.id)
    except BotError as exc:
        logger.warning("Unable to fetch members of team %s: %s", team_name, exc)
        return []


async def reconcile_tick(bot: Bot, cache: DirectoryCache, *, team_name: str) -> None:
    core_devs = await fetch_roster(bot, team_name)
    github_to_matrix = await cache.load()

    bot.core_devs = core_devs
    bot.github_to_matrix = github_to_matrix
    await bot.update()


async def run_reconcile_loop(
    bot: Bot,
    cache: DirectoryCache,
    *,
    interval_s: float,
    team_name: str,
    audit: AuditLogger | None = None,
    max_ticks: int | None = None,
) -> None:
    """Run `reconcile_tick` every `interval_s` seconds.

    The first tick fires immediately. Ticks that overrun the interval are followed by
    the next one straight away rather than being skipped.

    Args:
        max_ticks: Stop after this many ticks; None runs forever.
    """
    loop = asyncio.get_running_loop()
    next_tick = loop.time()
    ticks = 0
    while max_ticks is None or ticks < max_ticks:
        delay = next_tick - loop.time()
        if delay > 0:
            await asyncio.sleep(delay)
        next_tick = max(next_tick + interval_s, loop.time())

        correlation_id = new_correlation_id()
        start = audit.measure_start() if audit is not None else 0.0
        try:
            await reconcile_tick(bot, cache, team_name=team_name)
        except BotError as exc:
            if audit is not None:
                audit.write_event(
                    build_event(
                        correlation_id=correlation_id,
                        operation="reconcile_tick",
                        target=bot.github_bot.organization,
                        outcome="error",
                        reason=exc.code,
                        duration_ms=audit.measure_duration_ms(start),
                    )
                )
            raise
        if audit is not None:
            audit.write_event(
                build_event(
                    correlation_id=correlation_id,
                    operation="reconcile_tick",
                    target=bot.github_bot.organization,
                    outcome="ok",
                    duration_ms=audit.measure_duration_ms(start),
                    count=len(bot.processes),
                )
            )
        ticks += 1

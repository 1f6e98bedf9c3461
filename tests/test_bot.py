"""Bot state: process catalog loading, malformed-file reporting and local state."""

from __future__ import annotations

import pytest
from fakes import FakeGithubBot, FakeMatrixBot, repo
from processbot.bot import Bot
from processbot.constants import LOCAL_STATE_KEY
from processbot.errors import BotError, malformed_process
from processbot.process import Features, ProcessFeatures, ProcessInfo, Project
from processbot.store import LockedStore, MemoryStore

CORE = ProcessInfo(project_name="core", owner="alice", matrix_room_id="!core:m", delegated_reviewer="bob")
NET = ProcessInfo(project_name="net", owner="dave", matrix_room_id="!net:m", whitelist=("erin",))


def _bot(github: FakeGithubBot, matrix: FakeMatrixBot | None = None, engine=None) -> Bot:
    return Bot(
        store=LockedStore(MemoryStore()),
        github_bot=github,
        matrix_bot=matrix or FakeMatrixBot(),
        engine=engine,
    )


@pytest.mark.asyncio
async def test_load_processes_skips_repos_without_usable_file() -> None:
    github = FakeGithubBot(
        repos=[repo("node"), repo("docs"), repo("infra")],
        files={
            "node": [Features(ProcessFeatures(auto_merge=False)), Project(CORE), Project(NET)],
            "docs": None,
            "infra": BotError(code="GitHub", message="GitHub request failed", status_code=500),
        },
    )

    processes = await _bot(github).load_processes()

    assert list(processes) == ["node"]
    node = processes["node"]
    assert node.repo == repo("node")
    assert node.features.auto_merge is False
    assert node.projects == {"core": CORE, "net": NET}


@pytest.mark.asyncio
async def test_repository_process_combines_projects_primary_first() -> None:
    github = FakeGithubBot(repos=[repo("node")], files={"node": [Project(CORE), Project(NET)]})

    processes = await _bot(github).load_processes()
    combined = processes["node"].combined(["net", "missing", "core"])

    assert combined.primary == NET
    assert combined.linked == (CORE,)
    assert combined.is_owner("bob") is True
    assert combined.is_whitelisted("erin") is True


@pytest.mark.asyncio
async def test_malformed_process_file_is_reported_once() -> None:
    github = FakeGithubBot(repos=[repo("node")], files={"node": malformed_process("Process file is not valid TOML")})
    matrix = FakeMatrixBot()
    bot = _bot(github, matrix)

    await bot.load_processes()
    await bot.load_processes()

    assert len(matrix.sent) == 1
    room, text = matrix.sent[0]
    assert room == "!default:matrix.example"
    assert "https://github.com/octo-org/node" in text


@pytest.mark.asyncio
async def test_malformed_report_repeats_after_file_is_fixed_and_broken_again() -> None:
    github = FakeGithubBot(repos=[repo("node")], files={"node": malformed_process("bad")})
    matrix = FakeMatrixBot()
    bot = _bot(github, matrix)

    await bot.load_processes()
    github.files["node"] = [Project(CORE)]
    await bot.load_processes()
    github.files["node"] = malformed_process("bad")
    await bot.load_processes()

    assert len(matrix.sent) == 2


@pytest.mark.asyncio
async def test_failed_malformed_report_is_retried_next_pass() -> None:
    github = FakeGithubBot(repos=[repo("node")], files={"node": malformed_process("bad")})
    matrix = FakeMatrixBot(fail=True)
    bot = _bot(github, matrix)

    processes = await bot.load_processes()
    matrix.fail = False
    await bot.load_processes()

    assert processes == {}
    assert len(matrix.sent) == 1


@pytest.mark.asyncio
async def test_update_refreshes_processes_then_runs_engine() -> None:
    github = FakeGithubBot(repos=[repo("node")], files={"node": [Project(CORE)]})
    seen: list[list[str]] = []

    async def engine(bot: Bot) -> None:
        seen.append(sorted(bot.processes))

    bot = _bot(github, engine=engine)
    await bot.update()

    assert seen == [["node"]]


@pytest.mark.asyncio
async def test_update_propagates_repository_listing_failure() -> None:
    github = FakeGithubBot(repos=BotError(code="Forbidden", message="revoked"))

    with pytest.raises(BotError):
        await _bot(github).update()


def test_identity_lookups() -> None:
    bot = _bot(FakeGithubBot())
    bot.core_devs = ["alice"]
    bot.github_to_matrix = {"alice": "@alice:m"}

    assert bot.is_core_dev("alice") is True
    assert bot.is_core_dev("bob") is False
    assert bot.matrix_id("alice") == "@alice:m"
    assert bot.matrix_id("bob") is None


@pytest.mark.asyncio
async def test_local_state_round_trip_and_corruption() -> None:
    bot = _bot(FakeGithubBot())

    assert await bot.load_local_state() == {}
    await bot.save_local_state({"last_seen": {"node": 12}})
    assert await bot.load_local_state() == {"last_seen": {"node": 12}}

    bot.store.replace(LOCAL_STATE_KEY, b"not json")
    assert await bot.load_local_state() == {}

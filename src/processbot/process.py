"""Process.toml parsing and project authorization queries.

A repository's `Process.toml` names its projects, who owns each of them, who may act on
their behalf, and which Matrix room hears about changes. Decoding is done in two passes:

- `decode_process_document` is strict: broken base64, UTF-8 or TOML rejects the whole file.
- `process_from_table` is lenient: a project block missing a required field is dropped
  while every other block is kept.
"""

from __future__ import annotations

import base64
import binascii
import logging
import tomllib
from collections.abc import Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from .constants import BACKLOG_DEFAULT_NAME, FEATURES_KEY
from .errors import malformed_process

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ProcessFeatures:
    """Optional behaviors enabled for a repository."""

    auto_merge: bool = True
    compare_release: bool = True
    issue_project: bool = False
    issue_addressed: bool = False
    issue_assigned: bool = False
    review_requests: bool = False
    status_notifications: bool = False


@dataclass(frozen=True, slots=True)
class ProcessInfo:
    """A single project block from Process.toml."""

    project_name: str
    owner: str
    matrix_room_id: str
    delegated_reviewer: str | None = None
    whitelist: tuple[str, ...] = ()
    backlog: str | None = None

    def owner_or_delegate(self) -> str:
        """Return the delegated reviewer when set, otherwise the owner."""
        return self.delegated_reviewer or self.owner

    def is_owner_or_delegate(self, login: str) -> bool:
        return self.is_owner(login) or self.is_delegated_reviewer(login)

    def is_owner(self, login: str) -> bool:
        """Check if the owner of the project matches the login given."""
        return self.owner == login

    def is_delegated_reviewer(self, login: str) -> bool:
        """Check if the delegated reviewer matches the login given."""
        return self.delegated_reviewer is not None and self.delegated_reviewer == login

    def is_whitelisted(self, login: str) -> bool:
        """Check that the login is contained within the whitelist."""
        return login in self.whitelist

    def is_special(self, login: str) -> bool:
        return self.is_owner(login) or self.is_delegated_reviewer(login) or self.is_whitelisted(login)

    def backlog_column(self) -> str:
        """Name of the project column new issues are sorted into."""
        return self.backlog or BACKLOG_DEFAULT_NAME


@dataclass(frozen=True, slots=True)
class Features:
    """Parser output variant carrying the repository feature flags."""

    features: ProcessFeatures


@dataclass(frozen=True, slots=True)
class Project:
    """Parser output variant carrying one validated project block."""

    info: ProcessInfo


ProcessWrapper = Features | Project


@dataclass(frozen=True, slots=True)
class CombinedProcessInfo:
    """Process records for every project an issue or pull request touches.

    `primary` is the project driving the decision; `linked` are the other projects the
    same issue/PR references, in their original order. Confirm/revert decisions should use
    the `primary_*` queries; notification fan-out uses the combined ones.
    """

    primary: ProcessInfo | None = None
    linked: tuple[ProcessInfo, ...] = ()

    @classmethod
    def combine(cls, records: Sequence[ProcessInfo | None]) -> CombinedProcessInfo:
        """Split resolved records into primary (first element) and linked (the rest).

        Unresolved references (`None`) are dropped; a `None` in first position leaves the
        combination without a primary project.
        """
        if not records:
            return cls()
        return cls(
            primary=records[0],
            linked=tuple(r for r in records[1:] if r is not None),
        )

    def __len__(self) -> int:
        return (1 if self.primary is not None else 0) + len(self.linked)

    def __iter__(self) -> Iterator[ProcessInfo]:
        if self.primary is not None:
            yield self.primary
        yield from self.linked

    @property
    def has_primary(self) -> bool:
        return self.primary is not None

    @property
    def has_linked(self) -> bool:
        return bool(self.linked)

    def get(self, project_name: str) -> ProcessInfo | None:
        """Return the record for `project_name`, primary first."""
        return next((p for p in self if p.project_name == project_name), None)

    def primary_owner(self) -> str | None:
        if self.primary is None:
            return None
        return self.primary.owner_or_delegate()

    def primary_room_id(self) -> str | None:
        if self.primary is None:
            return None
        return self.primary.matrix_room_id

    def iter_owners(self) -> Iterator[str]:
        """Owner (or delegate) of every project, primary first. Not deduplicated."""
        return (p.owner_or_delegate() for p in self)

    def iter_linked_owners(self) -> Iterator[str]:
        return (p.owner_or_delegate() for p in self.linked)

    def iter_room_ids(self) -> Iterator[str]:
        """Matrix room of every project, primary first. Not deduplicated."""
        return (p.matrix_room_id for p in self)

    def iter_linked_room_ids(self) -> Iterator[str]:
        return (p.matrix_room_id for p in self.linked)

    def is_primary_owner(self, login: str) -> bool:
        return self.primary_owner() == login

    def is_linked_owner(self, login: str) -> bool:
        return any(owner == login for owner in self.iter_linked_owners())

    def is_owner(self, login: str) -> bool:
        return any(owner == login for owner in self.iter_owners())

    def is_primary_whitelisted(self, login: str) -> bool:
        return self.primary is not None and self.primary.is_whitelisted(login)

    def is_linked_whitelisted(self, login: str) -> bool:
        return any(p.is_whitelisted(login) for p in self.linked)

    def is_whitelisted(self, login: str) -> bool:
        return any(p.is_whitelisted(login) for p in self)

    def is_primary_special(self, login: str) -> bool:
        return self.is_primary_owner(login) or self.is_primary_whitelisted(login)

    def is_linked_special(self, login: str) -> bool:
        return self.is_linked_owner(login) or self.is_linked_whitelisted(login)

    def is_special(self, login: str) -> bool:
        return self.is_owner(login) or self.is_whitelisted(login)


def decode_process_document(content: str | bytes) -> dict[str, Any]:
    """Decode a base64-wrapped Process.toml into its top-level table.

    GitHub's contents API wraps base64 payloads with newlines; those are stripped first.

    Raises:
        BotError: code "MalformedProcess" if any decoding stage fails.
    """
    raw = content.encode("ascii", errors="replace") if isinstance(content, str) else content
    raw = raw.replace(b"\n", b"").replace(b"\r", b"")
    try:
        decoded = base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise malformed_process("Process file is not valid base64") from exc
    try:
        text = decoded.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise malformed_process("Process file is not valid UTF-8") from exc
    try:
        return tomllib.loads(text)
    except tomllib.TOMLDecodeError as exc:
        raise malformed_process("Process file is not valid TOML", hint=str(exc)) from exc


def _flag(table: Mapping[str, Any], name: str, default: bool) -> bool:
    value = table.get(name)
    return value if isinstance(value, bool) else default


def _features_from_table(table: Mapping[str, Any]) -> ProcessFeatures:
    defaults = ProcessFeatures()
    return ProcessFeatures(
        auto_merge=_flag(table, "auto_merge", defaults.auto_merge),
        compare_release=_flag(table, "compare_release", defaults.compare_release),
        issue_project=_flag(table, "issue_project", defaults.issue_project),
        issue_addressed=_flag(table, "issue_addressed", defaults.issue_addressed),
        issue_assigned=_flag(table, "issue_assigned", defaults.issue_assigned),
        review_requests=_flag(table, "review_requests", defaults.review_requests),
        status_notifications=_flag(table, "status_notifications", defaults.status_notifications),
    )


def _optional_str(table: Mapping[str, Any], name: str) -> str | None:
    value = table.get(name)
    return value if isinstance(value, str) else None


def _project_from_table(name: str, table: Mapping[str, Any]) -> ProcessInfo | None:
    if "owner" not in table or "whitelist" not in table or "matrix_room_id" not in table:
        return None

    owner = _optional_str(table, "owner")
    room_id = _optional_str(table, "matrix_room_id")
    if not owner or not room_id:
        return None

    whitelist_raw = table["whitelist"]
    whitelist: tuple[str, ...] = ()
    if isinstance(whitelist_raw, list):
        whitelist = tuple(user for user in whitelist_raw if isinstance(user, str))

    return ProcessInfo(
        project_name=name,
        owner=owner,
        matrix_room_id=room_id,
        delegated_reviewer=_optional_str(table, "delegated_reviewer"),
        whitelist=whitelist,
        backlog=_optional_str(table, "backlog"),
    )


def process_from_table(table: Mapping[str, Any]) -> Iterator[ProcessWrapper]:
    """Yield validated entries from a decoded Process.toml table, in key order.

    Non-table values and project blocks missing `owner`, `whitelist` or `matrix_room_id`
    are skipped.
    """
    for key, value in table.items():
        if not isinstance(value, Mapping):
            logger.debug("Ignoring non-table key %r in process file", key)
            continue
        if key == FEATURES_KEY:
            yield Features(_features_from_table(value))
            continue
        info = _project_from_table(key, value)
        if info is None:
            logger.debug("Dropping incomplete project block %r", key)
            continue
        yield Project(info)


def process_from_contents(content: str | bytes) -> list[ProcessWrapper]:
    """Decode and validate a base64-wrapped Process.toml.

    Raises:
        BotError: code "MalformedProcess" if the document itself cannot be decoded.
    """
    return list(process_from_table(decode_process_document(content)))


def split_process(wrappers: Iterable[ProcessWrapper]) -> tuple[ProcessFeatures, list[ProcessInfo]]:
    """Separate parser output into feature flags and project records.

    The last `[features]` entry wins; defaults apply when there is none.
    """
    features = ProcessFeatures()
    infos: list[ProcessInfo] = []
    for wrapper in wrappers:
        match wrapper:
            case Features(features=found):
                features = found
            case Project(info=info):
                infos.append(info)
    return features, infos


def process_info_map(infos: Iterable[ProcessInfo]) -> dict[str, ProcessInfo]:
    """Index records by project name; a later duplicate replaces an earlier one."""
    return {info.project_name: info for info in infos}


def process_matching_project(processes: Iterable[ProcessInfo], project_name: str) -> ProcessInfo | None:
    return next((p for p in processes if p.project_name == project_name), None)


def process_from_projects(
    project_names: Sequence[str | None],
    processes: Sequence[ProcessInfo],
) -> list[ProcessInfo | None]:
    """Resolve project references against a parsed catalog, keeping positions.

    Unknown or missing references resolve to `None`, so the result can be handed
    straight to `CombinedProcessInfo.combine`.
    """
    return [
        process_matching_project(processes, name) if name is not None else None
        for name in project_names
    ]


def combine_process_info(
    project_names: Sequence[str | None],
    processes: Sequence[ProcessInfo],
) -> CombinedProcessInfo:
    return CombinedProcessInfo.combine(process_from_projects(project_names, processes))


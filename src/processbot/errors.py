"""Error types shared across processbot.

Every failure crossing a module boundary is a `BotError` carrying a stable code.
Messages must never include tokens or private key material.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class BotError(Exception):
    """A classified, log-safe failure.

    Codes in use: Config, MalformedProcess, Db, Directory, GitHub, Forbidden,
    Auth, Network, Matrix.
    """

    code: str
    message: str
    hint: str | None = None
    status_code: int | None = None

    def __str__(self) -> str:
        if self.hint:
            return f"{self.code}: {self.message} ({self.hint})"
        return f"{self.code}: {self.message}"


def github_auth_forbidden(*, status_code: int) -> BotError:
    """Return a Forbidden error for GitHub auth/revocation failures.

    Used when GitHub returns 401/403 (installation revoked/uninstalled, or missing permissions).
    """
    return BotError(
        code="Forbidden",
        message="GitHub App is not authorized for this repository or operation",
        hint="The GitHub App may be uninstalled, revoked, or missing required permissions",
        status_code=status_code,
    )


def malformed_process(message: str, hint: str | None = None) -> BotError:
    """Error for a process document that cannot be decoded at all."""
    return BotError(code="MalformedProcess", message=message, hint=hint)


def db_error(message: str) -> BotError:
    """Error for persistent store failures."""
    return BotError(code="Db", message=message)

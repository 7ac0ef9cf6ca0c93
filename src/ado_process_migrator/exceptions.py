"""
Custom exception classes for the process migration tool.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence

    from .planner import PlanIssue


class MigrationError(Exception):
    """Base exception for migration errors."""


class ConfigError(MigrationError):
    """Raised when a run is invoked with an invalid configuration."""


class FetchError(MigrationError):
    """Raised when a process definition cannot be read (network, auth, malformed file)."""


class NotFoundError(FetchError):
    """Raised when a process or one of its sub-resources does not exist."""


class PlanConflictError(MigrationError):
    """Raised when a plan carries blocking issues and must not be applied."""

    def __init__(self, issues: Sequence[PlanIssue]) -> None:
        self.issues: list[PlanIssue] = list(issues)
        lines = [f"{issue.kind}: {issue.message}" for issue in self.issues]
        super().__init__(f"Plan has {len(self.issues)} blocking issue(s):\n" + "\n".join(lines))


class IdentityResolutionError(MigrationError):
    """Raised when a user or group referenced by a rule or default value is unknown on the target."""


class WriteError(MigrationError):
    """Raised when applying an operation to the target fails."""


class CancelledError(MigrationError):
    """Raised when a run is stopped by the user."""


class AlreadyRunningError(MigrationError):
    """Raised when a run is started while another one is active."""

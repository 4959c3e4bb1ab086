"""Types shared by every source-code hosting backend."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable


class ScmError(Exception):
    """Raised when a hosting backend cannot complete a request."""


class PullRequestStatus(enum.Enum):
    """The state of a pull request as reported by a hosting backend."""

    UNKNOWN = "Unknown"
    SUCCESS = "Success"
    PENDING = "Pending"
    ERROR = "Error"
    MERGED = "Merged"
    CLOSED = "Closed"

    def __str__(self) -> str:
        return self.value


class MergeType(enum.Enum):
    """The ways a pull request can be merged."""

    MERGE = "merge"
    REBASE = "rebase"
    SQUASH = "squash"

    def __str__(self) -> str:
        return self.value


@dataclass
class NewPullRequest:
    """Everything needed to open or update a pull request."""

    title: str = ""
    body: str = ""
    head: str = ""
    base: str = ""
    reviewers: list[str] = field(default_factory=list)
    team_reviewers: list[str] = field(default_factory=list)
    assignees: list[str] = field(default_factory=list)
    draft: bool = False
    labels: list[str] = field(default_factory=list)


@dataclass
class Changes:
    """File changes to be committed through a hosting API."""

    additions: dict[str, bytes] = field(default_factory=dict)
    deletions: list[str] = field(default_factory=list)
    old_hash: str = ""


@runtime_checkable
class Repository(Protocol):
    """A repository on a hosting backend."""

    def clone_url(self) -> str:
        """Return the URL used to clone the repository."""

    def default_branch(self) -> str:
        """Return the name of the default branch."""

    def full_name(self) -> str:
        """Return the name that identifies the repository."""


@runtime_checkable
class PullRequest(Protocol):
    """A pull request (or equivalent) on a hosting backend."""

    status: PullRequestStatus
    url: str


@runtime_checkable
class ChangePusher(Protocol):
    """A backend that can commit changes through its API."""

    def push(
        self,
        repo: Repository,
        commit_message: str,
        changes: Changes,
        feature_branch: str,
        branch_exist: bool,
        force_push: bool,
    ) -> None:
        """Commit the changes to the feature branch of the repository."""
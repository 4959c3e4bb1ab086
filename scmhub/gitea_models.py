"""Pull request and repository records for the Gitea backend."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from .scm import MergeType, PullRequestStatus

_MERGE_STYLES = {
    MergeType.MERGE: "merge",
    MergeType.REBASE: "rebase",
    MergeType.SQUASH: "squash",
}


@dataclass
class GiteaPullRequest:
    """A pull request on Gitea."""

    owner_name: str
    repo_name: str
    branch_name: str
    pr_owner_name: str
    pr_repo_name: str
    index: int
    url: str = ""
    status: PullRequestStatus = PullRequestStatus.UNKNOWN

    def __str__(self) -> str:
        return f"{self.owner_name}/{self.repo_name} #{self.index}"


@dataclass
class GiteaRepository:
    """A repository on Gitea."""

    url: str
    name: str
    owner_name: str
    main_branch: str

    def clone_url(self) -> str:
        return self.url

    def default_branch(self) -> str:
        return self.main_branch

    def full_name(self) -> str:
        return f"{self.owner_name}/{self.name}"


def repo_merge_types(repo: Mapping[str, Any]) -> list[MergeType]:
    """Return the merge types a Gitea repository document allows."""
    allowed = []
    if repo.get("allow_merge_commits"):
        allowed.append(MergeType.MERGE)
    # Rebasing follows the merge-commit setting.
    if repo.get("allow_merge_commits"):
        allowed.append(MergeType.REBASE)
    if repo.get("allow_squash_merge"):
        allowed.append(MergeType.SQUASH)
    return allowed


def gitea_merge_style(merge_type: MergeType | str) -> str:
    """Return the name Gitea's API uses for a merge type."""
    return _MERGE_STYLES[MergeType(merge_type)]
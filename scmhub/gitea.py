"""Gitea backend."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping
from urllib.parse import quote, urlsplit, urlunsplit

import requests

from .gitea_models import GiteaPullRequest, GiteaRepository, gitea_merge_style, repo_merge_types
from .scm import MergeType, NewPullRequest, PullRequestStatus, Repository, ScmError

log = logging.getLogger(__name__)

_PAGE_SIZE = 100
_REVIEW_STATE_REQUEST_REVIEW = "REQUEST_REVIEW"

_COMBINED_STATUS = {
    "pending": PullRequestStatus.PENDING,
    "success": PullRequestStatus.SUCCESS,
    "error": PullRequestStatus.ERROR,
    "failure": PullRequestStatus.ERROR,
}


@dataclass(frozen=True)
class RepositoryReference:
    """Points at one repository by owner and name."""

    owner_name: str
    name: str

    def __str__(self) -> str:
        return f"{self.owner_name}/{self.name}"


def parse_repository_reference(val: str) -> RepositoryReference:
    """Parse a reference written as "ownerName/repoName"."""
    parts = val.split("/")
    if len(parts) != 2:
        raise ValueError(f"could not parse repository reference: {val}")
    return RepositoryReference(owner_name=parts[0], name=parts[1])


@dataclass
class RepositoryListing:
    """Which repositories should be fetched."""

    organizations: list[str] = field(default_factory=list)
    users: list[str] = field(default_factory=list)
    repositories: list[RepositoryReference] = field(default_factory=list)
    topics: list[str] = field(default_factory=list)
    skip_forks: bool = False


def _repo_contains_topic(repo_topics: Iterable[str], wanted: Iterable[str]) -> bool:
    wanted_set = set(wanted)
    return any(topic in wanted_set for topic in repo_topics)


def _diff(existing: list[str], wanted: list[str]) -> tuple[list[str], list[str]]:
    added = [item for item in wanted if item not in existing]
    removed = [item for item in existing if item not in wanted]
    return added, removed


def _merge_type_intersection(configured: Iterable[MergeType], allowed: Iterable[MergeType]) -> list[MergeType]:
    allowed_set = set(allowed)
    return [merge_type for merge_type in configured if merge_type in allowed_set]


def _with_credentials(url: str, username: str, token: str) -> str:
    parts = urlsplit(url)
    host = parts.netloc.rpartition("@")[2]
    userinfo = f"{quote(username, safe='')}:{quote(token, safe='')}"
    return urlunsplit(parts._replace(netloc=f"{userinfo}@{host}"))


def _seg(value: Any) -> str:
    return quote(str(value), safe="")


def _owner(repo: Mapping[str, Any]) -> str:
    return (repo.get("owner") or {}).get("login", "")


class Gitea:
    """A Gitea server."""

    def __init__(
        self,
        token: str,
        base_url: str,
        repo_listing: RepositoryListing | None = None,
        merge_types: Iterable[MergeType] | None = None,
        ssh_auth: bool = False,
        session: requests.Session | None = None,
    ) -> None:
        self.repo_listing = repo_listing if repo_listing is not None else RepositoryListing()
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.merge_types = list(merge_types) if merge_types is not None else list(MergeType)
        self.ssh_auth = ssh_auth
        self._session = session if session is not None else requests.Session()
        self._current_user: dict[str, Any] | None = None
        # Reach the server once so configuration problems surface immediately.
        self._json("GET", "/version")

    # -- HTTP helpers -----------------------------------------------------

    def _send(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        body: Any = None,
    ) -> requests.Response:
        url = f"{self.base_url}/api/v1{path}"
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"token {self.token}"
        try:
            return self._session.request(method, url, params=params, json=body, headers=headers)
        except requests.RequestException as exc:
            raise ScmError(f"{method} {url}: {exc}") from exc

    def _json(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        body: Any = None,
    ) -> Any:
        response = self._send(method, path, params=params, body=body)
        if response.status_code >= 400:
            raise ScmError(f"{response.status_code}: {response.text.strip()}")
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise ScmError(f"{method} {path}: invalid response: {exc}") from exc

    def _paged(self, path: str) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        page = 1
        while True:
            repos = self._json("GET", path, params={"page": page, "limit": _PAGE_SIZE}) or []
            items.extend(repos)
            if len(repos) < _PAGE_SIZE:
                return items
            page += 1

    # -- repositories -----------------------------------------------------

    def get_repositories(self) -> list[GiteaRepository]:
        """Fetch repositories from every configured source."""
        listing = self.repo_listing
        repos: list[GiteaRepository] = []
        for repo in self._get_repositories():
            name = repo.get("full_name", "")
            if listing.skip_forks and repo.get("fork"):
                log.debug("Skipping repository since it's a fork", extra={"repo": name})
                continue
            if listing.topics:
                try:
                    topics = self._get_repo_topics(repo)
                except ScmError as exc:
                    raise ScmError(f"could not fetch repository topics: {exc}") from exc
                if not _repo_contains_topic(topics, listing.topics):
                    log.debug(
                        "Skipping repository since it does not match repository topics",
                        extra={"repo": name},
                    )
                    continue
            repos.append(self._convert_repository(repo))
        return repos

    def _get_repo_topics(self, repo: Mapping[str, Any]) -> list[str]:
        data = self._json("GET", f"/repos/{_seg(_owner(repo))}/{_seg(repo.get('name', ''))}/topics")
        return list((data or {}).get("topics") or [])

    def _get_repositories(self) -> list[dict[str, Any]]:
        listing = self.repo_listing
        all_repos: list[dict[str, Any]] = []
        for org in listing.organizations:
            all_repos.extend(self._paged(f"/orgs/{_seg(org)}/repos"))
        for user in listing.users:
            all_repos.extend(self._paged(f"/users/{_seg(user)}/repos"))
        for ref in listing.repositories:
            all_repos.append(self._get_repo(ref.owner_name, ref.name))

        unique = {repo.get("id"): repo for repo in all_repos}
        return sorted(unique.values(), key=lambda repo: repo.get("id") or 0)

    def _get_repo(self, owner: str, name: str) -> dict[str, Any]:
        return self._json("GET", f"/repos/{_seg(owner)}/{_seg(name)}")

    def _convert_repository(self, repo: Mapping[str, Any]) -> GiteaRepository:
        if self.ssh_auth:
            url = repo.get("ssh_url", "")
        else:
            url = _with_credentials(repo.get("clone_url", ""), "oauth2", self.token)
        return GiteaRepository(
            url=url,
            name=repo.get("name", ""),
            owner_name=_owner(repo),
            main_branch=repo.get("default_branch", ""),
        )

    # -- pull requests ----------------------------------------------------

    def create_pull_request(
        self, repo: Repository, pr_repo: Repository, new_pr: NewPullRequest
    ) -> GiteaPullRequest:
        head = new_pr.head
        if repo.owner_name != pr_repo.owner_name:
            head = f"{pr_repo.owner_name}:{new_pr.head}"

        title = "WIP: " + new_pr.title if new_pr.draft else new_pr.title

        try:
            labels = self._get_label_ids(repo, new_pr.labels)
        except ScmError as exc:
            raise ScmError(f"could not map labels: {exc}") from exc

        base_path = f"/repos/{_seg(repo.owner_name)}/{_seg(repo.name)}"
        try:
            pr = self._json(
                "POST",
                f"{base_path}/pulls",
                body={
                    "head": head,
                    "base": new_pr.base,
                    "title": title,
                    "body": new_pr.body,
                    "assignees": list(new_pr.assignees),
                    "labels": labels,
                },
            )
        except ScmError as exc:
            raise ScmError(f"could not create pull request: {exc}") from exc

        try:
            self._json(
                "POST",
                f"{base_path}/pulls/{pr['number']}/requested_reviewers",
                body={"reviewers": list(new_pr.reviewers)},
            )
        except ScmError as exc:
            raise ScmError(f"could not add reviewer to pull request: {exc}") from exc

        head_repo = (pr.get("head") or {}).get("repo") or {}
        return GiteaPullRequest(
            owner_name=repo.owner_name,
            repo_name=repo.name,
            branch_name=new_pr.head,
            pr_owner_name=_owner(head_repo),
            pr_repo_name=head_repo.get("name", ""),
            index=pr["number"],
            url=pr.get("html_url", ""),
        )

    def _get_label_ids(self, repo: GiteaRepository, label_names: list[str]) -> list[int] | None:
        if not label_names:
            return None
        labels = self._json("GET", f"/repos/{_seg(repo.owner_name)}/{_seg(repo.name)}/labels") or []
        by_name = {label["name"]: label["id"] for label in labels}
        # Labels that do not exist on the repository are skipped.
        return [by_name[name] for name in label_names if name in by_name]

    def _set_reviewers(self, repo: GiteaRepository, new_pr: NewPullRequest, index: int) -> None:
        if new_pr.reviewers is None:
            return

        path = f"/repos/{_seg(repo.owner_name)}/{_seg(repo.name)}/pulls/{index}"
        try:
            reviews = self._json("GET", f"{path}/reviews") or []
        except ScmError as exc:
            raise ScmError(f"could not list existing reviews on pull request: {exc}") from exc

        # Only reviews still in the requested state can be removed.
        existing = [
            (review.get("user") or {}).get("login", "")
            for review in reviews
            if review.get("state") == _REVIEW_STATE_REQUEST_REVIEW
        ]
        added, removed = _diff(existing, list(new_pr.reviewers))

        if added:
            try:
                self._json("POST", f"{path}/requested_reviewers", body={"reviewers": added})
            except ScmError as exc:
                raise ScmError(f"could not add reviewers to pull request: {exc}") from exc
        if removed:
            try:
                self._json("DELETE", f"{path}/requested_reviewers", body={"reviewers": removed})
            except ScmError as exc:
                raise ScmError(f"could not remove reviewers from pull request: {exc}") from exc

    def update_pull_request(
        self, repo: Repository, pull_request: GiteaPullRequest, updated_pr: NewPullRequest
    ) -> GiteaPullRequest:
        title = "WIP: " + updated_pr.title if updated_pr.draft else updated_pr.title

        try:
            labels = self._get_label_ids(repo, updated_pr.labels)
        except ScmError as exc:
            raise ScmError(f"could not map labels: {exc}") from exc

        try:
            pr = self._json(
                "PATCH",
                f"/repos/{_seg(repo.owner_name)}/{_seg(repo.name)}/pulls/{pull_request.index}",
                body={
                    "title": title,
                    "body": updated_pr.body,
                    "assignees": list(updated_pr.assignees),
                    "labels": labels,
                },
            )
        except ScmError as exc:
            raise ScmError(f"could not update pull request: {exc}") from exc

        self._set_reviewers(repo, updated_pr, pr["number"])

        head = pr.get("head") or {}
        head_repo = head.get("repo") or {}
        return GiteaPullRequest(
            owner_name=repo.owner_name,
            repo_name=repo.name,
            branch_name=head.get("ref", ""),
            pr_owner_name=_owner(head_repo),
            pr_repo_name=head_repo.get("name", ""),
            index=pr["number"],
            url=pr.get("html_url", ""),
        )

    def get_pull_requests(self, branch_name: str) -> list[GiteaPullRequest]:
        """Return the pull request of every repository that uses the branch."""
        prs = []
        for repo in self._get_repositories():
            pr = self._get_pull_request(branch_name, _owner(repo), repo.get("name", ""), "all")
            if pr is not None:
                prs.append(self._convert_pull_request(pr))
        return prs

    def _get_pull_request(
        self, branch_name: str, owner: str, repo_name: str, state: str
    ) -> dict[str, Any] | None:
        # The API cannot filter on head branch, so the match happens here.
        prs = self._json(
            "GET",
            f"/repos/{_seg(owner)}/{_seg(repo_name)}/pulls",
            params={"state": state, "sort": "recentupdate"},
        ) or []
        return next((pr for pr in prs if (pr.get("head") or {}).get("ref") == branch_name), None)

    def _convert_pull_request(self, pr: Mapping[str, Any]) -> GiteaPullRequest:
        status = self._pull_request_status(pr)
        base_repo = (pr.get("base") or {}).get("repo") or {}
        head = pr.get("head") or {}
        head_repo = head.get("repo") or {}
        return GiteaPullRequest(
            owner_name=_owner(base_repo),
            repo_name=base_repo.get("name", ""),
            branch_name=head.get("ref", ""),
            pr_owner_name=_owner(head_repo),
            pr_repo_name=head_repo.get("name", ""),
            index=pr["number"],
            url=pr.get("html_url", ""),
            status=status,
        )

    def _pull_request_status(self, pr: Mapping[str, Any]) -> PullRequestStatus:
        if pr.get("merged_at") is not None:
            return PullRequestStatus.MERGED
        if pr.get("state") == "closed":
            return PullRequestStatus.CLOSED

        base_repo = (pr.get("base") or {}).get("repo") or {}
        sha = (pr.get("head") or {}).get("sha", "")
        combined = self._json(
            "GET",
            f"/repos/{_seg(_owner(base_repo))}/{_seg(base_repo.get('name', ''))}"
            f"/commits/{_seg(sha)}/status",
        ) or {}
        if not combined.get("statuses"):
            return PullRequestStatus.SUCCESS
        return _COMBINED_STATUS.get(combined.get("state", ""), PullRequestStatus.UNKNOWN)

    def get_open_pull_request(self, repo: Repository, branch_name: str) -> GiteaPullRequest | None:
        pr = self._get_pull_request(branch_name, repo.owner_name, repo.name, "open")
        if pr is None:
            return None
        return self._convert_pull_request(pr)

    def merge_pull_request(self, pull_request: GiteaPullRequest) -> None:
        pr = pull_request
        try:
            repo = self._get_repo(pr.owner_name, pr.repo_name)
        except ScmError as exc:
            raise ScmError(f"could not fetch {pr.owner_name}/{pr.repo_name} repository: {exc}") from exc

        # Keep the configured order, limited to what the repository allows.
        merge_types = _merge_type_intersection(self.merge_types, repo_merge_types(repo))
        if not merge_types:
            raise ScmError("none of the configured merge types was permitted")

        response = self._send(
            "POST",
            f"/repos/{_seg(pr.owner_name)}/{_seg(pr.repo_name)}/pulls/{pr.index}/merge",
            body={"Do": gitea_merge_style(merge_types[0])},
        )
        if response.status_code != 200:
            raise ScmError(f"could not merge {pr.owner_name}/{pr.repo_name}#{pr.index}")

        self._delete_branch(pr)

    def close_pull_request(self, pull_request: GiteaPullRequest) -> None:
        pr = pull_request
        try:
            self._json(
                "PATCH",
                f"/repos/{_seg(pr.owner_name)}/{_seg(pr.repo_name)}/pulls/{pr.index}",
                body={"state": "closed"},
            )
        except ScmError as exc:
            raise ScmError(f"could not close {pr.owner_name}/{pr.repo_name}#{pr.index}: {exc}") from exc

        self._delete_branch(pr)

    def _delete_branch(self, pr: GiteaPullRequest) -> None:
        response = self._send(
            "DELETE",
            f"/repos/{_seg(pr.pr_owner_name)}/{_seg(pr.pr_repo_name)}/branches/{_seg(pr.branch_name)}",
        )
        if response.status_code != 204:
            raise ScmError(f"could not delete branch after merging {pr.owner_name}/{pr.repo_name}")

    # -- forks ------------------------------------------------------------

    def fork_repository(self, repo: Repository, new_owner: str = "") -> GiteaRepository:
        """Fork a repository; without a new owner it goes to the current user."""
        fork_to = new_owner or self._get_user().get("login", "")

        try:
            existing = self._get_repo(fork_to, repo.name)
        except ScmError:
            existing = None
        if existing is not None:
            return self._convert_repository(existing)

        options = {"organization": new_owner} if new_owner else {}
        created = self._json(
            "POST", f"/repos/{_seg(repo.owner_name)}/{_seg(repo.name)}/forks", body=options
        )
        return self._convert_repository(created)

    def _get_user(self) -> dict[str, Any]:
        if self._current_user is None:
            self._current_user = self._json("GET", "/user")
        return self._current_user
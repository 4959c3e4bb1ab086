"""Gerrit backend: changes are treated as pull requests."""

from __future__ import annotations

import getpass
import hashlib
import json
import socket
import time
from dataclasses import dataclass
from typing import Any, Mapping
from urllib.parse import quote, urlsplit, urlunsplit

import requests

from .scm import NewPullRequest, PullRequestStatus, Repository, ScmError

FOOTER_BRANCH = "MultiGitter-Branch"
FOOTER_CHANGE_ID = "Change-Id"
QUERY_CHANGES_LIMIT = 100
QUERY_PROJECTS_LIMIT = 100
REF_HEADS_PREFIX = "refs/heads/"

_MAGIC_PREFIX = ")]}'"

_STATUS_BY_NAME = {
    "NEW": PullRequestStatus.PENDING,
    "MERGED": PullRequestStatus.MERGED,
    "ABANDONED": PullRequestStatus.CLOSED,
}


@dataclass
class Change:
    """A Gerrit change."""

    id: str
    project: str
    branch: str
    number: int
    change_id: str
    status: PullRequestStatus
    url: str

    def __str__(self) -> str:
        return f"{self.number}: {self.project}"


@dataclass
class GerritRepository:
    """A Gerrit project."""

    url: str
    name: str
    main_branch: str

    def clone_url(self) -> str:
        return self.url

    def default_branch(self) -> str:
        return self.main_branch

    def full_name(self) -> str:
        return self.name


def convert_change(change_info: Mapping[str, Any], base_url: str) -> Change:
    """Build a Change from a Gerrit ChangeInfo document."""
    if change_info.get("submittable"):
        status = PullRequestStatus.SUCCESS
    else:
        status = _STATUS_BY_NAME.get(change_info.get("status", ""), PullRequestStatus.UNKNOWN)

    project = change_info.get("project", "")
    number = change_info.get("_number", 0)
    return Change(
        id=change_info.get("id", ""),
        project=project,
        branch=change_info.get("branch", ""),
        number=number,
        change_id=change_info.get("change_id", ""),
        status=status,
        url=f"{base_url}/c/{project}/+/{number}",
    )


def generate_change_id(commit_message: str) -> str:
    """Generate a new Change-Id value for a commit message."""
    try:
        username = getpass.getuser()
    except Exception:  # getuser raises whatever the platform lookup raises
        username = ""
    digest = hashlib.sha1()  # noqa: S324 - identifier, not security
    digest.update(socket.gethostname().encode())
    digest.update(username.encode())
    digest.update(str(time.time_ns()).encode())
    digest.update(commit_message.encode())
    return "I" + digest.hexdigest()


def _decode(text: str) -> Any:
    if text.startswith(_MAGIC_PREFIX):
        text = text.partition("\n")[2]
    text = text.strip()
    if not text:
        return None
    return json.loads(text)


class GerritClient:
    """A minimal client for the Gerrit REST API."""

    def __init__(
        self,
        base_url: str,
        username: str,
        token: str,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._auth = requests.auth.HTTPBasicAuth(username, token)
        self._session = session if session is not None else requests.Session()

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        body: Any = None,
    ) -> Any:
        url = f"{self.base_url}/a/{path}"
        try:
            response = self._session.request(
                method,
                url,
                params=params,
                json=body,
                auth=self._auth,
                headers={"Accept": "application/json"},
            )
        except requests.RequestException as exc:
            raise ScmError(f"{method} {url}: {exc}") from exc
        if response.status_code >= 400:
            raise ScmError(
                f"{method} {url}: status code {response.status_code}: {response.text.strip()}"
            )
        try:
            return _decode(response.text)
        except ValueError as exc:
            raise ScmError(f"{method} {url}: invalid response: {exc}") from exc

    def list_projects(self, regex: str, skip: int, limit: int) -> dict[str, dict[str, Any]]:
        """List code projects, keyed by project name."""
        params: dict[str, Any] = {"d": "true", "type": "CODE", "S": str(skip), "n": limit}
        if regex:
            params["r"] = regex
        return self._request("GET", "projects/", params=params) or {}

    def query_changes(
        self, query: str, start: int, limit: int, additional_fields: list[str]
    ) -> list[dict[str, Any]]:
        """Query changes; "+" in the query separates search operators."""
        path = f"changes/?q={quote(query, safe='+:=/')}"
        params = {"S": start, "n": limit, "o": list(additional_fields)}
        return self._request("GET", path, params=params) or []

    def abandon_change(self, change_id: str) -> dict[str, Any]:
        return self._request("POST", f"changes/{quote(change_id, safe='')}/abandon", body={})

    def submit_change(self, change_id: str) -> dict[str, Any]:
        return self._request("POST", f"changes/{quote(change_id, safe='')}/submit", body={})

    def get_head(self, project_name: str) -> str:
        """Return the ref that HEAD of a project points to."""
        return self._request("GET", f"projects/{quote(project_name, safe='')}/HEAD") or ""


def _url_with_credentials(base_url: str, username: str, token: str, path: str) -> str:
    parts = urlsplit(base_url)
    host = parts.netloc.rpartition("@")[2]
    userinfo = f"{quote(username, safe='')}:{quote(token, safe='')}"
    return urlunsplit(parts._replace(netloc=f"{userinfo}@{host}", path=quote(path, safe="/")))


class Gerrit:
    """A Gerrit server, with changes standing in for pull requests."""

    def __init__(
        self,
        username: str,
        token: str,
        base_url: str,
        repo_search: str = "",
        client: Any = None,
    ) -> None:
        self.username = username
        self.token = token
        self.base_url = base_url
        self.repo_search = repo_search
        self._client = client if client is not None else GerritClient(base_url, username, token)

    def get_repositories(self) -> list[GerritRepository]:
        repositories: list[GerritRepository] = []
        skip = 0
        while True:
            try:
                repos, more_projects = self._get_repositories_with_skip(skip)
            except ScmError as exc:
                raise ScmError(f"failed to get repositories: {exc}") from exc
            repositories.extend(repos)
            if not more_projects:
                break
            skip += QUERY_PROJECTS_LIMIT

        repositories.sort(key=lambda repo: repo.name)
        return repositories

    def _get_repositories_with_skip(self, skip: int) -> tuple[list[GerritRepository], bool]:
        try:
            projects = self._client.list_projects(self.repo_search, skip, QUERY_PROJECTS_LIMIT)
        except ScmError as exc:
            raise ScmError(f"failed to list projects: {exc}") from exc

        repositories = []
        more_projects = False
        for name, project in projects.items():
            if project.get("state") == "ACTIVE":
                repositories.append(self._convert_repo(name))
            # Project order is not guaranteed, so any project may carry the flag.
            if project.get("_more_projects"):
                more_projects = True
        return repositories, more_projects

    def _convert_repo(self, name: str) -> GerritRepository:
        return GerritRepository(
            url=_url_with_credentials(self.base_url, self.username, self.token, "/a/" + name),
            name=name,
            main_branch=self._get_default_branch(name),
        )

    def _get_default_branch(self, project_name: str) -> str:
        try:
            head_ref = self._client.get_head(project_name)
        except ScmError as exc:
            raise ScmError(f"failed to get HEAD branch for project {project_name}: {exc}") from exc
        return head_ref.removeprefix(REF_HEADS_PREFIX)

    def create_pull_request(
        self, repo: Repository, pr_repo: Repository, new_pr: NewPullRequest
    ) -> Change:
        # Pushing to refs/for/<base> creates the change; it only has to be looked up.
        return self._get_change(repo, new_pr.head)

    def update_pull_request(
        self, repo: Repository, pull_request: Change, updated_pr: NewPullRequest
    ) -> Change:
        return self._get_change(repo, updated_pr.head)

    def get_pull_requests(self, branch_name: str) -> list[Change]:
        project_names = {repo.name for repo in self.get_repositories()}

        prs: list[Change] = []
        start = 0
        while True:
            changes = self._query_changes(branch_name, [], start, QUERY_CHANGES_LIMIT)
            prs.extend(
                convert_change(info, self.base_url)
                for info in changes
                if info.get("project") in project_names
            )
            # The last change returned tells whether more remain.
            if not changes or not changes[-1].get("_more_changes"):
                break
            start += QUERY_CHANGES_LIMIT

        prs.sort(key=lambda change: change.project)
        return prs

    def get_open_pull_request(self, repo: Repository, branch_name: str) -> Change | None:
        changes = self._query_changes(
            branch_name, ["project:" + repo.full_name(), "is:open"], 0, 5
        )
        if not changes:
            return None
        if len(changes) > 1:
            raise ScmError(
                f"More than one open change for branch {branch_name} in project {repo.full_name()}"
            )
        return convert_change(changes[0], self.base_url)

    def merge_pull_request(self, pr: Change) -> None:
        self._client.submit_change(pr.id)

    def close_pull_request(self, pr: Change) -> None:
        self._client.abandon_change(pr.id)

    def fork_repository(self, repo: Repository, new_owner: str) -> GerritRepository:
        """Gerrit has no forks; always raises ScmError naming the requested fork."""
        target_owner = new_owner or self.username
        requested = f"{repo.full_name()} to {target_owner}" if target_owner else repo.full_name()
        raise ScmError(f"Forking repositories is not supported in Gerrit (requested: {requested})")

    def _get_change(self, repo: Repository, branch_name: str) -> Change:
        pr = self.get_open_pull_request(repo, branch_name)
        if pr is None:
            raise ScmError(
                f"Unable to find any open change related to branch {branch_name} "
                f"in project {repo.full_name()}"
            )
        return pr

    def _query_changes(
        self, branch_name: str, filters: list[str], start: int, limit: int
    ) -> list[dict[str, Any]]:
        query = "+".join([f"footer:{FOOTER_BRANCH}={branch_name}", *filters])
        try:
            return self._client.query_changes(query, start, limit, ["SUBMITTABLE"])
        except ScmError as exc:
            raise ScmError(f"failed to query changes: '[{' '.join(filters)}]': {exc}") from exc

    def enhance_commit(self, repo: Repository, branch_name: str, commit_message: str) -> str:
        """Add the branch and Change-Id footers Gerrit needs to a commit message."""
        pr = self.get_open_pull_request(repo, branch_name)
        change_id = pr.change_id if pr is not None else generate_change_id(commit_message)
        return (
            f"{commit_message}\n\n{FOOTER_BRANCH}: {branch_name}"
            f"\n{FOOTER_CHANGE_ID}: {change_id}"
        )

    def feature_branch_exist(self, repo: Repository, branch_name: str) -> bool:
        return self.get_open_pull_request(repo, branch_name) is not None

    def remote_reference(
        self, base_branch: str, feature_branch: str, skip_pull_request: bool, push_only: bool
    ) -> str:
        if not skip_pull_request and not push_only:
            return "refs/for/" + base_branch
        return REF_HEADS_PREFIX + feature_branch
"""Bitbucket Server (the self-hosted edition of Bitbucket) backend."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterator, Mapping
from urllib.parse import quote, urlsplit, urlunsplit

import requests

from .scm import NewPullRequest, PullRequestStatus, Repository, ScmError

CLONE_HTTP_TYPE = "http"
CLONE_SSH_TYPE = "ssh"
STATE_MERGED = "MERGED"
STATE_DECLINED = "DECLINED"

_PAGE_LIMIT = 25
_NO_SUCH_PULL_REQUEST = "com.atlassian.bitbucket.pull.NoSuchPullRequestException"


@dataclass(frozen=True)
class RepositoryReference:
    """Points at one repository by project key and name."""

    project_key: str
    name: str

    def __str__(self) -> str:
        return f"{self.project_key}/{self.name}"


def parse_repository_reference(val: str) -> RepositoryReference:
    """Parse a reference written as "projectKey/repoName"."""
    parts = val.split("/")
    if len(parts) != 2:
        raise ValueError(f"could not parse repository reference: {val}")
    return RepositoryReference(project_key=parts[0], name=parts[1])


@dataclass
class RepositoryListing:
    """Which repositories should be fetched."""

    projects: list[str] = field(default_factory=list)
    users: list[str] = field(default_factory=list)
    repositories: list[RepositoryReference] = field(default_factory=list)


@dataclass
class BitbucketServerPullRequest:
    """A pull request on Bitbucket Server."""

    project: str
    repo_name: str
    branch_name: str
    pr_project: str
    pr_repo_name: str
    number: int
    version: int = 0
    url: str = ""
    status: PullRequestStatus = PullRequestStatus.UNKNOWN

    def __str__(self) -> str:
        return f"{self.project}/{self.repo_name} #{self.number}"


@dataclass
class BitbucketServerRepository:
    """A repository on Bitbucket Server."""

    name: str
    project: str
    main_branch: str
    url: str

    def clone_url(self) -> str:
        return self.url

    def default_branch(self) -> str:
        return self.main_branch

    def full_name(self) -> str:
        return f"{self.project}/{self.name}"


def find_link_type(links: list[Mapping[str, Any]], clone_type: str) -> str:
    """Return the href of the first clone link of the given type, or ""."""
    wanted = clone_type.casefold()
    return next(
        (link.get("href", "") for link in links if link.get("name", "").casefold() == wanted),
        "",
    )


def _join_path(*pieces: str) -> str:
    segments = [seg for piece in pieces for seg in piece.split("/") if seg]
    return "/" + "/".join(segments)


def _with_credentials(url: str, username: str, token: str) -> str:
    parts = urlsplit(url)
    host = parts.netloc.rpartition("@")[2]
    userinfo = f"{quote(username, safe='')}:{quote(token, safe='')}"
    return urlunsplit(parts._replace(netloc=f"{userinfo}@{host}"))


def _seg(value: Any) -> str:
    return quote(str(value), safe="")


def _project_key(repo: Mapping[str, Any]) -> str:
    return (repo.get("project") or {}).get("key", "")


def _self_href(pr: Mapping[str, Any]) -> str:
    links = (pr.get("links") or {}).get("self") or [{}]
    return links[0].get("href", "")


def _ref_repo(pr: Mapping[str, Any], ref: str) -> Mapping[str, Any]:
    return (pr.get(ref) or {}).get("repository") or {}


def _new_pull_request(pr: Mapping[str, Any]) -> BitbucketServerPullRequest:
    to_repo = _ref_repo(pr, "toRef")
    from_repo = _ref_repo(pr, "fromRef")
    return BitbucketServerPullRequest(
        project=_project_key(to_repo),
        repo_name=to_repo.get("slug", ""),
        branch_name=(pr.get("fromRef") or {}).get("displayId", ""),
        pr_project=_project_key(from_repo),
        pr_repo_name=from_repo.get("slug", ""),
        number=pr.get("id", 0),
        version=pr.get("version", 0),
        url=_self_href(pr),
    )


class BitbucketServer:
    """A Bitbucket Server instance."""

    def __init__(
        self,
        username: str,
        token: str,
        base_url: str,
        insecure: bool = False,
        ssh_auth: bool = False,
        repo_listing: RepositoryListing | None = None,
        session: requests.Session | None = None,
    ) -> None:
        if not token.strip():
            raise ValueError("token is empty")
        if not base_url.strip():
            raise ValueError("base url is empty")

        parts = urlsplit(base_url)
        path = parts.path
        if not path.endswith("/rest"):
            path = _join_path(path, "rest")
        self.base_url = urlunsplit(parts._replace(path=path))

        self.username = username
        self.token = token
        self.ssh_auth = ssh_auth
        self.repo_listing = repo_listing if repo_listing is not None else RepositoryListing()
        self._session = session if session is not None else requests.Session()
        if insecure:
            self._session.verify = False

    # -- HTTP helpers -----------------------------------------------------

    def _api(self, *segments: Any) -> str:
        return f"{self.base_url}/api/1.0/" + "/".join(_seg(s) for s in segments)

    def _send(
        self,
        method: str,
        url: str,
        *,
        params: Mapping[str, Any] | None = None,
        body: Any = None,
    ) -> requests.Response:
        headers = {"Accept": "application/json", "Authorization": f"Bearer {self.token}"}
        try:
            return self._session.request(method, url, params=params, json=body, headers=headers)
        except requests.RequestException as exc:
            raise ScmError(f"{method} {url}: {exc}") from exc

    def _json(
        self,
        method: str,
        url: str,
        *,
        params: Mapping[str, Any] | None = None,
        body: Any = None,
    ) -> Any:
        response = self._send(method, url, params=params, body=body)
        if response.status_code >= 400:
            raise ScmError(f"status code {response.status_code}: {response.text.strip()}")
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise ScmError(f"{method} {url}: invalid response: {exc}") from exc

    def _paged(self, url: str) -> Iterator[dict[str, Any]]:
        params: dict[str, Any] = {"start": 0, "limit": _PAGE_LIMIT}
        while True:
            page = self._json("GET", url, params=params) or {}
            yield from page.get("values") or []
            if page.get("isLastPage", True):
                return
            params["start"] = page.get("nextPageStart", 0)

    # -- repositories -----------------------------------------------------

    def get_repositories(self) -> list[BitbucketServerRepository]:
        """Fetch the configured repositories together with their default branches."""
        repositories = []
        for repo in self._get_repositories():
            default_branch = self._json(
                "GET", self._api("projects", _project_key(repo), "repos", repo.get("slug", ""),
                                 "branches", "default")
            ) or {}
            repositories.append(self._convert_repository(repo, default_branch))
        return repositories

    def _get_repositories(self) -> list[dict[str, Any]]:
        listing = self.repo_listing
        all_repos: list[dict[str, Any]] = []
        for project in listing.projects:
            all_repos.extend(self._paged(self._api("projects", project, "repos")))
        for user in listing.users:
            all_repos.extend(self._paged(self._api("projects", user, "repos")))
        for ref in listing.repositories:
            all_repos.append(self._json("GET", self._api("projects", ref.project_key, "repos", ref.name)))

        unique = {repo.get("id"): repo for repo in all_repos}
        return sorted(unique.values(), key=lambda repo: repo.get("id") or 0)

    def _convert_repository(
        self, repo: Mapping[str, Any], default_branch: Mapping[str, Any]
    ) -> BitbucketServerRepository:
        links = (repo.get("links") or {}).get("clone") or []
        clone_type = CLONE_SSH_TYPE if self.ssh_auth else CLONE_HTTP_TYPE
        href = find_link_type(links, clone_type)
        if not href:
            raise ScmError(
                f"unable to find clone url for repository {repo.get('name', '')} "
                f"using clone type {clone_type}"
            )
        url = href if self.ssh_auth else _with_credentials(href, self.username, self.token)
        return BitbucketServerRepository(
            name=repo.get("slug", ""),
            project=_project_key(repo),
            main_branch=default_branch.get("displayId", ""),
            url=url,
        )

    # -- pull requests ----------------------------------------------------

    def create_pull_request(
        self, repo: Repository, pr_repo: Repository, new_pr: NewPullRequest
    ) -> BitbucketServerPullRequest:
        reviewers = [
            {"user": self._json("GET", self._api("users", username))}
            for username in new_pr.reviewers
        ]
        body = {
            "title": new_pr.title,
            "description": new_pr.body,
            "reviewers": reviewers,
            "fromRef": {
                "id": f"refs/heads/{new_pr.head}",
                "repository": {"slug": pr_repo.name, "project": {"key": pr_repo.project}},
            },
            "toRef": {
                "id": f"refs/heads/{new_pr.base}",
                "repository": {"slug": repo.name, "project": {"key": repo.project}},
            },
        }
        try:
            created = self._json(
                "POST", self._api("projects", repo.project, "repos", repo.name, "pull-requests"),
                body=body,
            )
        except ScmError as exc:
            raise ScmError(f"unable to create pull request for repository {repo.name}: {exc}") from exc
        return _new_pull_request(created or {})

    def update_pull_request(
        self,
        repo: Repository,
        pull_request: BitbucketServerPullRequest,
        updated_pr: NewPullRequest,
    ) -> BitbucketServerPullRequest:
        """Updating is not supported; the pull request is returned unchanged."""
        return pull_request

    def get_pull_requests(self, branch_name: str) -> list[BitbucketServerPullRequest]:
        prs = []
        for repo in self._get_repositories():
            project, slug = _project_key(repo), repo.get("slug", "")
            pr = self._get_pull_request(branch_name, project, slug)
            if pr is not None:
                prs.append(self._convert_pull_request(project, slug, branch_name, pr))
        return prs

    def _convert_pull_request(
        self, project: str, repo_name: str, branch_name: str, pr: Mapping[str, Any]
    ) -> BitbucketServerPullRequest:
        status = self._pull_request_status(project, repo_name, pr)
        from_repo = _ref_repo(pr, "fromRef")
        return BitbucketServerPullRequest(
            project=project,
            repo_name=repo_name,
            branch_name=branch_name,
            pr_project=_project_key(from_repo),
            pr_repo_name=from_repo.get("slug", ""),
            number=pr.get("id", 0),
            version=pr.get("version", 0),
            url=_self_href(pr),
            status=status,
        )

    def _pull_request_status(
        self, project: str, repo_name: str, pr: Mapping[str, Any]
    ) -> PullRequestStatus:
        state = pr.get("state")
        if state == STATE_MERGED:
            return PullRequestStatus.MERGED
        if state == STATE_DECLINED:
            return PullRequestStatus.CLOSED

        merge = self._json(
            "GET",
            self._api("projects", project, "repos", repo_name, "pull-requests", pr.get("id", 0), "merge"),
        ) or {}
        if not merge.get("canMerge"):
            return PullRequestStatus.PENDING
        if merge.get("conflicted"):
            return PullRequestStatus.ERROR
        return PullRequestStatus.SUCCESS

    def _get_pull_request(
        self, branch_name: str, project: str, repo_name: str
    ) -> dict[str, Any] | None:
        url = self._api("projects", project, "repos", repo_name, "pull-requests")
        pull_requests = list(self._paged(url))
        return next(
            (pr for pr in pull_requests if (pr.get("fromRef") or {}).get("displayId") == branch_name),
            None,
        )

    def get_open_pull_request(
        self, repo: Repository, branch_name: str
    ) -> BitbucketServerPullRequest | None:
        pr = self._get_pull_request(branch_name, repo.project, repo.name)
        if pr is None:
            return None
        return self._convert_pull_request(repo.project, repo.name, branch_name, pr)

    def merge_pull_request(self, pr: BitbucketServerPullRequest) -> None:
        url = self._api("projects", pr.project, "repos", pr.repo_name, "pull-requests", pr.number)
        try:
            current = self._json("GET", url) or {}
        except ScmError as exc:
            if _NO_SUCH_PULL_REQUEST in str(exc):
                return
            raise

        if not current.get("open"):
            return

        self._json("POST", f"{url}/merge", params={"version": current.get("version", 0)})
        self._delete_branch(pr)

    def close_pull_request(self, pr: BitbucketServerPullRequest) -> None:
        url = self._api("projects", pr.project, "repos", pr.repo_name, "pull-requests", pr.number)
        self._json("DELETE", url, body={"version": int(pr.version)})
        self._delete_branch(pr)

    def _delete_branch(self, pr: BitbucketServerPullRequest) -> None:
        url = (
            f"{self.base_url}/branch-utils/1.0/projects/{_seg(pr.project)}"
            f"/repos/{_seg(pr.repo_name)}/branches"
        )
        body = {"name": f"refs/heads/{pr.branch_name}", "dryRun": False}
        response = self._send("DELETE", url, body=body)
        if response.status_code >= 400:
            raise ScmError(
                f"unable to delete branch: status code {response.status_code}: {response.text}"
            )

    # -- forks ------------------------------------------------------------

    def fork_repository(self, repo: Repository, new_owner: str = "") -> BitbucketServerRepository:
        raise ScmError("forking not implemented for bitbucket server")
# scmhub

One Python interface for the code-hosting services a bulk-change tool has to
work with: Gerrit, Gitea and Bitbucket Server. Each client can list the
repositories it is set up for. It can also find the pull request that belongs
to a feature branch and open, update, merge and close pull requests.
Gitea can also fork repositories.

## Installing

```
pip install scmhub
```

The only runtime dependency is `requests`.

## Shared types

`scmhub.scm` holds what every client works with:

- `Repository` and `PullRequest` are the shapes the clients return. A
  repository gives `clone_url()`, `default_branch()` and `full_name()`. A pull
  request has a `status` and a `url`.
- `NewPullRequest` describes a pull request to create or update. It holds the
  title, body, head and base branch, reviewers, team reviewers, assignees,
  labels and the draft flag.
- `PullRequestStatus` is one of `UNKNOWN`, `SUCCESS`, `PENDING`, `ERROR`,
  `MERGED` or `CLOSED`.
- `MergeType` is `MERGE`, `REBASE` or `SQUASH`.
- `Changes` and `ChangePusher` describe commits made through an API rather
  than through git.
- `ScmError` is raised when a service reports a failure.

The pull-request methods of a client expect the repository and pull-request
objects that the same client returned.

## Gitea

```python
from scmhub.gitea import Gitea, RepositoryListing, parse_repository_reference
from scmhub.scm import MergeType

listing = RepositoryListing(
    organizations=["my-org"],
    repositories=[parse_repository_reference("someone/some-repo")],
    topics=["backend"],
    skip_forks=True,
)
gitea = Gitea("token", "https://gitea.example.com", listing, [MergeType.SQUASH], False)

for repo in gitea.get_repositories():
    print(repo.full_name(), repo.default_branch())

for pr in gitea.get_pull_requests("my-feature-branch"):
    print(pr, pr.status)
```

- The constructor contacts the server once, so a wrong URL or token fails at
  once.
- Repositories from organizations, users and explicit references are merged
  without duplicates and sorted by id.
- With `ssh_auth` the SSH URL is used for cloning. Otherwise the HTTPS URL is
  used, carrying the token.
- A draft pull request gets a `WIP: ` title prefix.
- Labels that do not exist on the repository are skipped.
- `merge_pull_request` uses the first configured merge type that the
  repository allows. It then deletes the feature branch, and so does
  `close_pull_request`.
- `fork_repository(repo, new_owner)` returns an existing fork if there is
  one. With an empty owner, the repository is forked to the current user.
- `parse_repository_reference("owner/repo")` raises `ValueError` for anything
  that is not exactly two parts.
- `scmhub.gitea_models` holds `GiteaRepository` and `GiteaPullRequest`. It
  also holds `repo_merge_types()`, which reads the merge types a repository
  allows, and `gitea_merge_style()`.

## Gerrit

```python
from scmhub.gerrit import Gerrit

gerrit = Gerrit("user", "token", "https://gerrit.example.com", repo_search="^platform/")
```

- Gerrit lists active code projects that match the regular expression. Each
  project's default branch is read from its `HEAD`.
- Changes stand in for pull requests. A change is created by pushing, so
  `remote_reference(base, feature, skip_pull_request, push_only)` gives the
  ref to push to. This is `refs/for/<base>`, or `refs/heads/<feature>` when
  pull requests are skipped or only a push is wanted.
- `enhance_commit()` adds a `MultiGitter-Branch` footer and a `Change-Id` to a
  commit message. An open change for the branch keeps its own Change-Id.
  Otherwise `generate_change_id()` makes a new one.
- `create_pull_request` and `update_pull_request` look up the open change for
  the head branch. They raise `ScmError` if there is none.
- `merge_pull_request` submits a change and `close_pull_request` abandons it.
- `fork_repository` always raises `ScmError`.
- `GerritClient` is the small REST client used underneath. It takes an
  optional `requests.Session`. Any object with the same methods can be passed
  to `Gerrit` as `client`.

## Bitbucket Server

```python
from scmhub.bitbucket_server import BitbucketServer, RepositoryListing, parse_repository_reference

listing = RepositoryListing(projects=["PROJ"], repositories=[parse_repository_reference("OTHER/repo")])
server = BitbucketServer("user", "token", "https://bitbucket.example.com", repo_listing=listing)
```

- `/rest` is appended to the base URL when it is missing.
- An empty token or base URL raises `ValueError`.
- `insecure=True` turns off TLS certificate checks.
- A pull request's status comes from its state. For an open pull request it
  also depends on whether the server says it can be merged.
- Merging and closing delete the feature branch afterwards. Merging a pull
  request that no longer exists or is no longer open does nothing.
- `update_pull_request` returns the pull request unchanged.
- `fork_repository` raises `ScmError`.

`Gitea` and `BitbucketServer` take an optional `requests.Session`, so
retries, proxies or logging can be set up once and shared.

## What it does not do

- There is no client for Bitbucket Cloud.
- There is no command-line tool.
- Nothing here clones repositories, runs scripts or pushes with git. The
  package only talks to the hosting services' APIs.

## Running the tests

```
pip install -e ".[test]"
pytest
```
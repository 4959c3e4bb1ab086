import pytest

from scmhub.scm import (
    Changes,
    MergeType,
    NewPullRequest,
    PullRequestStatus,
    ScmError,
)


@pytest.mark.parametrize(
    "name,expected",
    [
        ("Pending", PullRequestStatus.PENDING),
        ("Merged", PullRequestStatus.MERGED),
        ("Closed", PullRequestStatus.CLOSED),
    ],
)
def test_status_display_names(name, expected):
    status = PullRequestStatus(name)
    assert status is expected
    assert str(status) == name


@pytest.mark.parametrize("status", list(PullRequestStatus))
def test_status_round_trips_through_value(status):
    assert PullRequestStatus(str(status)) is status


@pytest.mark.parametrize("merge_type", list(MergeType))
def test_merge_type_round_trips_through_value(merge_type):
    assert MergeType(str(merge_type)) is merge_type


def test_unknown_merge_type_is_rejected():
    with pytest.raises(ValueError):
        MergeType("fast-forward")


def test_new_pull_request_lists_are_independent():
    first = NewPullRequest(title="a")
    second = NewPullRequest(title="b")
    first.reviewers.append("reviewer1")
    first.labels.append("label1")
    assert second.reviewers == []
    assert second.labels == []
    assert second.draft is False


def test_changes_defaults_are_independent():
    first = Changes()
    first.additions["test.txt"] = b"i like bananas"
    second = Changes()
    assert second.additions == {}
    assert second.deletions == []
    assert second.old_hash == ""


def test_scm_error_carries_message():
    error = ScmError("could not find pull request")
    assert str(error) == "could not find pull request"
    assert isinstance(error, Exception)
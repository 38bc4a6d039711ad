"""Issue trackers that produce external-source snapshots for task directories."""

from zen.auth.manager import AuthManager
from zen.errors import InvalidArgument
from zen.trackers.base import IssueTracker, save_snapshot, snapshot_path
from zen.trackers.github import GitHubTracker
from zen.trackers.jira import JiraTracker
from zen.trackers.linear import LinearTracker

TRACKERS: dict[str, type[IssueTracker]] = {
    "github": GitHubTracker,
    "jira": JiraTracker,
    "linear": LinearTracker,
}


def get_tracker(source: str, auth: AuthManager, timeout: float = 30) -> IssueTracker:
    try:
        tracker_cls = TRACKERS[source]
    except KeyError:
        valid = ", ".join(sorted(TRACKERS))
        raise InvalidArgument(f"unknown issue tracker '{source}'. Valid: {valid}") from None
    return tracker_cls(auth, timeout=timeout)


__all__ = [
    "TRACKERS",
    "GitHubTracker",
    "IssueTracker",
    "JiraTracker",
    "LinearTracker",
    "get_tracker",
    "save_snapshot",
    "snapshot_path",
]

"""GitHub REST API v3 issue tracker."""

import re
from datetime import datetime, timezone

from zen.auth.manager import AuthManager
from zen.errors import InvalidArgument
from zen.models import ExternalSnapshot, SnapshotTaskData
from zen.trackers.base import IssueTracker

_ISSUE_ID = re.compile(r"^(?P<owner>[\w.-]+)/(?P<repo>[\w.-]+)#(?P<number>\d+)$")


def parse_issue_id(issue_id: str, default_repo: str | None = None) -> tuple[str, str, int]:
    """Parse ``owner/repo#123``, or a bare ``123`` against ``default_repo``."""
    match = _ISSUE_ID.match(issue_id.strip())
    if match:
        return match["owner"], match["repo"], int(match["number"])
    if issue_id.strip().isdigit() and default_repo and "/" in default_repo:
        owner, repo = default_repo.split("/", 1)
        return owner, repo, int(issue_id)
    raise InvalidArgument(f"cannot parse GitHub issue '{issue_id}'; expected owner/repo#number")


class GitHubTracker(IssueTracker):
    source = "github"

    def __init__(self, auth: AuthManager, timeout: float = 30, default_repo: str | None = None) -> None:
        super().__init__(auth, timeout)
        self._default_repo = default_repo

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        headers["Accept"] = "application/vnd.github+json"
        headers["X-GitHub-Api-Version"] = "2022-11-28"
        return headers

    def fetch(self, external_id: str) -> ExternalSnapshot:
        owner, repo, number = parse_issue_id(external_id, self._default_repo)
        base = self.descriptor.resolve_base_url()
        node = self._request("GET", f"{base}/repos/{owner}/{repo}/issues/{number}")

        labels = [label["name"] for label in node.get("labels", []) if isinstance(label, dict)]
        assignees = node.get("assignees") or []
        # GitHub has no native issue type or priority; labels stand in for both
        issue_type = next((label for label in labels if label.lower() in ("bug", "story", "epic", "spike")), "")
        return ExternalSnapshot(
            external_system=self.source,
            external_id=f"{owner}/{repo}#{number}",
            fetched_at=datetime.now(timezone.utc),
            task_data=SnapshotTaskData(
                title=node.get("title", ""),
                description=node.get("body"),
                type=issue_type,
                status=node.get("state", ""),
                priority=None,
                assignee=assignees[0]["login"] if assignees else None,
                team=f"{owner}/{repo}",
                labels=labels,
                external_url=node.get("html_url", ""),
            ),
            raw_data=node,
        )

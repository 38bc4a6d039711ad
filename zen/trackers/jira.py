"""Jira Cloud REST API v3 issue tracker."""

import re
from datetime import datetime, timezone

from zen.errors import InvalidArgument
from zen.models import ExternalSnapshot, SnapshotTaskData
from zen.trackers.base import IssueTracker

_ISSUE_KEY = re.compile(r"^[A-Z][A-Z0-9_]*-\d+$")
_FIELDS = "summary,description,status,priority,issuetype,assignee,project,labels"


def _text(node: object) -> str | None:
    """Flatten an Atlassian Document Format body to plain text."""
    if node is None:
        return None
    if isinstance(node, str):
        return node
    if isinstance(node, dict):
        if node.get("type") == "text":
            return node.get("text", "")
        parts = [_text(child) or "" for child in node.get("content", [])]
        separator = "\n" if node.get("type") == "doc" else ""
        return separator.join(parts)
    return str(node)


class JiraTracker(IssueTracker):
    source = "jira"

    def fetch(self, external_id: str) -> ExternalSnapshot:
        key = external_id.strip().upper()
        if not _ISSUE_KEY.match(key):
            raise InvalidArgument(f"'{external_id}' is not a Jira issue key (e.g. PROJ-123)")

        base = self.descriptor.resolve_base_url()
        raw = self._request("GET", f"{base}/rest/api/3/issue/{key}", params={"fields": _FIELDS})
        fields = raw.get("fields") or {}

        return ExternalSnapshot(
            external_system=self.source,
            external_id=raw.get("key", key),
            fetched_at=datetime.now(timezone.utc),
            task_data=SnapshotTaskData(
                title=fields.get("summary", ""),
                description=_text(fields.get("description")),
                type=(fields.get("issuetype") or {}).get("name", ""),
                status=(fields.get("status") or {}).get("name", ""),
                priority=(fields.get("priority") or {}).get("name"),
                assignee=(fields.get("assignee") or {}).get("displayName"),
                team=(fields.get("project") or {}).get("name"),
                labels=list(fields.get("labels") or []),
                external_url=f"{base}/browse/{raw.get('key', key)}",
            ),
            raw_data=raw,
        )

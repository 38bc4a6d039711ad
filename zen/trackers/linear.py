"""Linear GraphQL API issue tracker."""

from datetime import datetime, timezone

from zen.errors import NetworkError, NotFound
from zen.models import ExternalSnapshot, SnapshotTaskData
from zen.trackers.base import IssueTracker

_GET_ISSUE = """
query GetIssue($id: String!) {
  issue(id: $id) {
    id
    identifier
    title
    description
    url
    priority
    state { name type }
    assignee { name email }
    team { name key }
    labels { nodes { name } }
    createdAt
    updatedAt
  }
}
"""

# Linear has no issue types; a label with one of these names stands in
_TYPE_LABELS = ("bug", "story", "epic", "spike", "feature")


class LinearTracker(IssueTracker):
    source = "linear"

    def _gql(self, query: str, variables: dict | None = None) -> dict:
        endpoint = f"{self.descriptor.resolve_base_url()}/graphql"
        data = self._request("POST", endpoint, json={"query": query, "variables": variables or {}})
        if data.get("errors"):
            messages = "; ".join(str(error.get("message", error)) for error in data["errors"])
            if "not found" in messages.lower():
                raise NotFound(f"Linear: {messages}")
            raise NetworkError(f"Linear API error: {messages}")
        return data.get("data") or {}

    def fetch(self, external_id: str) -> ExternalSnapshot:
        node = self._gql(_GET_ISSUE, {"id": external_id}).get("issue")
        if not node:
            raise NotFound(f"issue '{external_id}' not found in Linear")

        labels = [label["name"] for label in (node.get("labels") or {}).get("nodes", [])]
        issue_type = next((label for label in labels if label.lower() in _TYPE_LABELS), "")
        if issue_type.lower() == "feature":
            issue_type = "story"
        return ExternalSnapshot(
            external_system=self.source,
            external_id=node.get("identifier") or external_id,
            fetched_at=datetime.now(timezone.utc),
            task_data=SnapshotTaskData(
                title=node.get("title", ""),
                description=node.get("description"),
                type=issue_type,
                status=(node.get("state") or {}).get("name", ""),
                priority=node.get("priority"),
                assignee=(node.get("assignee") or {}).get("name"),
                team=(node.get("team") or {}).get("name"),
                labels=labels,
                external_url=node.get("url", ""),
            ),
            raw_data=node,
        )

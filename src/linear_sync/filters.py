"""
Issue filter criteria, their Linear IssueFilter translation, and client-side matching.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

TERMINAL_STATE_TYPES = ("canceled", "completed")

_WIRE_FIELDS = {
    "statusIds": "status_ids",
    "priorities": "priorities",
    "projectIds": "project_ids",
    "labelIds": "label_ids",
    "assigneeId": "assignee_id",
    "assignedToMe": "assigned_to_me",
    "query": "query",
    "updatedAfter": "updated_after",
    "updatedBefore": "updated_before",
    "includeCompleted": "include_completed",
}
_SET_FIELDS = {"status_ids", "priorities", "project_ids", "label_ids"}


def parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class FilterCriteria:
    """Closed set of issue predicates. Equal criteria always give equal cache keys."""

    status_ids: frozenset[str] = field(default_factory=frozenset)
    priorities: frozenset[int] = field(default_factory=frozenset)
    project_ids: frozenset[str] = field(default_factory=frozenset)
    label_ids: frozenset[str] = field(default_factory=frozenset)
    assignee_id: str | None = None
    assigned_to_me: bool = False
    query: str | None = None
    updated_after: str | None = None
    updated_before: str | None = None
    include_completed: bool = False

    def __post_init__(self) -> None:
        # Accept any iterable for set fields and normalize blank text to None.
        for name in _SET_FIELDS:
            value = getattr(self, name)
            if not isinstance(value, frozenset):
                object.__setattr__(self, name, frozenset(value or ()))
        if self.query is not None and not self.query.strip():
            object.__setattr__(self, "query", None)
        for name in ("updated_after", "updated_before"):
            parse_timestamp(getattr(self, name))

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any] | None) -> FilterCriteria:
        if not raw:
            return cls()
        unknown = set(raw) - set(_WIRE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown filter fields: {', '.join(sorted(unknown))}")
        kwargs: dict[str, Any] = {}
        for wire_name, value in raw.items():
            if value is None:
                continue
            name = _WIRE_FIELDS[wire_name]
            if name == "priorities":
                value = frozenset(int(p) for p in value)
            elif name in _SET_FIELDS:
                value = frozenset(str(v) for v in value)
            elif name in ("assigned_to_me", "include_completed"):
                value = bool(value)
            kwargs[name] = value
        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for wire_name, name in _WIRE_FIELDS.items():
            value = getattr(self, name)
            if name in _SET_FIELDS:
                if value:
                    out[wire_name] = sorted(value)
            elif name == "include_completed":
                out[wire_name] = value
            elif value:
                out[wire_name] = value
        return out

    def cache_key_suffix(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))

    def is_default(self) -> bool:
        return self == FilterCriteria()


def to_remote_filter(criteria: FilterCriteria) -> dict[str, Any]:
    """Translate criteria into a Linear IssueFilter. Top-level keys are ANDed."""
    expr: dict[str, Any] = {}

    state: dict[str, Any] = {}
    if criteria.status_ids:
        state["id"] = {"in": sorted(criteria.status_ids)}
    if not criteria.include_completed:
        state["type"] = {"nin": list(TERMINAL_STATE_TYPES)}
    if state:
        expr["state"] = state

    if criteria.priorities:
        expr["priority"] = {"in": sorted(criteria.priorities)}
    if criteria.project_ids:
        expr["project"] = {"id": {"in": sorted(criteria.project_ids)}}
    if criteria.label_ids:
        expr["labels"] = {"some": {"id": {"in": sorted(criteria.label_ids)}}}

    if criteria.assignee_id:
        expr["assignee"] = {"id": {"eq": criteria.assignee_id}}
    elif criteria.assigned_to_me:
        expr["assignee"] = {"isMe": {"eq": True}}

    updated: dict[str, Any] = {}
    if criteria.updated_after:
        updated["gt"] = criteria.updated_after
    if criteria.updated_before:
        updated["lt"] = criteria.updated_before
    if updated:
        expr["updatedAt"] = updated

    if criteria.query:
        text = criteria.query.strip()
        expr["or"] = [
            {"title": {"containsIgnoreCase": text}},
            {"description": {"containsIgnoreCase": text}},
        ]

    return expr


def _name(ref: Any) -> str:
    if isinstance(ref, dict):
        return ref.get("name") or ""
    return ref or ""


def build_search_text(issue: Mapping[str, Any]) -> str:
    parts = [
        issue.get("title") or "",
        issue.get("description") or "",
        issue.get("identifier") or "",
        _name(issue.get("assignee")),
        _name(issue.get("team")),
        *(_name(label) for label in issue.get("labels") or []),
        _name(issue.get("state")),
    ]
    return " ".join(p for p in parts if p).lower()


def index_issue(issue: Mapping[str, Any]) -> dict[str, Any]:
    """Return a copy of `issue` with `_searchText` recomputed from its fields."""
    indexed = dict(issue)
    indexed["_searchText"] = build_search_text(issue)
    return indexed


def index_issues(issues: Iterable[Mapping[str, Any]]) -> list[dict[str, Any]]:
    return [index_issue(issue) for issue in issues]


def _ref_id(ref: Any) -> str | None:
    if isinstance(ref, dict):
        return ref.get("id")
    return None


def matches(
    issue: Mapping[str, Any],
    criteria: FilterCriteria,
    viewer_id: str | None = None,
) -> bool:
    """
    Client-side equivalent of `to_remote_filter`.

    `assigned_to_me` is only checked when the viewer id is known; otherwise the
    server-side predicate is trusted.
    """
    state = issue.get("state") or {}
    if not criteria.include_completed and state.get("type") in TERMINAL_STATE_TYPES:
        return False
    if criteria.status_ids and state.get("id") not in criteria.status_ids:
        return False
    if criteria.priorities and issue.get("priority") not in criteria.priorities:
        return False
    if criteria.project_ids and _ref_id(issue.get("project")) not in criteria.project_ids:
        return False
    if criteria.label_ids:
        label_ids = {_ref_id(label) for label in issue.get("labels") or []}
        if not label_ids & criteria.label_ids:
            return False

    assignee_id = _ref_id(issue.get("assignee"))
    if criteria.assignee_id and assignee_id != criteria.assignee_id:
        return False
    if criteria.assigned_to_me and viewer_id and assignee_id != viewer_id:
        return False

    if criteria.updated_after or criteria.updated_before:
        updated_at = parse_timestamp(issue.get("updatedAt"))
        if updated_at is None:
            return False
        after = parse_timestamp(criteria.updated_after)
        before = parse_timestamp(criteria.updated_before)
        if after and not updated_at > after:
            return False
        if before and not updated_at < before:
            return False

    if criteria.query:
        haystack = issue.get("_searchText")
        if haystack is None:
            haystack = build_search_text(issue)
        if not all(term in haystack for term in criteria.query.lower().split()):
            return False

    return True


def filter_issues(
    issues: Iterable[Mapping[str, Any]],
    criteria: FilterCriteria,
    viewer_id: str | None = None,
) -> list[dict[str, Any]]:
    return [dict(issue) for issue in issues if matches(issue, criteria, viewer_id)]

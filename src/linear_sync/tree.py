"""
Issue tree model: filter indicators, optional grouping and pagination.

Nodes form a tagged union on `kind`, so consumers dispatch on the tag instead
of probing for attributes.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Literal, Union

from .filters import FilterCriteria

GroupBy = Literal["status", "project"]

PRIORITY_NAMES = {0: "No priority", 1: "Urgent", 2: "High", 3: "Medium", 4: "Low"}
STATE_TYPE_ORDER = ["triage", "backlog", "unstarted", "started", "completed", "canceled"]
NO_PROJECT = "No project"


@dataclass(frozen=True)
class IssueNode:
    issue: dict[str, Any]
    kind: Literal["issue"] = "issue"


@dataclass(frozen=True)
class GroupNode:
    label: str
    group_key: str | None
    children: tuple[IssueNode, ...]
    kind: Literal["group"] = "group"


@dataclass(frozen=True)
class FilterIndicatorNode:
    field: str
    label: str
    kind: Literal["filter"] = "filter"


@dataclass(frozen=True)
class SystemMessageNode:
    message: str
    level: Literal["info", "warning", "error"] = "info"
    action: str | None = None
    kind: Literal["message"] = "message"


TreeNode = Union[IssueNode, GroupNode, FilterIndicatorNode, SystemMessageNode]


def _names_for(ids: frozenset[str], issues: Sequence[dict[str, Any]], attr: str) -> list[str]:
    known: dict[str, str] = {}
    for issue in issues:
        refs = issue.get(attr)
        for ref in refs if isinstance(refs, list) else [refs]:
            if isinstance(ref, dict) and ref.get("id") and ref.get("name"):
                known[ref["id"]] = ref["name"]
    return sorted(known.get(i, i) for i in ids)


def filter_indicators(
    criteria: FilterCriteria, issues: Sequence[dict[str, Any]] = ()
) -> list[FilterIndicatorNode]:
    nodes: list[FilterIndicatorNode] = []
    if criteria.status_ids:
        names = _names_for(criteria.status_ids, issues, "state")
        nodes.append(FilterIndicatorNode("statusIds", f"Status: {', '.join(names)}"))
    if criteria.priorities:
        names = [PRIORITY_NAMES.get(p, str(p)) for p in sorted(criteria.priorities)]
        nodes.append(FilterIndicatorNode("priorities", f"Priority: {', '.join(names)}"))
    if criteria.project_ids:
        names = _names_for(criteria.project_ids, issues, "project")
        nodes.append(FilterIndicatorNode("projectIds", f"Project: {', '.join(names)}"))
    if criteria.label_ids:
        names = _names_for(criteria.label_ids, issues, "labels")
        nodes.append(FilterIndicatorNode("labelIds", f"Label: {', '.join(names)}"))
    if criteria.assignee_id:
        nodes.append(FilterIndicatorNode("assigneeId", f"Assignee: {criteria.assignee_id}"))
    if criteria.assigned_to_me:
        nodes.append(FilterIndicatorNode("assignedToMe", "Assigned to me"))
    if criteria.query:
        nodes.append(FilterIndicatorNode("query", f'Search: "{criteria.query}"'))
    if criteria.updated_after:
        nodes.append(FilterIndicatorNode("updatedAfter", f"Updated after {criteria.updated_after}"))
    if criteria.updated_before:
        nodes.append(FilterIndicatorNode("updatedBefore", f"Updated before {criteria.updated_before}"))
    if criteria.include_completed:
        nodes.append(FilterIndicatorNode("includeCompleted", "Including completed"))
    return nodes


def _group_by_status(issues: Sequence[dict[str, Any]]) -> list[GroupNode]:
    groups: dict[str | None, list[dict[str, Any]]] = {}
    states: dict[str | None, dict[str, Any]] = {}
    for issue in issues:
        state = issue.get("state") or {}
        key = state.get("id") or state.get("name")
        groups.setdefault(key, []).append(issue)
        states.setdefault(key, state)

    def order(key: str | None) -> tuple[int, str]:
        state = states[key]
        state_type = state.get("type")
        rank = STATE_TYPE_ORDER.index(state_type) if state_type in STATE_TYPE_ORDER else len(STATE_TYPE_ORDER)
        return rank, state.get("name") or ""

    return [
        GroupNode(
            label=states[key].get("name") or "Unknown status",
            group_key=key,
            children=tuple(IssueNode(issue) for issue in groups[key]),
        )
        for key in sorted(groups, key=order)
    ]


def _group_by_project(issues: Sequence[dict[str, Any]]) -> list[GroupNode]:
    groups: dict[str | None, list[dict[str, Any]]] = {}
    names: dict[str | None, str] = {}
    for issue in issues:
        project = issue.get("project")
        key = project.get("id") if isinstance(project, dict) else None
        groups.setdefault(key, []).append(issue)
        names.setdefault(key, (project or {}).get("name") or NO_PROJECT)

    ordered = sorted(groups, key=lambda k: (k is None, names[k].lower()))
    return [
        GroupNode(label=names[key], group_key=key, children=tuple(IssueNode(i) for i in groups[key]))
        for key in ordered
    ]


def build_issue_tree(
    issues: Sequence[dict[str, Any]],
    criteria: FilterCriteria | None = None,
    group_by: GroupBy | None = None,
    page: int = 0,
    page_size: int = 50,
    show_filter_indicators: bool = True,
) -> list[TreeNode]:
    if page < 0 or page_size < 1:
        raise ValueError("page must be >= 0 and page_size >= 1")
    criteria = criteria or FilterCriteria()

    nodes: list[TreeNode] = []
    if show_filter_indicators:
        nodes.extend(filter_indicators(criteria, issues))

    if not issues:
        message = "No issues match the current filters" if not criteria.is_default() else "No issues"
        nodes.append(SystemMessageNode(message))
        return nodes

    start = page * page_size
    page_issues = list(issues[start : start + page_size])
    if not page_issues:
        nodes.append(SystemMessageNode("No more issues", action="previousPage"))
        return nodes

    if group_by == "status":
        nodes.extend(_group_by_status(page_issues))
    elif group_by == "project":
        nodes.extend(_group_by_project(page_issues))
    elif group_by is None:
        nodes.extend(IssueNode(issue) for issue in page_issues)
    else:
        raise ValueError(f"Unsupported grouping: {group_by}")

    end = start + len(page_issues)
    if end < len(issues):
        nodes.append(
            SystemMessageNode(f"Showing {start + 1}-{end} of {len(issues)}", action="nextPage")
        )
    return nodes


def node_to_dict(node: TreeNode) -> dict[str, Any]:
    if isinstance(node, IssueNode):
        issue = {k: v for k, v in node.issue.items() if k != "_searchText"}
        return {"kind": node.kind, "issue": issue}
    if isinstance(node, GroupNode):
        return {
            "kind": node.kind,
            "label": node.label,
            "groupKey": node.group_key,
            "count": len(node.children),
            "children": [node_to_dict(child) for child in node.children],
        }
    if isinstance(node, FilterIndicatorNode):
        return {"kind": node.kind, "field": node.field, "label": node.label}
    return {"kind": node.kind, "message": node.message, "level": node.level, "action": node.action}

"""
MCP server exposing cached Linear issue browsing, filtering and editing.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from typing import Any

from mcp.server.fastmcp import Context, FastMCP

from .filters import FilterCriteria
from .saved_filters import SavedFilterStore
from .service import (
    LABELS_KEY,
    PROJECTS_KEY,
    TEAMS_KEY,
    LinearSyncService,
    comments_key,
    create_service,
    default_storage,
    issue_key,
    issues_key,
    team_members_key,
    workflow_states_key,
)
from .tree import build_issue_tree, node_to_dict

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    service: LinearSyncService
    saved_filters: SavedFilterStore


@asynccontextmanager
async def _lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Build the service once per server run and close it on shutdown."""
    storage = default_storage()
    service = create_service(storage=storage)
    try:
        yield AppContext(service=service, saved_filters=SavedFilterStore(storage))
    finally:
        try:
            await service.aclose()
        except Exception as exc:
            logger.warning("Service shutdown failed: %s", exc)


mcp = FastMCP(
    "Linear Sync",
    instructions=(
        "Browse, filter, group and edit Linear issues. "
        "Reads are served from a local cache that refreshes in the background; "
        "writes go to Linear and invalidate the affected cache entries. "
        "Results carrying _metadata.stale=true were served from expired cache "
        "because Linear could not be reached."
    ),
    lifespan=_lifespan,
)


def _app(ctx: Context) -> AppContext:
    return ctx.request_context.lifespan_context


def _inject_stale_metadata(result: Any) -> dict[str, Any]:
    """Mark a result as served from stale cache without mutating the original."""
    if isinstance(result, dict):
        return {**result, "_metadata": {"stale": True}}
    return {"results": result, "_metadata": {"stale": True}}


def _respond(app: AppContext, key: str, result: Any) -> Any:
    if app.service.is_stale(key):
        return _inject_stale_metadata(result)
    return result


def _strip_index(issue: dict[str, Any] | None) -> dict[str, Any] | None:
    if issue is None:
        return None
    return {k: v for k, v in issue.items() if k != "_searchText"}


def _criteria(
    app: AppContext,
    saved_filter: str | None,
    fields: dict[str, Any],
) -> FilterCriteria:
    given = {k: v for k, v in fields.items() if v is not None}
    if saved_filter:
        base = app.saved_filters.get_filter(saved_filter)
        if base is None:
            raise ValueError(f"No saved filter named '{saved_filter}'")
        return FilterCriteria.from_dict({**base.to_dict(), **given})
    if not given:
        return app.saved_filters.get_default_filter()
    return FilterCriteria.from_dict(given)


@mcp.tool()
async def list_issues(
    ctx: Context,
    statusIds: list[str] | None = None,
    priorities: list[int] | None = None,
    projectIds: list[str] | None = None,
    labelIds: list[str] | None = None,
    assigneeId: str | None = None,
    assignedToMe: bool | None = None,
    query: str | None = None,
    updatedAfter: str | None = None,
    updatedBefore: str | None = None,
    includeCompleted: bool | None = None,
    savedFilter: str | None = None,
) -> Any:
    """List issues matching a filter.

    With no arguments the saved default filter is used (open issues only unless
    changed). `savedFilter` starts from a named preset; other arguments override it.

    Args:
        statusIds: Workflow state IDs (any of).
        priorities: Priority values, 0 (none) to 4 (low) (any of).
        projectIds: Project IDs (any of).
        labelIds: Label IDs; an issue matches if it carries any of them.
        assigneeId: Exact assignee user ID.
        assignedToMe: Only issues assigned to the authenticated user.
        query: Case-insensitive text matched against title and description.
        updatedAfter: ISO-8601 timestamp, exclusive lower bound on updatedAt.
        updatedBefore: ISO-8601 timestamp, exclusive upper bound on updatedAt.
        includeCompleted: Include completed and canceled issues (default false).
        savedFilter: Name of a saved filter preset to start from.

    Returns:
        List of issue dicts with nested state, assignee, team, project and labels.
    """
    app = _app(ctx)
    criteria = _criteria(
        app,
        savedFilter,
        {
            "statusIds": statusIds,
            "priorities": priorities,
            "projectIds": projectIds,
            "labelIds": labelIds,
            "assigneeId": assigneeId,
            "assignedToMe": assignedToMe,
            "query": query,
            "updatedAfter": updatedAfter,
            "updatedBefore": updatedBefore,
            "includeCompleted": includeCompleted,
        },
    )
    issues = await app.service.get_issues(criteria)
    return _respond(app, issues_key(criteria), [_strip_index(i) for i in issues])


@mcp.tool()
async def search_issues(
    ctx: Context,
    query: str,
    includeCompleted: bool = False,
    savedFilter: str | None = None,
) -> Any:
    """Free-text search across title, description, identifier, assignee, team,
    labels and status of cached issues.

    Args:
        query: Whitespace-separated terms; all must match (case-insensitive).
        includeCompleted: Also search completed and canceled issues.
        savedFilter: Restrict the search to a named preset.
    """
    app = _app(ctx)
    criteria = _criteria(
        app, savedFilter, {"query": query, "includeCompleted": includeCompleted}
    )
    issues = await app.service.search_issues(criteria)
    return _respond(app, issues_key(replace(criteria, query=None)), [_strip_index(i) for i in issues])


@mcp.tool()
async def get_issue(ctx: Context, id: str) -> Any:
    """Retrieve full details of an issue by id or identifier (e.g. "ENG-123")."""
    app = _app(ctx)
    issue = await app.service.get_issue_details(id)
    if issue is None:
        return None
    return _respond(app, issue_key(id), _strip_index(issue))


@mcp.tool()
async def list_comments(ctx: Context, issueId: str) -> Any:
    """List comments on an issue."""
    app = _app(ctx)
    comments = await app.service.get_issue_comments(issueId)
    return _respond(app, comments_key(issueId), comments)


@mcp.tool()
async def list_teams(ctx: Context) -> Any:
    """List all teams in the workspace."""
    app = _app(ctx)
    return _respond(app, TEAMS_KEY, await app.service.get_teams())


@mcp.tool()
async def list_projects(ctx: Context) -> Any:
    """List all projects in the workspace."""
    app = _app(ctx)
    return _respond(app, PROJECTS_KEY, await app.service.get_projects())


@mcp.tool()
async def list_issue_labels(ctx: Context) -> Any:
    """List all issue labels."""
    app = _app(ctx)
    return _respond(app, LABELS_KEY, await app.service.get_labels())


@mcp.tool()
async def list_issue_statuses(ctx: Context, teamId: str) -> Any:
    """List workflow states for a team."""
    app = _app(ctx)
    states = await app.service.get_workflow_states(teamId)
    return _respond(app, workflow_states_key(teamId), states)


@mcp.tool()
async def list_team_members(ctx: Context, teamId: str) -> Any:
    """List members of a team."""
    app = _app(ctx)
    members = await app.service.get_team_members(teamId)
    return _respond(app, team_members_key(teamId), members)


@mcp.tool()
async def create_issue(
    ctx: Context,
    title: str,
    teamId: str,
    description: str | None = None,
    priority: int | None = None,
    stateId: str | None = None,
    assigneeId: str | None = None,
    projectId: str | None = None,
    labelIds: list[str] | None = None,
) -> dict[str, Any]:
    """Create an issue. Cached issue lists are invalidated on success."""
    fields = {
        "title": title,
        "teamId": teamId,
        "description": description,
        "priority": priority,
        "stateId": stateId,
        "assigneeId": assigneeId,
        "projectId": projectId,
        "labelIds": labelIds,
    }
    issue = await _app(ctx).service.create_issue({k: v for k, v in fields.items() if v is not None})
    return _strip_index(issue)


@mcp.tool()
async def update_issue(
    ctx: Context,
    id: str,
    title: str | None = None,
    description: str | None = None,
    priority: int | None = None,
    stateId: str | None = None,
    assigneeId: str | None = None,
    projectId: str | None = None,
    labelIds: list[str] | None = None,
) -> dict[str, Any]:
    """Update fields of an issue. Only provided fields change."""
    fields = {
        "title": title,
        "description": description,
        "priority": priority,
        "stateId": stateId,
        "assigneeId": assigneeId,
        "projectId": projectId,
        "labelIds": labelIds,
    }
    issue = await _app(ctx).service.update_issue(id, {k: v for k, v in fields.items() if v is not None})
    return _strip_index(issue)


@mcp.tool()
async def update_issue_state(ctx: Context, id: str, stateId: str) -> dict[str, Any]:
    """Move an issue to another workflow state."""
    issue = await _app(ctx).service.update_issue_state(id, stateId)
    return _strip_index(issue)


@mcp.tool()
async def add_comment(ctx: Context, issueId: str, body: str) -> dict[str, Any]:
    """Add a comment to an issue."""
    await _app(ctx).service.add_comment(issueId, body)
    return {"ok": True}


@mcp.tool()
async def get_issue_tree(
    ctx: Context,
    groupBy: str | None = None,
    page: int = 0,
    pageSize: int = 50,
    savedFilter: str | None = None,
    query: str | None = None,
    includeCompleted: bool | None = None,
) -> list[dict[str, Any]]:
    """Issue tree for the current filter.

    Args:
        groupBy: "status", "project", or omit for a flat list.
        page: Zero-based page number.
        pageSize: Issues per page (default 50).
        savedFilter: Name of a saved filter preset; the default filter otherwise.
        query: Free-text terms, all of which must match.
        includeCompleted: Include completed and canceled issues.

    Returns:
        List of nodes tagged by "kind": "filter" indicators first, then "issue"
        or "group" nodes, then "message" nodes for empty results and paging.
    """
    app = _app(ctx)
    criteria = _criteria(app, savedFilter, {"query": query, "includeCompleted": includeCompleted})
    issues = await app.service.search_issues(criteria)
    nodes = build_issue_tree(issues, criteria, group_by=groupBy, page=page, page_size=pageSize)
    return [node_to_dict(node) for node in nodes]


@mcp.tool()
async def save_filter(
    ctx: Context,
    name: str,
    criteria: dict[str, Any],
) -> dict[str, Any]:
    """Save (or replace) a named filter preset. `criteria` uses the list_issues argument names."""
    parsed = FilterCriteria.from_dict(criteria)
    _app(ctx).saved_filters.save_filter(name, parsed)
    return {"name": name, "criteria": parsed.to_dict()}


@mcp.tool()
async def list_saved_filters(ctx: Context) -> dict[str, Any]:
    """List named filter presets and the default filter."""
    saved = _app(ctx).saved_filters
    return {
        "defaultFilter": saved.get_default_filter().to_dict(),
        "savedFilters": [
            {"name": name, "criteria": criteria.to_dict()}
            for name, criteria in saved.get_saved_filters()
        ],
    }


@mcp.tool()
async def delete_filter(ctx: Context, name: str) -> dict[str, Any]:
    """Delete a named filter preset."""
    return {"deleted": _app(ctx).saved_filters.delete_filter(name)}


@mcp.tool()
async def set_default_filter(ctx: Context, criteria: dict[str, Any]) -> dict[str, Any]:
    """Set the filter used when list_issues is called without arguments."""
    parsed = FilterCriteria.from_dict(criteria)
    _app(ctx).saved_filters.set_default_filter(parsed)
    return {"defaultFilter": parsed.to_dict()}


@mcp.tool()
async def clear_cache(ctx: Context) -> dict[str, Any]:
    """Drop every cached entry, including the persisted snapshot."""
    _app(ctx).service.clear_cache()
    return {"ok": True}


@mcp.tool()
async def invalidate_cache(ctx: Context, prefix: str | None = None) -> dict[str, Any]:
    """Drop cached entries whose key starts with `prefix` (all entries when omitted)."""
    removed = _app(ctx).service.invalidate_cache(prefix)
    return {"removed": removed}


@mcp.tool()
async def get_cache_health(ctx: Context) -> dict[str, Any]:
    """Cache counters, stale keys, persistence state and remote connection health."""
    return _app(ctx).service.get_health()


def main() -> None:
    mcp.run()

"""
Cached access to Linear issues, teams, projects, labels and comments.

The service is the only thing UI-facing code talks to. Reads go through the
sync engine's read-through cache; mutations go straight to the client (with
rate-limit retries) and invalidate the affected cache families on success.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable, Mapping
from dataclasses import replace
from typing import Any

from .cache_store import CacheStore, DurableStorage, JsonFileStorage, MemoryStorage
from .filters import FilterCriteria, filter_issues, index_issue, index_issues, to_remote_filter
from .linear_client import IssueTrackerClient, LinearMcpClient
from .sync_engine import SyncEngine, merge_by_identity

logger = logging.getLogger(__name__)

ISSUES_PREFIX = "issues:"
ISSUE_PREFIX = "issue:"
COMMENTS_PREFIX = "comments:"
WORKFLOW_STATES_PREFIX = "workflowStates:"
TEAM_MEMBERS_PREFIX = "teamMembers:"
TEAMS_KEY = "teams"
PROJECTS_KEY = "projects"
LABELS_KEY = "labels"
VIEWER_KEY = "viewer"


def _ttl_env(name: str, default: str) -> float:
    return float(os.getenv(f"LINEAR_SYNC_{name}_TTL_SECONDS", default))


DEFAULT_TTLS: dict[str, float] = {
    "issues": _ttl_env("ISSUES", "300"),
    "issue": _ttl_env("ISSUE", "300"),
    "comments": _ttl_env("COMMENTS", "120"),
    "teams": _ttl_env("TEAMS", "3600"),
    "projects": _ttl_env("PROJECTS", "3600"),
    "labels": _ttl_env("LABELS", "3600"),
    "workflowStates": _ttl_env("WORKFLOW_STATES", "3600"),
    "teamMembers": _ttl_env("TEAM_MEMBERS", "3600"),
    "viewer": _ttl_env("VIEWER", "0"),
}


def issues_key(criteria: FilterCriteria) -> str:
    return f"{ISSUES_PREFIX}{criteria.cache_key_suffix()}"


def issue_key(issue_id: str) -> str:
    return f"{ISSUE_PREFIX}{issue_id}"


def comments_key(issue_id: str) -> str:
    return f"{COMMENTS_PREFIX}{issue_id}"


def workflow_states_key(team_id: str) -> str:
    return f"{WORKFLOW_STATES_PREFIX}{team_id}"


def team_members_key(team_id: str) -> str:
    return f"{TEAM_MEMBERS_PREFIX}{team_id}"


def _coerce_criteria(criteria: FilterCriteria | Mapping[str, Any] | None) -> FilterCriteria:
    if isinstance(criteria, FilterCriteria):
        return criteria
    return FilterCriteria.from_dict(criteria)


class LinearSyncService:
    """Explicitly constructed facade over one client and one sync engine."""

    def __init__(
        self,
        client: IssueTrackerClient,
        engine: SyncEngine,
        ttls: Mapping[str, float] | None = None,
    ):
        self._client = client
        self._engine = engine
        self._ttls = {**DEFAULT_TTLS, **(ttls or {})}

    @property
    def engine(self) -> SyncEngine:
        return self._engine

    async def _viewer_id(self) -> str | None:
        try:
            viewer = await self.get_viewer()
        except Exception as exc:
            logger.warning("Could not resolve current user, trusting server-side filter: %s", exc)
            return None
        return (viewer or {}).get("id")

    async def get_issues(
        self, criteria: FilterCriteria | Mapping[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        criteria = _coerce_criteria(criteria)
        viewer_id = await self._viewer_id() if criteria.assigned_to_me else None
        remote_filter = to_remote_filter(criteria)

        # Deltas carry no predicates besides the marker, so issues that left
        # the filtered set (status, project, label, assignee, completion) are
        # seen and then dropped by the re-filter below. "Assigned to me" stays
        # server-side only when the viewer is unknown to the re-filter.
        delta_filter = to_remote_filter(
            FilterCriteria(
                include_completed=True,
                assigned_to_me=criteria.assigned_to_me and viewer_id is None,
            )
        )

        async def fetch_all() -> list[dict[str, Any]]:
            return await self._client.list_issues(remote_filter)

        async def fetch_delta(marker: str) -> list[dict[str, Any]]:
            bounded = {**delta_filter, "updatedAt": {**delta_filter.get("updatedAt", {}), "gt": marker}}
            return await self._client.list_issues(bounded)

        def index(items: list[dict[str, Any]]) -> list[dict[str, Any]]:
            return filter_issues(index_issues(items), criteria, viewer_id)

        result = await self._engine.get_or_refresh(
            issues_key(criteria),
            self._ttls["issues"],
            fetch_all,
            fetch_delta=fetch_delta,
            merge=merge_by_identity,
            index=index,
        )
        return result.data

    async def search_issues(
        self, criteria: FilterCriteria | Mapping[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """Free-text search over the cached collection for the rest of the criteria."""
        criteria = _coerce_criteria(criteria)
        issues = await self.get_issues(replace(criteria, query=None))
        viewer_id = await self._viewer_id() if criteria.assigned_to_me else None
        return filter_issues(issues, criteria, viewer_id)

    async def get_issue_details(self, issue_id: str) -> dict[str, Any] | None:
        async def fetch_all() -> dict[str, Any] | None:
            return await self._client.get_issue(issue_id)

        def index(issue: dict[str, Any] | None) -> dict[str, Any] | None:
            return index_issue(issue) if issue else issue

        result = await self._engine.get_or_refresh(
            issue_key(issue_id), self._ttls["issue"], fetch_all, index=index
        )
        return result.data

    async def get_issue_comments(self, issue_id: str) -> list[dict[str, Any]]:
        async def fetch_all() -> list[dict[str, Any]]:
            return await self._client.list_comments(issue_id)

        result = await self._engine.get_or_refresh(
            comments_key(issue_id), self._ttls["comments"], fetch_all
        )
        return result.data

    async def get_teams(self) -> list[dict[str, Any]]:
        result = await self._engine.get_or_refresh(
            TEAMS_KEY, self._ttls["teams"], self._client.list_teams
        )
        return result.data

    async def get_projects(self) -> list[dict[str, Any]]:
        result = await self._engine.get_or_refresh(
            PROJECTS_KEY, self._ttls["projects"], self._client.list_projects
        )
        return result.data

    async def get_labels(self) -> list[dict[str, Any]]:
        result = await self._engine.get_or_refresh(
            LABELS_KEY, self._ttls["labels"], self._client.list_labels
        )
        return result.data

    async def get_workflow_states(self, team_id: str) -> list[dict[str, Any]]:
        async def fetch_all() -> list[dict[str, Any]]:
            return await self._client.list_workflow_states(team_id)

        result = await self._engine.get_or_refresh(
            workflow_states_key(team_id), self._ttls["workflowStates"], fetch_all
        )
        return result.data

    async def get_team_members(self, team_id: str) -> list[dict[str, Any]]:
        async def fetch_all() -> list[dict[str, Any]]:
            return await self._client.list_team_members(team_id)

        result = await self._engine.get_or_refresh(
            team_members_key(team_id), self._ttls["teamMembers"], fetch_all
        )
        return result.data

    async def get_viewer(self) -> dict[str, Any]:
        result = await self._engine.get_or_refresh(
            VIEWER_KEY, self._ttls["viewer"], self._client.get_viewer
        )
        return result.data

    async def get_projects_by_ids(self, project_ids: Iterable[str]) -> list[dict[str, Any]]:
        wanted = set(project_ids)
        try:
            projects = await self.get_projects()
        except Exception as exc:
            logger.warning("Project lookup failed, returning no projects: %s", exc)
            return []
        return [p for p in projects if p.get("id") in wanted]

    async def get_labels_by_ids(self, label_ids: Iterable[str]) -> list[dict[str, Any]]:
        wanted = set(label_ids)
        try:
            labels = await self.get_labels()
        except Exception as exc:
            logger.warning("Label lookup failed, returning no labels: %s", exc)
            return []
        return [label for label in labels if label.get("id") in wanted]

    async def create_issue(self, issue_input: Mapping[str, Any]) -> dict[str, Any]:
        if not issue_input.get("title") or not issue_input.get("teamId"):
            raise ValueError("create_issue requires 'title' and 'teamId'")
        payload = dict(issue_input)

        async def call() -> dict[str, Any]:
            return await self._client.create_issue(payload)

        issue = await self._engine.mutate(
            "create issue", call, invalidate_prefixes=[ISSUES_PREFIX]
        )
        return index_issue(issue)

    async def update_issue(self, issue_id: str, issue_input: Mapping[str, Any]) -> dict[str, Any]:
        if not issue_input:
            raise ValueError("update_issue requires at least one field")
        payload = dict(issue_input)

        async def call() -> dict[str, Any]:
            return await self._client.update_issue(issue_id, payload)

        issue = await self._engine.mutate(
            f"update issue {issue_id}",
            call,
            invalidate_prefixes=[ISSUES_PREFIX],
            invalidate_keys=[issue_key(issue_id)],
        )
        return index_issue(issue)

    async def update_issue_state(self, issue_id: str, state_id: str) -> dict[str, Any]:
        return await self.update_issue(issue_id, {"stateId": state_id})

    async def add_comment(self, issue_id: str, body: str) -> None:
        if not body or not body.strip():
            raise ValueError("Comment body must not be empty")

        async def call() -> dict[str, Any]:
            return await self._client.create_comment(issue_id, body)

        await self._engine.mutate(
            f"add comment to {issue_id}",
            call,
            invalidate_keys=[comments_key(issue_id), issue_key(issue_id)],
        )

    def is_stale(self, key: str) -> bool:
        return self._engine.is_stale(key)

    def clear_cache(self) -> None:
        self._engine.clear()

    def invalidate_cache(self, prefix: str | None = None) -> list[str]:
        if not prefix:
            removed = self._engine.store.keys()
            self._engine.clear()
            return removed
        return self._engine.invalidate(prefix)

    def get_health(self) -> dict[str, Any]:
        health: dict[str, Any] = {"cache": self._engine.get_health()}
        client_health = getattr(self._client, "get_health", None)
        if callable(client_health):
            health["remote"] = client_health()
        return health

    async def aclose(self) -> None:
        await self._engine.drain()
        await self._client.aclose()


def default_storage() -> DurableStorage:
    if os.getenv("LINEAR_SYNC_PERSIST", "1") == "0":
        return MemoryStorage()
    return JsonFileStorage()


def create_service(
    client: IssueTrackerClient | None = None,
    storage: DurableStorage | None = None,
) -> LinearSyncService:
    """Build a service from environment settings."""
    store = CacheStore(storage if storage is not None else default_storage())
    engine = SyncEngine(
        store, dedupe_inflight=os.getenv("LINEAR_SYNC_DEDUPE_INFLIGHT", "0") == "1"
    )
    return LinearSyncService(client or LinearMcpClient(), engine)

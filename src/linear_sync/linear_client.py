"""
Async client for the official Linear MCP server.

Maintains one MCP client session on the running event loop, reconnecting once
on transport failures. Tool errors are classified so callers can tell a
rate-limited call apart from any other failure.

Default transport uses the official `mcp-remote` stdio bridge so the existing
OAuth flow is reused without custom token plumbing.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import shlex
import time
from datetime import timedelta
from typing import Any, Protocol

from mcp.client.session import ClientSession
from mcp.client.stdio import StdioServerParameters, stdio_client
from mcp.client.streamable_http import streamablehttp_client

logger = logging.getLogger(__name__)

DEFAULT_OFFICIAL_MCP_URL = "https://mcp.linear.app/mcp"
DEFAULT_TRANSPORT = "stdio"
DEFAULT_STDIO_COMMAND = "npx"
DEFAULT_STDIO_ARGS_PREFIX = ["-y", "mcp-remote"]
DEFAULT_PAGE_SIZE = 250
MAX_PAGES = 20

_RATE_LIMIT_PATTERN = re.compile(
    r"rate[ _-]?limit|ratelimited|too many requests|\b429\b", re.IGNORECASE
)


class LinearApiError(RuntimeError):
    """Raised when a Linear call fails. `code` tells the failure kinds apart."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message

    @property
    def is_rate_limited(self) -> bool:
        return self.code == "rate_limited"


def classify_error_text(text: str) -> str:
    if _RATE_LIMIT_PATTERN.search(text or ""):
        return "rate_limited"
    return "tool_error"


class IssueTrackerClient(Protocol):
    """What the sync layer needs from the remote service."""

    async def list_issues(self, remote_filter: dict[str, Any]) -> list[dict[str, Any]]: ...

    async def get_issue(self, issue_id: str) -> dict[str, Any] | None: ...

    async def list_comments(self, issue_id: str) -> list[dict[str, Any]]: ...

    async def create_comment(self, issue_id: str, body: str) -> dict[str, Any]: ...

    async def list_teams(self) -> list[dict[str, Any]]: ...

    async def list_workflow_states(self, team_id: str) -> list[dict[str, Any]]: ...

    async def list_projects(self) -> list[dict[str, Any]]: ...

    async def list_labels(self) -> list[dict[str, Any]]: ...

    async def list_team_members(self, team_id: str) -> list[dict[str, Any]]: ...

    async def get_viewer(self) -> dict[str, Any]: ...

    async def create_issue(self, issue_input: dict[str, Any]) -> dict[str, Any]: ...

    async def update_issue(self, issue_id: str, issue_input: dict[str, Any]) -> dict[str, Any]: ...

    async def aclose(self) -> None: ...


def normalize_issue(raw: dict[str, Any]) -> dict[str, Any]:
    """
    Map an issue payload to the canonical nested shape.

    Accepts GraphQL-style nested objects (`state: {id, name, type}`) and the
    official MCP's flat form (`status: "In Progress"`, `statusType`,
    `assignee: "Ann"`, `assigneeId`, `labels: ["bug"]`).
    """
    issue = dict(raw)

    state = raw.get("state")
    if not isinstance(state, dict):
        name = state if isinstance(state, str) else raw.get("status")
        state = {
            "id": raw.get("stateId"),
            "name": name,
            "type": raw.get("stateType") or raw.get("statusType"),
        }
    issue["state"] = state

    assignee = raw.get("assignee")
    if not isinstance(assignee, dict):
        if assignee is None and raw.get("assigneeId") is None:
            assignee = None
        else:
            assignee = {"id": raw.get("assigneeId"), "name": assignee}
    issue["assignee"] = assignee

    team = raw.get("team")
    if not isinstance(team, dict):
        team = {"id": raw.get("teamId"), "name": team, "key": raw.get("teamKey")}
    issue["team"] = team

    project = raw.get("project")
    if not isinstance(project, dict):
        if project is None and raw.get("projectId") is None:
            project = None
        else:
            project = {"id": raw.get("projectId"), "name": project}
    issue["project"] = project

    labels = raw.get("labels") or []
    if isinstance(labels, dict):
        labels = labels.get("nodes") or []
    issue["labels"] = [
        label if isinstance(label, dict) else {"id": None, "name": label}
        for label in labels
    ]

    priority = raw.get("priority")
    if isinstance(priority, dict):
        priority = priority.get("value")
    issue["priority"] = priority

    issue.pop("status", None)
    issue.pop("statusType", None)
    return issue


def _extract_items(payload: Any, *keys: str) -> list[dict[str, Any]]:
    if payload is None:
        return []
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in (*keys, "results", "nodes"):
            value = payload.get(key)
            if isinstance(value, list):
                return value
            if isinstance(value, dict) and isinstance(value.get("nodes"), list):
                return value["nodes"]
    return []


def _next_cursor(payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return None
    cursor = payload.get("nextCursor") or payload.get("cursor")
    if cursor:
        return str(cursor)
    page_info = payload.get("pageInfo") or {}
    if page_info.get("hasNextPage") and page_info.get("endCursor"):
        return str(page_info["endCursor"])
    return None


def _single(values: list[Any] | None) -> Any:
    if values and len(values) == 1:
        return values[0]
    return None


def remote_filter_to_tool_args(remote_filter: dict[str, Any]) -> dict[str, Any]:
    """
    Push down what the official `list_issues` tool can express.

    Multi-valued set predicates and exclusions are left to client-side
    matching over the fetched collection.
    """
    args: dict[str, Any] = {}

    state_id = _single(remote_filter.get("state", {}).get("id", {}).get("in"))
    if state_id:
        args["state"] = state_id

    project_id = _single(remote_filter.get("project", {}).get("id", {}).get("in"))
    if project_id:
        args["project"] = project_id

    label_id = _single(
        remote_filter.get("labels", {}).get("some", {}).get("id", {}).get("in")
    )
    if label_id:
        args["label"] = label_id

    assignee = remote_filter.get("assignee", {})
    if assignee.get("isMe", {}).get("eq"):
        args["assignee"] = "me"
    elif assignee.get("id", {}).get("eq"):
        args["assignee"] = assignee["id"]["eq"]

    updated_after = remote_filter.get("updatedAt", {}).get("gt")
    if updated_after:
        args["updatedAt"] = updated_after

    for clause in remote_filter.get("or", []):
        text = clause.get("title", {}).get("containsIgnoreCase")
        if text:
            args["query"] = text
            break

    return args


_INPUT_TOOL_ARGS = {
    "teamId": "team",
    "stateId": "state",
    "assigneeId": "assignee",
    "projectId": "project",
    "labelIds": "labels",
}


def issue_input_to_tool_args(issue_input: dict[str, Any]) -> dict[str, Any]:
    return {_INPUT_TOOL_ARGS.get(key, key): value for key, value in issue_input.items()}


class LinearMcpClient:
    """IssueTrackerClient backed by an MCP session to the official Linear server."""

    def __init__(
        self,
        transport: str | None = None,
        command: str | None = None,
        args: list[str] | None = None,
        env: dict[str, str] | None = None,
        cwd: str | None = None,
        url: str | None = None,
        headers: dict[str, str] | None = None,
        timeout_seconds: float = 30.0,
        sse_read_timeout_seconds: float = 300.0,
        read_timeout_seconds: float = 30.0,
        page_size: int = DEFAULT_PAGE_SIZE,
    ):
        self._transport = (transport or os.getenv("LINEAR_OFFICIAL_MCP_TRANSPORT", DEFAULT_TRANSPORT)).lower()
        self._url = url or os.getenv("LINEAR_OFFICIAL_MCP_URL", DEFAULT_OFFICIAL_MCP_URL)
        self._headers = headers or self._parse_json_env("LINEAR_OFFICIAL_MCP_HEADERS")
        self._command = command or os.getenv("LINEAR_OFFICIAL_MCP_COMMAND", DEFAULT_STDIO_COMMAND)
        self._args = args or self._parse_stdio_args_from_env(default_url=self._url)
        self._env = env or self._parse_json_env("LINEAR_OFFICIAL_MCP_ENV")
        self._cwd = cwd or os.getenv("LINEAR_OFFICIAL_MCP_CWD")
        self._timeout_seconds = timeout_seconds
        self._sse_read_timeout_seconds = sse_read_timeout_seconds
        self._read_timeout_seconds = read_timeout_seconds
        self._page_size = page_size

        if self._transport not in {"stdio", "http"}:
            raise ValueError("LINEAR_OFFICIAL_MCP_TRANSPORT must be one of: stdio, http")

        self._connect_lock = asyncio.Lock()
        self._transport_cm: Any = None
        self._session_cm: Any = None
        self._session: ClientSession | None = None

        self._failure_count = 0
        self._last_error: str | None = None
        self._last_failure_at: float | None = None
        self._last_connected_at: float | None = None

    @staticmethod
    def _parse_json_env(var_name: str) -> dict[str, str] | None:
        raw = os.getenv(var_name)
        if not raw:
            return None
        try:
            parsed = json.loads(raw)
            if isinstance(parsed, dict):
                return {str(k): str(v) for k, v in parsed.items()}
        except json.JSONDecodeError:
            pass
        logger.warning("Ignoring invalid %s value", var_name)
        return None

    @staticmethod
    def _parse_stdio_args_from_env(default_url: str) -> list[str]:
        raw = os.getenv("LINEAR_OFFICIAL_MCP_ARGS")
        if not raw:
            return [*DEFAULT_STDIO_ARGS_PREFIX, default_url]

        # JSON array keeps exact argument boundaries.
        try:
            parsed = json.loads(raw)
            if isinstance(parsed, list):
                return [str(item) for item in parsed]
        except json.JSONDecodeError:
            pass

        try:
            return shlex.split(raw)
        except ValueError:
            logger.warning("Ignoring invalid LINEAR_OFFICIAL_MCP_ARGS value; using default args")
            return [*DEFAULT_STDIO_ARGS_PREFIX, default_url]

    async def _connect(self) -> None:
        async with self._connect_lock:
            if self._session is not None:
                return

            if self._transport == "stdio":
                params = StdioServerParameters(
                    command=self._command,
                    args=self._args,
                    env=self._env,
                    cwd=self._cwd,
                )
                self._transport_cm = stdio_client(params)
            else:
                self._transport_cm = streamablehttp_client(
                    self._url,
                    headers=self._headers,
                    timeout=self._timeout_seconds,
                    sse_read_timeout=self._sse_read_timeout_seconds,
                    terminate_on_close=False,
                )
            transport_streams = await self._transport_cm.__aenter__()
            if len(transport_streams) == 3:
                read_stream, write_stream, _ = transport_streams
            elif len(transport_streams) == 2:
                read_stream, write_stream = transport_streams
            else:
                raise RuntimeError("Linear MCP transport returned unexpected stream tuple")

            self._session_cm = ClientSession(
                read_stream,
                write_stream,
                read_timeout_seconds=timedelta(seconds=self._read_timeout_seconds),
            )
            self._session = await self._session_cm.__aenter__()
            await self._session.initialize()
            self._last_connected_at = time.time()
            logger.info("Connected to Linear MCP over %s", self._transport)

    async def _disconnect(self) -> None:
        if self._session_cm is not None:
            try:
                await self._session_cm.__aexit__(None, None, None)
            except Exception as exc:
                self._log_cleanup_exception("Linear MCP session cleanup failed", exc)
        if self._transport_cm is not None:
            try:
                await self._transport_cm.__aexit__(None, None, None)
            except Exception as exc:
                self._log_cleanup_exception("Linear MCP transport cleanup failed", exc)

        self._session = None
        self._session_cm = None
        self._transport_cm = None

    @staticmethod
    def _log_cleanup_exception(prefix: str, exc: Exception) -> None:
        message = str(exc)
        if "Attempted to exit cancel scope in a different task" in message:
            logger.debug("%s: %s", prefix, exc)
            return
        logger.warning("%s: %s", prefix, exc)

    def _normalize_result(self, result: Any) -> Any:
        if getattr(result, "isError", False):
            text = self._extract_text(result) or "Linear MCP returned an error"
            raise LinearApiError(classify_error_text(text), text)

        structured = getattr(result, "structuredContent", None)
        if structured is not None:
            return structured

        text = self._extract_text(result)
        if text:
            try:
                return json.loads(text)
            except json.JSONDecodeError:
                return {"text": text}

        if hasattr(result, "model_dump"):
            return result.model_dump()
        return result

    @staticmethod
    def _extract_text(result: Any) -> str:
        content = getattr(result, "content", None) or []
        texts: list[str] = []
        for block in content:
            if getattr(block, "type", None) == "text":
                text = getattr(block, "text", "")
                if text:
                    texts.append(text)
        return "\n".join(texts).strip()

    def _record_failure(self, exc: Exception) -> None:
        self._failure_count += 1
        self._last_failure_at = time.time()
        self._last_error = f"{exc.__class__.__name__}: {exc}"
        logger.warning("Linear MCP call failed (%s): %s", exc.__class__.__name__, exc)

    def _record_success(self) -> None:
        self._failure_count = 0
        self._last_error = None

    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> Any:
        args = arguments or {}
        for attempt in range(2):
            try:
                await self._connect()
                if self._session is None:
                    raise RuntimeError("Linear MCP session unavailable")
                result = await self._session.call_tool(name, arguments=args)
                normalized = self._normalize_result(result)
                self._record_success()
                return normalized
            except LinearApiError:
                # Semantic errors (including rate limits) are the caller's to handle.
                raise
            except Exception as exc:
                self._record_failure(exc)
                await self._disconnect()
                if attempt == 1:
                    raise LinearApiError(
                        "unavailable",
                        f"Linear MCP call failed for tool '{name}': {exc}",
                    ) from exc

        raise LinearApiError("unavailable", "Linear MCP unavailable")

    async def _list_paged(self, tool: str, args: dict[str, Any], *keys: str) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        cursor: str | None = None
        for _ in range(MAX_PAGES):
            page_args = dict(args)
            if cursor:
                page_args["cursor"] = cursor
            payload = await self.call_tool(tool, page_args)
            items.extend(_extract_items(payload, *keys))
            cursor = _next_cursor(payload)
            if not cursor:
                break
        else:
            logger.warning("Stopped paging %s after %d pages", tool, MAX_PAGES)
        return items

    async def list_issues(self, remote_filter: dict[str, Any]) -> list[dict[str, Any]]:
        args = remote_filter_to_tool_args(remote_filter)
        args["limit"] = self._page_size
        args["includeArchived"] = False
        raw = await self._list_paged("list_issues", args, "issues")
        return [normalize_issue(issue) for issue in raw]

    async def get_issue(self, issue_id: str) -> dict[str, Any] | None:
        payload = await self.call_tool("get_issue", {"id": issue_id})
        if not payload:
            return None
        if isinstance(payload, dict) and isinstance(payload.get("issue"), dict):
            payload = payload["issue"]
        return normalize_issue(payload)

    async def list_comments(self, issue_id: str) -> list[dict[str, Any]]:
        return await self._list_paged("list_comments", {"issueId": issue_id}, "comments")

    async def create_comment(self, issue_id: str, body: str) -> dict[str, Any]:
        return await self.call_tool("create_comment", {"issueId": issue_id, "body": body})

    async def list_teams(self) -> list[dict[str, Any]]:
        return await self._list_paged("list_teams", {}, "teams")

    async def list_workflow_states(self, team_id: str) -> list[dict[str, Any]]:
        payload = await self.call_tool("list_issue_statuses", {"team": team_id})
        return _extract_items(payload, "statuses", "states")

    async def list_projects(self) -> list[dict[str, Any]]:
        return await self._list_paged("list_projects", {}, "projects")

    async def list_labels(self) -> list[dict[str, Any]]:
        return await self._list_paged("list_issue_labels", {}, "labels")

    async def list_team_members(self, team_id: str) -> list[dict[str, Any]]:
        return await self._list_paged("list_users", {"team": team_id}, "users")

    async def get_viewer(self) -> dict[str, Any]:
        payload = await self.call_tool("get_user", {"query": "me"})
        if isinstance(payload, dict) and isinstance(payload.get("user"), dict):
            return payload["user"]
        return payload

    async def create_issue(self, issue_input: dict[str, Any]) -> dict[str, Any]:
        payload = await self.call_tool("create_issue", issue_input_to_tool_args(issue_input))
        if isinstance(payload, dict) and isinstance(payload.get("issue"), dict):
            payload = payload["issue"]
        return normalize_issue(payload)

    async def update_issue(self, issue_id: str, issue_input: dict[str, Any]) -> dict[str, Any]:
        payload = await self.call_tool("update_issue", {"id": issue_id, **issue_input_to_tool_args(issue_input)})
        if isinstance(payload, dict) and isinstance(payload.get("issue"), dict):
            payload = payload["issue"]
        return normalize_issue(payload)

    def get_health(self) -> dict[str, Any]:
        health: dict[str, Any] = {
            "transport": self._transport,
            "url": self._url,
            "connected": self._session is not None,
            "failureCount": self._failure_count,
            "lastError": self._last_error,
            "lastFailureAt": self._last_failure_at,
            "lastConnectedAt": self._last_connected_at,
        }
        if self._transport == "stdio":
            health["command"] = self._command
            health["args"] = self._args
        else:
            health["hasHeaders"] = self._headers is not None
        return health

    async def aclose(self) -> None:
        await self._disconnect()

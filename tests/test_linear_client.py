from __future__ import annotations

import asyncio
import json

import pytest

from linear_sync.linear_client import (
    DEFAULT_OFFICIAL_MCP_URL,
    LinearApiError,
    LinearMcpClient,
    classify_error_text,
    issue_input_to_tool_args,
    normalize_issue,
    remote_filter_to_tool_args,
)


@pytest.fixture(autouse=True)
def _clear_official_env(monkeypatch: pytest.MonkeyPatch):
    keys = [
        "LINEAR_OFFICIAL_MCP_TRANSPORT",
        "LINEAR_OFFICIAL_MCP_COMMAND",
        "LINEAR_OFFICIAL_MCP_ARGS",
        "LINEAR_OFFICIAL_MCP_ENV",
        "LINEAR_OFFICIAL_MCP_CWD",
        "LINEAR_OFFICIAL_MCP_URL",
        "LINEAR_OFFICIAL_MCP_HEADERS",
    ]
    for key in keys:
        monkeypatch.delenv(key, raising=False)


def test_default_transport_uses_stdio():
    client = LinearMcpClient()

    health = client.get_health()
    assert health["transport"] == "stdio"
    assert health["command"] == "npx"
    assert health["args"] == ["-y", "mcp-remote", DEFAULT_OFFICIAL_MCP_URL]
    assert health["connected"] is False


def test_stdio_args_support_json_array(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("LINEAR_OFFICIAL_MCP_ARGS", '["-y", "mcp-remote", "https://example.com/mcp"]')

    assert LinearMcpClient().get_health()["args"] == ["-y", "mcp-remote", "https://example.com/mcp"]


def test_stdio_args_support_shell_style_string(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("LINEAR_OFFICIAL_MCP_ARGS", "-y mcp-remote https://example.com/mcp --name 'My Client'")

    assert LinearMcpClient().get_health()["args"] == [
        "-y",
        "mcp-remote",
        "https://example.com/mcp",
        "--name",
        "My Client",
    ]


def test_stdio_args_invalid_shell_string_falls_back_to_default(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("LINEAR_OFFICIAL_MCP_ARGS", "-y mcp-remote 'unterminated")

    assert LinearMcpClient().get_health()["args"] == ["-y", "mcp-remote", DEFAULT_OFFICIAL_MCP_URL]


def test_http_transport_with_headers(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("LINEAR_OFFICIAL_MCP_TRANSPORT", "http")
    monkeypatch.setenv("LINEAR_OFFICIAL_MCP_HEADERS", '{"Authorization": "Bearer X"}')

    health = LinearMcpClient().get_health()

    assert health["transport"] == "http"
    assert health["url"] == DEFAULT_OFFICIAL_MCP_URL
    assert health["hasHeaders"] is True


def test_invalid_transport_raises(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("LINEAR_OFFICIAL_MCP_TRANSPORT", "invalid")
    with pytest.raises(ValueError):
        LinearMcpClient()


@pytest.mark.parametrize(
    ("text", "code"),
    [
        ("Rate limit exceeded", "rate_limited"),
        ("RATELIMITED: slow down", "rate_limited"),
        ("HTTP 429 Too Many Requests", "rate_limited"),
        ("Entity not found: Issue", "tool_error"),
        ("", "tool_error"),
    ],
)
def test_classify_error_text(text: str, code: str):
    assert classify_error_text(text) == code


class _FakeText:
    type = "text"

    def __init__(self, text: str):
        self.text = text


class _FakeResult:
    def __init__(self, *, is_error: bool = False, text: str = "", structured=None):
        self.isError = is_error
        self.content = [_FakeText(text)] if text else []
        self.structuredContent = structured


async def _noop() -> None:
    return None


def _client_with_session(monkeypatch: pytest.MonkeyPatch, session) -> LinearMcpClient:
    client = LinearMcpClient()
    client._session = session
    monkeypatch.setattr(client, "_connect", _noop)
    monkeypatch.setattr(client, "_disconnect", _noop)
    return client


def test_tool_error_is_classified(monkeypatch: pytest.MonkeyPatch):
    class _FakeSession:
        async def call_tool(self, name, arguments=None):
            return _FakeResult(is_error=True, text="Rate limit exceeded, retry later")

    client = _client_with_session(monkeypatch, _FakeSession())

    with pytest.raises(LinearApiError) as exc_info:
        asyncio.run(client.call_tool("list_issues", {}))

    assert exc_info.value.is_rate_limited
    assert "retry later" in exc_info.value.message


def test_semantic_error_is_not_retried(monkeypatch: pytest.MonkeyPatch):
    calls = {"count": 0}

    class _FakeSession:
        async def call_tool(self, name, arguments=None):
            calls["count"] += 1
            return _FakeResult(is_error=True, text="Entity not found")

    client = _client_with_session(monkeypatch, _FakeSession())

    with pytest.raises(LinearApiError) as exc_info:
        asyncio.run(client.call_tool("get_issue", {"id": "X"}))

    assert exc_info.value.code == "tool_error"
    assert calls["count"] == 1


def test_transport_failure_reconnects_once(monkeypatch: pytest.MonkeyPatch):
    calls = {"count": 0}

    class _FakeSession:
        async def call_tool(self, name, arguments=None):
            calls["count"] += 1
            if calls["count"] == 1:
                raise ConnectionError("broken pipe")
            return _FakeResult(text='{"teams": [{"id": "t1"}]}')

    client = _client_with_session(monkeypatch, _FakeSession())

    result = asyncio.run(client.call_tool("list_teams", {}))

    assert result == {"teams": [{"id": "t1"}]}
    assert calls["count"] == 2
    assert client.get_health()["failureCount"] == 0


def test_repeated_transport_failure_is_unavailable(monkeypatch: pytest.MonkeyPatch):
    class _FakeSession:
        async def call_tool(self, name, arguments=None):
            raise ConnectionError("broken pipe")

    client = _client_with_session(monkeypatch, _FakeSession())

    with pytest.raises(LinearApiError) as exc_info:
        asyncio.run(client.call_tool("list_teams", {}))

    assert exc_info.value.code == "unavailable"
    assert isinstance(exc_info.value.__cause__, ConnectionError)
    assert client.get_health()["failureCount"] == 2


def test_structured_content_wins_over_text(monkeypatch: pytest.MonkeyPatch):
    class _FakeSession:
        async def call_tool(self, name, arguments=None):
            return _FakeResult(text="ignored", structured={"ok": True})

    client = _client_with_session(monkeypatch, _FakeSession())

    assert asyncio.run(client.call_tool("get_user", {})) == {"ok": True}


def test_list_issues_pages_and_normalizes(monkeypatch: pytest.MonkeyPatch):
    pages = [
        {"issues": [{"id": "a", "status": "Todo", "statusType": "unstarted"}], "nextCursor": "c1"},
        {"issues": [{"id": "b", "state": {"id": "s", "name": "Done", "type": "completed"}}]},
    ]
    seen_args: list[dict] = []

    class _FakeSession:
        async def call_tool(self, name, arguments=None):
            seen_args.append(dict(arguments))
            return _FakeResult(text=json.dumps(pages[len(seen_args) - 1]))

    client = _client_with_session(monkeypatch, _FakeSession())

    issues = asyncio.run(client.list_issues({"assignee": {"isMe": {"eq": True}}}))

    assert [i["id"] for i in issues] == ["a", "b"]
    assert issues[0]["state"] == {"id": None, "name": "Todo", "type": "unstarted"}
    assert seen_args[0] == {"assignee": "me", "limit": 250, "includeArchived": False}
    assert seen_args[1]["cursor"] == "c1"


def test_update_issue_maps_input_names(monkeypatch: pytest.MonkeyPatch):
    seen: dict = {}

    class _FakeSession:
        async def call_tool(self, name, arguments=None):
            seen["name"] = name
            seen["arguments"] = arguments
            return _FakeResult(structured={"issue": {"id": "ENG-1", "title": "t"}})

    client = _client_with_session(monkeypatch, _FakeSession())

    issue = asyncio.run(client.update_issue("ENG-1", {"stateId": "s2", "title": "t"}))

    assert seen == {"name": "update_issue", "arguments": {"id": "ENG-1", "state": "s2", "title": "t"}}
    assert issue["id"] == "ENG-1"
    assert issue["labels"] == []


def test_normalize_flat_issue():
    issue = normalize_issue(
        {
            "id": "uuid",
            "identifier": "ENG-1",
            "status": "In Progress",
            "statusType": "started",
            "assignee": "Ana",
            "assigneeId": "u1",
            "team": "Engineering",
            "teamId": "t1",
            "labels": ["bug"],
            "priority": {"value": 2, "name": "High"},
        }
    )

    assert issue["state"] == {"id": None, "name": "In Progress", "type": "started"}
    assert issue["assignee"] == {"id": "u1", "name": "Ana"}
    assert issue["team"]["id"] == "t1"
    assert issue["project"] is None
    assert issue["labels"] == [{"id": None, "name": "bug"}]
    assert issue["priority"] == 2
    assert "status" not in issue


def test_normalize_graphql_issue_keeps_nested_refs():
    raw = {
        "id": "uuid",
        "state": {"id": "s1", "name": "Todo", "type": "unstarted"},
        "assignee": None,
        "team": {"id": "t1", "name": "Eng", "key": "ENG"},
        "project": {"id": "p1", "name": "Auth"},
        "labels": {"nodes": [{"id": "l1", "name": "Bug"}]},
        "priority": 1,
    }

    issue = normalize_issue(raw)

    assert issue["state"] == raw["state"]
    assert issue["assignee"] is None
    assert issue["project"] == {"id": "p1", "name": "Auth"}
    assert issue["labels"] == [{"id": "l1", "name": "Bug"}]


def test_remote_filter_push_down():
    args = remote_filter_to_tool_args(
        {
            "state": {"id": {"in": ["s1"]}, "type": {"nin": ["canceled", "completed"]}},
            "project": {"id": {"in": ["p1", "p2"]}},
            "labels": {"some": {"id": {"in": ["l1"]}}},
            "assignee": {"id": {"eq": "u1"}},
            "updatedAt": {"gt": "2026-10-01T00:00:00.000Z"},
            "or": [
                {"title": {"containsIgnoreCase": "login"}},
                {"description": {"containsIgnoreCase": "login"}},
            ],
        }
    )

    assert args == {
        "state": "s1",
        "label": "l1",
        "assignee": "u1",
        "updatedAt": "2026-10-01T00:00:00.000Z",
        "query": "login",
    }


def test_issue_input_to_tool_args():
    assert issue_input_to_tool_args({"teamId": "t", "labelIds": ["l"], "priority": 1}) == {
        "team": "t",
        "labels": ["l"],
        "priority": 1,
    }

"""Tests for CredentialMiddleware.

The middleware reads the HTTP request through get_http_request(), so these
tests patch it with a Starlette request built from a raw ASGI scope.
"""

from unittest.mock import AsyncMock, MagicMock, patch
from urllib.parse import urlencode

import pytest
from starlette.requests import Request

import gateway.server as server_module
from gateway.audit import AuditLogger
from gateway.config import Settings
from gateway.credentials import CredentialResolver
from gateway.server import CredentialMiddleware
from gateway.tokens import TokenCodec

TOKEN_KEY = "key_middleware_token_333333"
HEADER_KEY = "key_middleware_header_44444"
FALLBACK_KEY = "key_middleware_env_55555555"


def make_request(query=None, headers=None):
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/mcp",
        "query_string": urlencode(query or {}).encode(),
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
    }
    return Request(scope)


def make_context(tool_name="get_agent"):
    context = MagicMock()
    context.message.name = tool_name
    state = {}
    context.fastmcp_context.set_state.side_effect = state.__setitem__
    context.state = state
    return context


@pytest.fixture
def codec(monkeypatch):
    codec = TokenCodec(secret="middleware-secret")
    monkeypatch.setattr(server_module, "credential_resolver", CredentialResolver(codec))
    return codec


@pytest.fixture
def audit(monkeypatch):
    audit = AuditLogger()
    monkeypatch.setattr(server_module, "audit_logger", audit)
    return audit


@pytest.fixture(autouse=True)
def fallback_settings(monkeypatch):
    monkeypatch.setattr(server_module, "settings", Settings(api_key=FALLBACK_KEY))


async def run_middleware(context, request=None):
    call_next = AsyncMock(return_value="tool-result")
    if request is None:
        side_effect = RuntimeError("No active HTTP request found.")
        with patch("gateway.server.get_http_request", side_effect=side_effect):
            result = await CredentialMiddleware().on_call_tool(context, call_next)
    else:
        with patch("gateway.server.get_http_request", return_value=request):
            result = await CredentialMiddleware().on_call_tool(context, call_next)
    call_next.assert_awaited_once_with(context)
    return result


class TestCredentialMiddleware:
    """Tests for credential resolution on tool calls."""

    @pytest.mark.asyncio
    async def test_query_token(self, codec, audit):
        context = make_context()
        request = make_request(query={"token": codec.mint(TOKEN_KEY)})

        result = await run_middleware(context, request)

        assert result == "tool-result"
        assert context.state["credential"] == TOKEN_KEY
        assert context.state["credential_source"] == "query:token"

    @pytest.mark.asyncio
    async def test_header_token(self, codec, audit):
        context = make_context()
        await run_middleware(context, make_request(headers={"X-MCP-Token": codec.mint(TOKEN_KEY)}))
        assert context.state["credential"] == TOKEN_KEY
        assert context.state["credential_source"] == "header:x-mcp-token"

    @pytest.mark.asyncio
    async def test_bearer_header(self, codec, audit):
        context = make_context()
        await run_middleware(context, make_request(headers={"Authorization": f"Bearer {HEADER_KEY}"}))
        assert context.state["credential"] == HEADER_KEY
        assert context.state["credential_source"] == "header:authorization"

    @pytest.mark.asyncio
    async def test_direct_header(self, codec, audit):
        context = make_context()
        await run_middleware(context, make_request(headers={"x-cursor-api-key": HEADER_KEY}))
        assert context.state["credential"] == HEADER_KEY

    @pytest.mark.asyncio
    async def test_bad_token_uses_fallback(self, codec, audit):
        context = make_context()
        await run_middleware(context, make_request(query={"token": "tampered"}))
        assert context.state["credential"] == FALLBACK_KEY
        assert context.state["credential_source"] == "fallback"

    @pytest.mark.asyncio
    async def test_stdio_uses_fallback(self, codec, audit):
        context = make_context("list_agents")
        await run_middleware(context)
        assert context.state["credential"] == FALLBACK_KEY
        entry = audit.get_recent()[0]
        assert entry["event"] == "credential_resolved"
        assert entry["tool"] == "list_agents"

    @pytest.mark.asyncio
    async def test_no_credential_still_calls_tool(self, codec, audit, monkeypatch):
        monkeypatch.setattr(server_module, "settings", Settings(api_key=None))
        context = make_context("cancel_create_and_wait")

        result = await run_middleware(context, make_request())

        assert result == "tool-result"
        assert context.state["credential"] is None
        assert context.state["credential_source"] == ""
        assert audit.get_recent()[0]["event"] == "credential_missing"

    @pytest.mark.asyncio
    async def test_audit_never_records_credential(self, codec, audit):
        context = make_context()
        await run_middleware(context, make_request(query={"token": codec.mint(TOKEN_KEY)}))
        assert TOKEN_KEY not in str(audit.get_recent())

    def test_middleware_has_on_call_tool(self):
        middleware = CredentialMiddleware()
        assert hasattr(middleware, "on_call_tool")
        assert callable(middleware.on_call_tool)

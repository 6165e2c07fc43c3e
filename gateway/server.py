"""Agent gateway - FastMCP server exposing remote background agents as tools."""

import argparse
import hmac
import logging
import os
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from fastmcp import Context, FastMCP
from fastmcp.exceptions import ToolError
from fastmcp.server.dependencies import get_http_request
from fastmcp.server.middleware import Middleware, MiddlewareContext
from starlette.responses import JSONResponse

from gateway.audit import AuditLogger
from gateway.cancellation import CancellationRegistry
from gateway.client import AgentApiClient
from gateway.config import load_settings
from gateway.credentials import CredentialResolver
from gateway.errors import (
    ApiError,
    ErrorCodes,
    RemoteUnavailableError,
    ValidationError,
    describe_exception,
    invalid_request,
    missing_credential,
)
from gateway.tokens import TokenCodec
from gateway.waiter import (
    DEFAULT_JITTER_RATIO,
    DEFAULT_POLL_INTERVAL_MS,
    DEFAULT_TIMEOUT_MS,
    WaitOrchestrator,
    WaitParams,
)

logger = logging.getLogger("gateway.server")

SERVER_NAME = "cursor-background-agents"
SERVER_VERSION = "1.0.0"
_started_at = time.monotonic()

settings = load_settings()

# Token codec (key derived from TOKEN_SECRET, or ephemeral per process)
token_codec = TokenCodec.from_settings(settings)

# Credential resolver
credential_resolver = CredentialResolver(token_codec)

# Cancellation registry shared by every create_and_wait session
cancellation_registry = CancellationRegistry()

# Wait orchestrator
wait_orchestrator = WaitOrchestrator(cancellation_registry)

# Audit logger
audit_logger = AuditLogger()

# Errors a tool turns into a ToolError for the caller
GATEWAY_ERRORS = (ValidationError, ApiError, RemoteUnavailableError)


def create_api_client(credential: str) -> AgentApiClient:
    """Create an agent service client authenticated with credential."""
    return AgentApiClient(
        api_key=credential,
        base_url=settings.api_url,
        debug=settings.client_debug,
    )


def _request_surfaces() -> tuple[dict, dict]:
    """Return (query params, headers) of the active HTTP request.

    Under the stdio transport there is no HTTP request and both are empty,
    which leaves the fallback credential in charge.
    """
    try:
        request = get_http_request()
    except RuntimeError:
        return {}, {}
    return dict(request.query_params), dict(request.headers)


class CredentialMiddleware(Middleware):
    """Resolve the caller's API key for every tool call.

    Precedence lives in CredentialResolver: zero-storage token, then
    Authorization: Bearer key_..., then direct x-cursor-api-key / x-api-key /
    api_key fields, then CURSOR_API_KEY. The JSON-RPC envelope is not visible
    here, so body fields only apply to callers that hand the resolver a body.

    The result is stored as "credential" and "credential_source" in the
    context state. Missing credentials are not rejected here: tools that
    reach the agent service raise UNAUTHORIZED themselves, and local tools
    such as cancel_create_and_wait keep working without one.
    """

    async def on_call_tool(self, context: MiddlewareContext, call_next):
        query, headers = _request_surfaces()
        credential, source = credential_resolver.resolve_with_source(
            query=query, headers=headers, fallback=settings.api_key,
        )

        tool_name = getattr(context.message, "name", "?")
        if credential:
            audit_logger.credential_resolved(source, tool_name)
        else:
            audit_logger.credential_missing(tool_name)

        context.fastmcp_context.set_state("credential", credential)
        context.fastmcp_context.set_state("credential_source", source if credential else "")

        return await call_next(context)


# Create the MCP server
mcp = FastMCP(
    name=SERVER_NAME,
    instructions=(
        "Launch and manage remote background coding agents. "
        "Use create_agent to start an agent on a GitHub repository, get_agent to check on it, "
        "and add_followup to send it more instructions.\n\n"
        "## Waiting for completion\n\n"
        "create_and_wait creates an agent and blocks until it reaches a terminal status. "
        "The result's finalStatus is one of FINISHED, ERROR, EXPIRED (reported by the agent "
        "service), TIMEOUT (timeout_ms elapsed) or CANCELLED. To make a wait cancellable, "
        "pass any unique string as cancel_token and later call "
        "cancel_create_and_wait(cancel_token=...) from another request.\n\n"
        "## Authentication\n\n"
        "Requests authenticate with a key_... API key: Authorization: Bearer key_..., an "
        "x-cursor-api-key header, or a zero-storage token from POST /connect passed as "
        "?token= or x-mcp-token."
    ),
)
mcp.add_middleware(CredentialMiddleware())


SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Cache-Control": "no-store",
}


def SecureJSONResponse(content, status_code=200):
    """JSONResponse with security headers."""
    resp = JSONResponse(content, status_code=status_code)
    for k, v in SECURITY_HEADERS.items():
        resp.headers[k] = v
    return resp


# ============================================================
# HTTP endpoints
# ============================================================

@mcp.custom_route("/health", methods=["GET"])
async def health(request):
    """Health check endpoint."""
    return JSONResponse({
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": SERVER_VERSION,
        "uptime": round(time.monotonic() - _started_at, 3),
        "cancellableWaits": len(cancellation_registry),
    })


@mcp.custom_route("/", methods=["GET"])
async def discovery(request):
    """Describe the server and where its endpoints live."""
    return JSONResponse({
        "name": SERVER_NAME,
        "version": SERVER_VERSION,
        "endpoints": {
            "mcp": "/mcp",
            "health": "/health",
            "connect": "/connect",
            "adminAudit": "/admin/api/audit",
        },
        "auth": {
            "token": ["?token=", "x-mcp-token"],
            "headers": ["Authorization: Bearer key_...", "x-cursor-api-key", "x-api-key"],
        },
    })


async def _read_api_key(request) -> str:
    """Pull apiKey out of a JSON or form body; empty string if absent."""
    content_type = request.headers.get("content-type", "")
    try:
        if "application/json" in content_type:
            data = await request.json()
        else:
            data = await request.form()
    except ValueError:
        return ""
    if not hasattr(data, "get"):
        return ""
    value = data.get("apiKey")
    return value.strip() if isinstance(value, str) else ""


@mcp.custom_route("/connect", methods=["POST"])
async def connect(request):
    """Mint a zero-storage token for an API key.

    Body (JSON or form): {"apiKey": "key_..."}
    Returns: {"token", "expiresAt", "mcpUrl"}; nothing is stored server-side.
    """
    api_key = await _read_api_key(request)
    if not api_key:
        return JSONResponse(
            {"error": "Missing API key", "code": ErrorCodes.INVALID_REQUEST},
            status_code=400,
        )

    try:
        token, expires_at = token_codec.mint_with_expiry(api_key)
    except ValidationError as e:
        return JSONResponse(
            {"error": e.message, "code": ErrorCodes.INVALID_REQUEST},
            status_code=400,
        )

    audit_logger.token_minted(expires_at)
    base_url = str(request.base_url).rstrip("/")
    return SecureJSONResponse({
        "token": token,
        "expiresAt": expires_at,
        "mcpUrl": f"{base_url}/mcp?token={token}",
        "ephemeral": token_codec.ephemeral,
    })


MAX_AUDIT_LIMIT = 1000


def _authenticate_admin_request(request) -> dict:
    """Check Authorization: Bearer <admin key> against GATEWAY_ADMIN_KEY.

    Without a configured admin key the admin routes stay closed.
    """
    if not settings.admin_key:
        return {"valid": False, "error": "Admin key not configured"}

    auth_header = request.headers.get("authorization", "")
    if not auth_header.startswith("Bearer "):
        return {"valid": False, "error": "Missing admin key"}

    provided = auth_header[len("Bearer "):].strip()
    if not hmac.compare_digest(provided.encode(), settings.admin_key.encode()):
        logger.warning("auth_failed reason=invalid_admin_key")
        return {"valid": False, "error": "Invalid admin key"}

    return {"valid": True, "source": "admin"}


@mcp.custom_route("/admin/api/audit", methods=["GET"])
async def api_admin_audit(request):
    """Query recent audit events. Requires admin key authentication."""
    auth_result = _authenticate_admin_request(request)
    if not auth_result.get("valid"):
        return JSONResponse(
            {"error": auth_result.get("error", "Authentication required"), "code": ErrorCodes.UNAUTHORIZED},
            status_code=401,
        )

    try:
        limit = int(request.query_params.get("limit", "100"))
    except ValueError:
        return JSONResponse(
            {"error": "limit must be an integer", "code": ErrorCodes.INVALID_REQUEST},
            status_code=400,
        )
    limit = max(0, min(limit, MAX_AUDIT_LIMIT))
    event_filter = request.query_params.get("event")

    entries = audit_logger.get_recent(limit=limit, event_filter=event_filter)
    return SecureJSONResponse({"entries": entries, "count": len(entries)})


# ============================================================
# Validation
# ============================================================

MAX_PROMPT_IMAGES = 5
MAX_WEBHOOK_URL_LENGTH = 2048
MIN_WEBHOOK_SECRET_LENGTH = 32
MAX_WEBHOOK_SECRET_LENGTH = 256
MAX_LIST_LIMIT = 100


def _invalid(field: str, reason: str) -> ToolError:
    err = invalid_request(field, reason)
    return ToolError(f"{err.message} {err.suggestion}")


def _non_empty_str(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _validate_prompt(prompt: Any, field_name: str = "prompt") -> dict:
    """Validate a prompt object: {"text": str, "images": [...] (max 5)}."""
    if not isinstance(prompt, dict):
        raise _invalid(field_name, "must be an object with a text field")
    if not _non_empty_str(prompt.get("text")):
        raise _invalid(f"{field_name}.text", "cannot be empty")

    images = prompt.get("images")
    if images is not None:
        if not isinstance(images, list):
            raise _invalid(f"{field_name}.images", "must be a list")
        if len(images) > MAX_PROMPT_IMAGES:
            raise _invalid(f"{field_name}.images", f"maximum {MAX_PROMPT_IMAGES} images allowed")
        for i, image in enumerate(images):
            if not isinstance(image, dict) or not _non_empty_str(image.get("data")):
                raise _invalid(f"{field_name}.images.{i}.data", "image data cannot be empty")
            dimension = image.get("dimension")
            if dimension is None:
                continue
            for side in ("width", "height"):
                value = dimension.get(side) if isinstance(dimension, dict) else None
                if not isinstance(value, int) or isinstance(value, bool) or value < 1:
                    raise _invalid(f"{field_name}.images.{i}.dimension.{side}", "must be a positive integer")
    return prompt


def _validate_source(source: Any) -> dict:
    """Validate a source object: {"repository": str, "ref": str (optional)}."""
    if not isinstance(source, dict):
        raise _invalid("source", "must be an object with a repository field")
    if not _non_empty_str(source.get("repository")):
        raise _invalid("source.repository", "repository URL cannot be empty")
    if "ref" in source and source["ref"] is not None and not _non_empty_str(source["ref"]):
        raise _invalid("source.ref", "git ref cannot be empty")
    return source


def _validate_target(target: Any) -> Optional[dict]:
    """Validate an optional target: {"autoCreatePr": bool, "branchName": str}."""
    if target is None:
        return None
    if not isinstance(target, dict):
        raise _invalid("target", "must be an object")
    if "autoCreatePr" in target and not isinstance(target["autoCreatePr"], bool):
        raise _invalid("target.autoCreatePr", "must be a boolean")
    if "branchName" in target and not _non_empty_str(target["branchName"]):
        raise _invalid("target.branchName", "branch name cannot be empty")
    return target


def _validate_webhook(webhook: Any) -> Optional[dict]:
    """Validate an optional webhook: {"url": http(s) URL, "secret": 32-256 chars}."""
    if webhook is None:
        return None
    if not isinstance(webhook, dict):
        raise _invalid("webhook", "must be an object")
    url = webhook.get("url")
    if not _non_empty_str(url) or not url.startswith(("http://", "https://")):
        raise _invalid("webhook.url", "must be an http:// or https:// URL")
    if len(url) > MAX_WEBHOOK_URL_LENGTH:
        raise _invalid("webhook.url", f"exceeds {MAX_WEBHOOK_URL_LENGTH} characters")
    secret = webhook.get("secret")
    if secret is not None:
        if not isinstance(secret, str) or not (
            MIN_WEBHOOK_SECRET_LENGTH <= len(secret) <= MAX_WEBHOOK_SECRET_LENGTH
        ):
            raise _invalid(
                "webhook.secret",
                f"must be {MIN_WEBHOOK_SECRET_LENGTH}-{MAX_WEBHOOK_SECRET_LENGTH} characters",
            )
    return webhook


def _validate_agent_id(agent_id: Any, field_name: str = "agent_id") -> str:
    if not _non_empty_str(agent_id):
        raise _invalid(field_name, "cannot be empty")
    return agent_id.strip()


def _build_agent_payload(
    prompt: Any,
    source: Any,
    model: Optional[str] = "auto",
    target: Any = None,
    webhook: Any = None,
) -> dict:
    """Validate tool input and assemble the agent creation payload."""
    if model is not None and not isinstance(model, str):
        raise _invalid("model", "must be a string")
    if model is not None and not model.strip():
        raise _invalid("model", "cannot be empty")

    payload = {
        "prompt": _validate_prompt(prompt),
        "model": (model or "auto").strip(),
        "source": _validate_source(source),
    }
    if _validate_target(target) is not None:
        payload["target"] = target
    if _validate_webhook(webhook) is not None:
        payload["webhook"] = webhook
    return payload


# ============================================================
# Tool implementations (testable standalone functions)
# ============================================================

def _tool_error(exc: BaseException, tool: str) -> ToolError:
    message = describe_exception(exc)
    logger.warning("tool_failed tool=%s error_type=%s", tool, type(exc).__name__)
    return ToolError(message)


def _client_for(ctx: Context) -> AgentApiClient:
    """Build an API client from the credential the middleware resolved.

    Raises:
        ToolError: If the request carried no usable credential
    """
    credential = ctx.get_state("credential")
    if not credential:
        err = missing_credential()
        raise ToolError(f"{err.message} {err.suggestion}")
    return create_api_client(credential)


async def _call_remote(
    ctx: Context,
    tool: str,
    fn: Callable[[AgentApiClient], Awaitable[Any]],
) -> Any:
    """Run fn with a per-request client, mapping gateway errors to ToolError."""
    client = _client_for(ctx)
    try:
        async with client:
            return await fn(client)
    except GATEWAY_ERRORS as e:
        raise _tool_error(e, tool) from e


async def _create_agent_impl(client, payload: dict) -> dict:
    """Create an agent and summarize the response."""
    result = await client.create_agent(payload)
    target = result.get("target") or {}
    return {
        "summary": f"Created agent {result.get('id')} with status {result.get('status')}",
        "agentId": result.get("id"),
        "status": result.get("status"),
        "url": target.get("url"),
        "createdAt": result.get("createdAt"),
    }


async def _create_and_wait_impl(orchestrator: WaitOrchestrator, client, params: WaitParams) -> dict:
    """Run one wait session and return its result payload.

    Returns a dict with "summary", "finalStatus" (FINISHED, ERROR, EXPIRED,
    TIMEOUT or CANCELLED), "agentId", "elapsedMs", "agent" (last known
    snapshot) and "statuses" (every status observed, creation included).

    TIMEOUT and CANCELLED are ordinary results. Creation failures and
    non-transient poll failures propagate as exceptions.
    """
    result = await orchestrator.create_and_wait(params, client)
    audit_logger.wait_finished(result.agent_id, result.outcome.value, result.elapsed_ms)
    return result.to_dict()


def _cancel_create_and_wait_impl(registry: CancellationRegistry, cancel_token: Any) -> dict:
    """Signal cancellation for a pending create_and_wait session.

    Unknown tokens are not an error; "pending" reports whether a session
    was waiting on the token.
    """
    if not _non_empty_str(cancel_token):
        raise _invalid("cancel_token", "cannot be empty")
    pending = registry.signal(cancel_token)
    audit_logger.wait_cancel_requested(pending)
    return {
        "summary": "Cancellation requested for createAndWait invocation",
        "cancelToken": cancel_token,
        "pending": pending,
    }


async def _list_agents_impl(client, limit: Optional[int] = None, cursor: Optional[str] = None) -> dict:
    """List agents with pagination."""
    if limit is not None and (
        not isinstance(limit, int) or isinstance(limit, bool) or not 1 <= limit <= MAX_LIST_LIMIT
    ):
        raise _invalid("limit", f"must be an integer between 1 and {MAX_LIST_LIMIT}")
    if cursor is not None and not _non_empty_str(cursor):
        raise _invalid("cursor", "cannot be empty")

    result = await client.list_agents(limit=limit, cursor=cursor)
    agents = result.get("agents") or []
    return {
        "summary": f"Found {len(agents)} agent(s)",
        "count": len(agents),
        "agents": agents,
        "nextCursor": result.get("nextCursor"),
    }


async def _get_agent_impl(client, agent_id: str) -> dict:
    return await client.get_agent(_validate_agent_id(agent_id))


async def _delete_agent_impl(client, agent_id: str) -> dict:
    agent_id = _validate_agent_id(agent_id)
    result = await client.delete_agent(agent_id)
    return {"summary": f"Deleted agent {agent_id}", "agentId": result.get("id", agent_id)}


async def _add_followup_impl(client, agent_id: str, prompt: Any) -> dict:
    agent_id = _validate_agent_id(agent_id)
    result = await client.add_followup(agent_id, {"prompt": _validate_prompt(prompt)})
    return {"summary": f"Follow-up sent to agent {agent_id}", "agentId": result.get("id", agent_id)}


async def _get_agent_conversation_impl(client, agent_id: str) -> dict:
    agent_id = _validate_agent_id(agent_id)
    result = await client.get_agent_conversation(agent_id)
    messages = result.get("messages") or []
    return {"agentId": agent_id, "count": len(messages), "messages": messages}


# ============================================================
# MCP Tools
# ============================================================

@mcp.tool()
async def create_agent(
    ctx: Context,
    prompt: dict,
    source: dict,
    model: str = "auto",
    target: Optional[dict] = None,
    webhook: Optional[dict] = None,
) -> dict:
    """Create a new background agent to work on a repository.

    Args:
        ctx: MCP context (injected automatically)
        prompt: {"text": "...", "images": [{"data": base64, "dimension": {...}}]}
        source: {"repository": "https://github.com/org/repo", "ref": "main"}
        model: Model to use (default "auto")
        target: Optional {"autoCreatePr": bool, "branchName": str}
        webhook: Optional {"url": str, "secret": str (32-256 chars)}

    Returns:
        Agent id, status, url and creation time
    """
    payload = _build_agent_payload(prompt, source, model, target, webhook)
    return await _call_remote(ctx, "create_agent", lambda client: _create_agent_impl(client, payload))


@mcp.tool()
async def create_and_wait(
    ctx: Context,
    prompt: dict,
    source: dict,
    model: str = "auto",
    target: Optional[dict] = None,
    webhook: Optional[dict] = None,
    poll_interval_ms: float = DEFAULT_POLL_INTERVAL_MS,
    timeout_ms: float = DEFAULT_TIMEOUT_MS,
    jitter_ratio: float = DEFAULT_JITTER_RATIO,
    cancel_token: Optional[str] = None,
) -> dict:
    """Create an agent and wait until it reaches a terminal status.

    Args:
        ctx: MCP context (injected automatically)
        prompt: Same as create_agent
        source: Same as create_agent
        model: Same as create_agent
        target: Same as create_agent
        webhook: Same as create_agent
        poll_interval_ms: Delay between status polls (default 2000)
        timeout_ms: Total time budget (default 600000)
        jitter_ratio: Random +/- fraction applied to each delay, 0 <= ratio < 1 (default 0)
        cancel_token: Optional id to cancel this wait with cancel_create_and_wait;
            rejected while another pending wait holds the same id

    Returns:
        finalStatus (FINISHED/ERROR/EXPIRED/TIMEOUT/CANCELLED), agentId,
        elapsedMs and the last known agent snapshot
    """
    payload = _build_agent_payload(prompt, source, model, target, webhook)
    try:
        params = WaitParams(
            payload=payload,
            poll_interval_ms=poll_interval_ms,
            timeout_ms=timeout_ms,
            jitter_ratio=jitter_ratio,
            cancel_token=cancel_token,
        )
    except ValidationError as e:
        raise _tool_error(e, "create_and_wait") from e

    return await _call_remote(
        ctx, "create_and_wait",
        lambda client: _create_and_wait_impl(wait_orchestrator, client, params),
    )


@mcp.tool()
def cancel_create_and_wait(cancel_token: str) -> dict:
    """Request cancellation of a pending create_and_wait call.

    The waiting call notices at its next poll tick and returns
    finalStatus=CANCELLED.

    Args:
        cancel_token: The cancel_token passed to create_and_wait
    """
    return _cancel_create_and_wait_impl(cancellation_registry, cancel_token)


@mcp.tool()
async def list_agents(
    ctx: Context,
    limit: Optional[int] = None,
    cursor: Optional[str] = None,
) -> dict:
    """List background agents for the authenticated user.

    Args:
        ctx: MCP context (injected automatically)
        limit: Number of agents to return (1-100)
        cursor: Pagination cursor from a previous response
    """
    return await _call_remote(ctx, "list_agents", lambda client: _list_agents_impl(client, limit, cursor))


@mcp.tool()
async def get_agent(ctx: Context, agent_id: str) -> dict:
    """Get the current status and details of an agent."""
    return await _call_remote(ctx, "get_agent", lambda client: _get_agent_impl(client, agent_id))


@mcp.tool()
async def delete_agent(ctx: Context, agent_id: str) -> dict:
    """Delete an agent permanently."""
    return await _call_remote(ctx, "delete_agent", lambda client: _delete_agent_impl(client, agent_id))


@mcp.tool()
async def add_followup(ctx: Context, agent_id: str, prompt: dict) -> dict:
    """Send additional instructions to a running agent."""
    return await _call_remote(ctx, "add_followup", lambda client: _add_followup_impl(client, agent_id, prompt))


@mcp.tool()
async def get_agent_conversation(ctx: Context, agent_id: str) -> dict:
    """Get the conversation history of an agent."""
    return await _call_remote(
        ctx, "get_agent_conversation",
        lambda client: _get_agent_conversation_impl(client, agent_id),
    )


@mcp.tool()
async def get_me(ctx: Context) -> dict:
    """Describe the API key being used."""
    return await _call_remote(ctx, "get_me", lambda client: client.get_me())


@mcp.tool()
async def list_models(ctx: Context) -> dict:
    """List the models available to background agents."""
    return await _call_remote(ctx, "list_models", lambda client: client.list_models())


@mcp.tool()
async def list_repositories(ctx: Context) -> dict:
    """List GitHub repositories the API key can access."""
    return await _call_remote(ctx, "list_repositories", lambda client: client.list_repositories())


def main(argv: Optional[list[str]] = None):
    """Run the gateway server."""
    parser = argparse.ArgumentParser(description="Background agents MCP gateway")
    parser.add_argument(
        "--transport",
        choices=("http", "stdio"),
        default=os.environ.get("MCP_TRANSPORT", "http"),
        help="MCP transport (default: http, or $MCP_TRANSPORT)",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    logger.info(
        "Config: api_url=%s fallback_api_key=%s token_secret=%s token_ttl_days=%s",
        settings.api_url,
        "yes" if settings.api_key else "no",
        "yes" if settings.token_secret else "no",
        settings.token_ttl_days,
    )
    if not settings.token_secret:
        logger.warning(
            "TOKEN_SECRET not set - token-based connections will be ephemeral per process "
            "and stop working after a restart."
        )

    if args.transport == "stdio":
        logger.info("Starting gateway on stdio")
        mcp.run(transport="stdio")
        return

    logger.info("Starting gateway on %s:%s", settings.host, settings.port)
    mcp.run(transport="http", host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()

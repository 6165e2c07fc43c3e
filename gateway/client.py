"""Async HTTP client for the remote background-agent service."""

import json
import logging
from typing import Any, Optional

import httpx

from gateway.config import DEFAULT_API_URL
from gateway.errors import RemoteUnavailableError, api_error_for_status

logger = logging.getLogger("gateway.client")

USER_AGENT = "agent-gateway/1.0.0"
DEFAULT_TIMEOUT = 30.0

SENSITIVE_MARKERS = ("secret", "token", "key", "authorization", "password", "prompt")
MAX_LOG_DEPTH = 4
MAX_LOG_CHARS = 4000


def _is_sensitive(key: str) -> bool:
    lower = key.lower()
    return any(marker in lower for marker in SENSITIVE_MARKERS)


def sanitize(value: Any, depth: int = 0) -> Any:
    """Redact sensitive keys and truncate deep nesting for debug logs."""
    if isinstance(value, (dict, list, tuple)) and depth >= MAX_LOG_DEPTH:
        return "[Truncated]"
    if isinstance(value, dict):
        return {
            k: "***REDACTED***" if _is_sensitive(str(k)) else sanitize(v, depth + 1)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [sanitize(item, depth + 1) for item in value]
    return value


class AgentApiClient:
    """Client for the /v0 agent API.

    Use as an async context manager, or call aclose() when done:

        async with AgentApiClient(api_key="key_...") as client:
            agent = await client.get_agent("bc_123")
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = DEFAULT_API_URL,
        timeout: float = DEFAULT_TIMEOUT,
        debug: bool = False,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.debug = debug
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        }
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "AgentApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def _log_payload(self, label: str, payload: Any) -> None:
        if not self.debug or payload is None:
            return
        try:
            serialized = json.dumps(sanitize(payload))
        except (TypeError, ValueError):
            return
        logger.debug("%s %s", label, serialized[:MAX_LOG_CHARS])

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        if self.debug:
            logger.debug("api_request method=%s path=%s", method, path)
        self._log_payload("request_payload", kwargs.get("json"))

        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            logger.warning("api_unreachable method=%s path=%s error=%s", method, path, e)
            raise RemoteUnavailableError(self.base_url, e) from e

        return self._handle_response(response)

    def _handle_response(self, response: httpx.Response) -> Any:
        """Decode a response, raising the mapped exception for error statuses."""
        try:
            data = response.json() if response.content else {}
        except ValueError:
            data = {"raw": response.text}

        if response.status_code >= 400:
            error = data.get("error") if isinstance(data, dict) else None
            if isinstance(error, dict):
                message = error.get("message") or response.reason_phrase
                code = error.get("code")
            else:
                message = error or response.reason_phrase or f"HTTP {response.status_code}"
                code = None
            logger.warning(
                "api_response_error status=%d url=%s message=%s",
                response.status_code, response.request.url.path, message,
            )
            self._log_payload("error_payload", data)
            raise api_error_for_status(response.status_code, str(message), code, response=data)

        if self.debug:
            logger.debug("api_response status=%d url=%s", response.status_code, response.request.url.path)
        self._log_payload("response_payload", data)
        return data

    # --- Agents ---

    async def create_agent(self, payload: dict) -> dict:
        """Launch a background agent."""
        return await self._request("POST", "/v0/agents", json=payload)

    async def list_agents(self, limit: Optional[int] = None, cursor: Optional[str] = None) -> dict:
        """List agents, newest first, one page at a time."""
        params = {}
        if limit is not None:
            params["limit"] = limit
        if cursor:
            params["cursor"] = cursor
        return await self._request("GET", "/v0/agents", params=params)

    async def get_agent(self, agent_id: str) -> dict:
        """Fetch the current state of an agent."""
        return await self._request("GET", f"/v0/agents/{agent_id}")

    async def delete_agent(self, agent_id: str) -> dict:
        """Delete an agent permanently."""
        return await self._request("DELETE", f"/v0/agents/{agent_id}")

    async def add_followup(self, agent_id: str, payload: dict) -> dict:
        """Send a follow-up prompt to a running agent."""
        return await self._request("POST", f"/v0/agents/{agent_id}/followup", json=payload)

    async def get_agent_conversation(self, agent_id: str) -> dict:
        """Fetch an agent's conversation history."""
        return await self._request("GET", f"/v0/agents/{agent_id}/conversation")

    # --- Account ---

    async def get_me(self) -> dict:
        """Describe the API key in use."""
        return await self._request("GET", "/v0/me")

    async def list_models(self) -> dict:
        return await self._request("GET", "/v0/models")

    async def list_repositories(self) -> dict:
        return await self._request("GET", "/v0/repositories")

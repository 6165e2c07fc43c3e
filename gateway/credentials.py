"""Per-request API key resolution.

Precedence, first match wins:

1. Zero-storage token: ``?token=`` query parameter, else ``x-mcp-token`` header.
   A token that fails to decode counts as absent and resolution moves on to
   step 2; it is never reported differently from "no token".
2. ``Authorization: Bearer key_...``, skipped when the header mentions oauth
   (delegated-auth access tokens are not API keys) or the value lacks the
   ``key_`` prefix.
3. Direct fields, in order: ``x-cursor-api-key`` header, ``x-api-key`` header,
   ``api_key`` query parameter, ``cursor_api_key`` body field.
4. The deployment-wide fallback (CURSOR_API_KEY).
"""

import logging
from typing import Any, Mapping, Optional

from gateway.tokens import CREDENTIAL_PREFIX, TokenCodec

logger = logging.getLogger("gateway.credentials")

TOKEN_QUERY_PARAM = "token"
TOKEN_HEADER = "x-mcp-token"
DELEGATED_AUTH_MARKER = "oauth"

# (surface, field) pairs for step 3, in precedence order.
DIRECT_CREDENTIAL_FIELDS = (
    ("header", "x-cursor-api-key"),
    ("header", "x-api-key"),
    ("query", "api_key"),
    ("body", "cursor_api_key"),
)


def _text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


class CredentialResolver:
    """Resolves the effective API key for one inbound request.

    Stateless apart from the codec it holds; safe to share across requests.
    """

    def __init__(self, codec: TokenCodec):
        self.codec = codec

    def resolve(
        self,
        query: Optional[Mapping[str, Any]] = None,
        headers: Optional[Mapping[str, Any]] = None,
        body: Optional[Mapping[str, Any]] = None,
        fallback: Optional[str] = None,
    ) -> Optional[str]:
        """Return the effective API key (fallback when nothing else matches)."""
        credential, _source = self.resolve_with_source(query, headers, body, fallback)
        return credential

    def resolve_with_source(
        self,
        query: Optional[Mapping[str, Any]] = None,
        headers: Optional[Mapping[str, Any]] = None,
        body: Optional[Mapping[str, Any]] = None,
        fallback: Optional[str] = None,
    ) -> tuple[Optional[str], str]:
        """Resolve the API key and report which surface supplied it.

        Returns:
            (credential, source) where source is e.g. "query:token",
            "header:authorization", "header:x-api-key" or "fallback".
        """
        surfaces = {
            "query": dict(query or {}),
            "header": {str(k).lower(): v for k, v in (headers or {}).items()},
            "body": dict(body) if isinstance(body, Mapping) else {},
        }

        # 1. Zero-storage token
        token_source = None
        token = _text(surfaces["query"].get(TOKEN_QUERY_PARAM))
        if token:
            token_source = f"query:{TOKEN_QUERY_PARAM}"
        else:
            token = _text(surfaces["header"].get(TOKEN_HEADER))
            if token:
                token_source = f"header:{TOKEN_HEADER}"
        if token:
            credential = self.codec.decode(token)
            if credential:
                return credential, token_source
            # Invalid and expired tokens fall through exactly like a missing one.
            logger.info("token_unusable source=%s", token_source)

        # 2. Bearer API key
        bearer = self._bearer_credential(surfaces["header"].get("authorization"))
        if bearer:
            return bearer, "header:authorization"

        # 3. Direct fields
        for surface, field in DIRECT_CREDENTIAL_FIELDS:
            value = _text(surfaces[surface].get(field))
            if value:
                return value, f"{surface}:{field}"

        # 4. Deployment default
        return fallback, "fallback"

    @staticmethod
    def _bearer_credential(authorization: Any) -> Optional[str]:
        header = _text(authorization)
        if not header:
            return None
        if DELEGATED_AUTH_MARKER in header.lower():
            return None
        parts = header.split(None, 1)
        if len(parts) != 2 or parts[0].lower() != "bearer":
            return None
        value = parts[1].strip()
        if not value.startswith(CREDENTIAL_PREFIX):
            return None
        return value

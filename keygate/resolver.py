"""Key Resolver - pulls a candidate API key out of an inbound request.

Sources are tried in order and the first non-empty value wins:

1. ``?apikey=`` query parameter
2. ``x-api-key`` header
3. ``Authorization`` header (``Bearer `` prefix stripped when present)
4. ``apikey`` field of a JSON object body
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)

BODY_METHODS = ("POST", "PUT", "PATCH")
BEARER_PREFIX = "Bearer "


@dataclass(frozen=True)
class CredentialSource:
    """Read-only view of the request parts a key may arrive in."""

    query: Mapping[str, str] = field(default_factory=dict)
    headers: Mapping[str, str] = field(default_factory=dict)
    body: Optional[Mapping[str, Any]] = None

    def header(self, name: str) -> Optional[str]:
        name = name.lower()
        for key, value in self.headers.items():
            if key.lower() == name:
                return value
        return None


def _non_empty(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value
    return None


def from_query(source: CredentialSource) -> Optional[str]:
    return _non_empty(source.query.get("apikey"))


def from_api_key_header(source: CredentialSource) -> Optional[str]:
    return _non_empty(source.header("x-api-key"))


def from_authorization(source: CredentialSource) -> Optional[str]:
    value = _non_empty(source.header("authorization"))
    if value and value.startswith(BEARER_PREFIX):
        return _non_empty(value[len(BEARER_PREFIX):])
    return value


def from_body(source: CredentialSource) -> Optional[str]:
    if not source.body:
        return None
    return _non_empty(source.body.get("apikey"))


Extractor = Callable[[CredentialSource], Optional[str]]

EXTRACTORS: Tuple[Extractor, ...] = (
    from_query,
    from_api_key_header,
    from_authorization,
    from_body,
)


def resolve_key(source: CredentialSource, extractors: Tuple[Extractor, ...] = EXTRACTORS) -> Optional[str]:
    """Return the first key any extractor finds, or ``None``."""
    for extractor in extractors:
        key = extractor(source)
        if key:
            return key
    return None


async def source_from_request(request) -> CredentialSource:
    """Build a :class:`CredentialSource` from a Starlette request.

    The body is only consulted for methods that carry one; anything that is
    not a JSON object counts as no body.
    """
    body: Optional[Dict[str, Any]] = None
    if request.method.upper() in BODY_METHODS:
        raw = await request.body()
        if raw:
            try:
                decoded = json.loads(raw)
            except (UnicodeDecodeError, json.JSONDecodeError):
                logger.debug("Ignoring non-JSON body on %s %s", request.method, request.url.path)
                decoded = None
            if isinstance(decoded, dict):
                body = decoded
    return CredentialSource(query=dict(request.query_params), headers=dict(request.headers), body=body)

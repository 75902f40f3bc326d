"""Solid OIDC issuer discovery.

Resolves an issuer's OpenID configuration, optionally starting from a WebID. A WebID
profile is searched for ``solid:oidcIssuer`` in JSON-LD or Turtle; when none is declared
the origin of the WebID is used as the issuer.
"""

import asyncio
import logging
import re
from typing import Any, List, Optional
from urllib.parse import urlparse

from aiohttp import ClientError, ClientSession, ClientTimeout
from pydantic import BaseModel, ConfigDict

from social.quotevote.podsync.errors import DiscoveryError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0

OIDC_ISSUER_PREDICATES = (
    "solid:oidcIssuer",
    "http://www.w3.org/ns/solid/terms#oidcIssuer",
)

TURTLE_ISSUER_PATTERN = re.compile(
    r"(?:solid:oidcIssuer|<http://www\.w3\.org/ns/solid/terms#oidcIssuer>)\s+<([^>]+)>"
)

REQUIRED_METADATA_FIELDS = ("issuer", "authorization_endpoint", "token_endpoint")


class IssuerMetadata(BaseModel):
    """Discovered configuration for one OpenID provider.

    Unknown fields from the provider document are kept.
    """

    model_config = ConfigDict(extra="allow", frozen=True)

    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    jwks_uri: Optional[str] = None
    registration_endpoint: Optional[str] = None
    userinfo_endpoint: Optional[str] = None
    end_session_endpoint: Optional[str] = None
    scopes_supported: Optional[List[str]] = None
    response_types_supported: Optional[List[str]] = None
    grant_types_supported: Optional[List[str]] = None
    subject_types_supported: Optional[List[str]] = None
    id_token_signing_alg_values_supported: Optional[List[str]] = None


def looks_like_webid(value: str) -> bool:
    """Check if value references an identity document rather than a bare issuer.

    Args:
        value: Issuer URL or WebID

    Returns:
        True if the URL has a fragment or a non-empty path
    """
    parsed = urlparse(value)
    return bool(parsed.fragment) or len(parsed.path.strip("/")) > 0


def validate_issuer_url(issuer: str) -> bool:
    """Check that an issuer is an https URL, or http on localhost.

    Args:
        issuer: Issuer URL to validate

    Returns:
        True if the issuer can be used
    """
    try:
        parsed = urlparse(issuer)
        hostname = parsed.hostname
    except (ValueError, AttributeError):
        return False

    if not hostname:
        return False
    if parsed.scheme == "https":
        return True
    return parsed.scheme == "http" and hostname == "localhost"


def _issuer_value(value: Any) -> Optional[str]:
    if isinstance(value, str) and value:
        return value
    if isinstance(value, dict):
        return _issuer_value(value.get("@id", None))
    if isinstance(value, list):
        return next(filter(None, map(_issuer_value, value)), None)
    return None


def extract_issuer_from_jsonld(data: Any, depth: int = 0) -> Optional[str]:
    """Find the OIDC issuer declared in a JSON-LD WebID document.

    Looks for ``solid:oidcIssuer`` (compact or expanded) on the top-level node and on
    the nodes of one level of ``@graph``.

    Args:
        data: Parsed JSON-LD document
        depth: Current ``@graph`` nesting level

    Returns:
        Issuer URL if declared, None otherwise
    """
    if isinstance(data, list):
        for item in data:
            issuer = extract_issuer_from_jsonld(item, depth)
            if issuer is not None:
                return issuer
        return None

    if not isinstance(data, dict):
        return None

    for predicate in OIDC_ISSUER_PREDICATES:
        issuer = _issuer_value(data.get(predicate, None))
        if issuer is not None:
            return issuer

    graph = data.get("@graph", None)
    if depth == 0 and isinstance(graph, list):
        for item in graph:
            issuer = extract_issuer_from_jsonld(item, depth + 1)
            if issuer is not None:
                return issuer

    return None


def extract_issuer_from_turtle(body: str) -> Optional[str]:
    """Find the OIDC issuer declared in a Turtle WebID document."""
    match = TURTLE_ISSUER_PATTERN.search(body)
    if match is None:
        return None
    return match.group(1)


async def discover_issuer_from_webid(
    http_session: ClientSession, web_id: str, timeout: float = DEFAULT_TIMEOUT
) -> str:
    """Resolve the issuer URL declared by a WebID profile document.

    Args:
        http_session: HTTP client session
        web_id: User's WebID
        timeout: Request timeout in seconds

    Returns:
        Issuer URL, or the WebID's origin when no issuer is declared

    Raises:
        DiscoveryError: If the WebID document cannot be fetched
    """
    try:
        async with http_session.get(
            web_id,
            headers={"Accept": "application/ld+json, application/json, text/turtle"},
            timeout=ClientTimeout(total=timeout),
        ) as resp:
            if resp.status < 200 or resp.status >= 300:
                raise DiscoveryError(
                    f"Failed to fetch WebID: {resp.status} {resp.reason}",
                    status=resp.status,
                )

            content_type = resp.headers.get("Content-Type", "")
            issuer: Optional[str] = None
            if "json" in content_type:
                issuer = extract_issuer_from_jsonld(await resp.json(content_type=None))
            elif content_type.startswith("text/"):
                issuer = extract_issuer_from_turtle(await resp.text())

            if issuer is not None:
                return issuer
    except DiscoveryError as e:
        raise DiscoveryError(
            f"Failed to discover issuer from WebID {web_id}: {e}",
            issuer=web_id,
            status=e.status,
        ) from e
    except (ClientError, asyncio.TimeoutError, ValueError) as e:
        raise DiscoveryError(
            f"Failed to discover issuer from WebID {web_id}: {e!r}", issuer=web_id
        ) from e

    logger.debug("No oidcIssuer in WebID %s, falling back to its origin", web_id)
    parsed = urlparse(web_id)
    return f"{parsed.scheme}://{parsed.netloc}"


async def discover_issuer(
    http_session: ClientSession,
    issuer_or_web_id: str,
    timeout: float = DEFAULT_TIMEOUT,
) -> IssuerMetadata:
    """Discover OIDC issuer metadata from an issuer URL or a WebID.

    Args:
        http_session: HTTP client session
        issuer_or_web_id: Issuer URL or WebID
        timeout: Request timeout in seconds, applied to each fetch

    Returns:
        Validated issuer metadata

    Raises:
        DiscoveryError: If the configuration cannot be fetched or is missing
            issuer, authorization_endpoint or token_endpoint
    """
    if looks_like_webid(issuer_or_web_id):
        issuer_url = await discover_issuer_from_webid(
            http_session, issuer_or_web_id, timeout
        )
    else:
        issuer_url = issuer_or_web_id

    issuer_url = issuer_url.rstrip("/")
    well_known_url = f"{issuer_url}/.well-known/openid-configuration"

    try:
        async with http_session.get(
            well_known_url,
            headers={"Accept": "application/json"},
            timeout=ClientTimeout(total=timeout),
        ) as resp:
            if resp.status < 200 or resp.status >= 300:
                raise DiscoveryError(
                    f"Failed to fetch issuer metadata: {resp.status} {resp.reason}",
                    status=resp.status,
                )
            body = await resp.json(content_type=None)
    except DiscoveryError as e:
        raise DiscoveryError(
            f"Issuer discovery failed for {issuer_url}: {e}",
            issuer=issuer_url,
            status=e.status,
        ) from e
    except (ClientError, asyncio.TimeoutError, ValueError) as e:
        raise DiscoveryError(
            f"Issuer discovery failed for {issuer_url}: {e!r}", issuer=issuer_url
        ) from e

    if not isinstance(body, dict) or not all(
        body.get(field, None) for field in REQUIRED_METADATA_FIELDS
    ):
        raise DiscoveryError(
            f"Issuer discovery failed for {issuer_url}: "
            "Invalid issuer metadata: missing required fields",
            issuer=issuer_url,
        )

    return IssuerMetadata(**body)

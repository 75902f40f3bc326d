"""
Solid OIDC Authorization Flow

This module implements the client side of the OAuth 2.0 authorization code flow used to
connect a Solid Pod:

- OAuth 2.0 Authorization Code Grant (RFC 6749)
- Proof Key for Code Exchange (PKCE) (RFC 7636), S256 challenge method
- Refresh Token Grant (RFC 6749 section 6)

The flow is implemented in three stages:
1. Initialization (`generate_authorization_url`): Discover the issuer, prepare the PKCE
   challenge and CSRF state, and build the URL the user is redirected to
2. Completion (`exchange_code_for_tokens`): Exchange the authorization code and the PKCE
   verifier for a token bundle
3. Refresh (`refresh_access_token`): Use a refresh token to obtain a new access token

The caller is responsible for holding the ``state`` and ``code_verifier`` between the
first two stages (see ``social.quotevote.podsync.oidc.state``).

ID tokens are decoded with `parse_id_token` for their claims only. Signatures are not
verified.
"""

import asyncio
import base64
import hashlib
import json
import logging
import secrets
from typing import Any, Dict, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from aiohttp import ClientError, ClientSession, ClientTimeout, FormData
from jwcrypto.common import base64url_decode
from pydantic import BaseModel, ConfigDict

from social.quotevote.podsync.errors import (
    DiscoveryError,
    IdTokenError,
    TokenError,
)
from social.quotevote.podsync.oidc.discovery import DEFAULT_TIMEOUT, discover_issuer

logger = logging.getLogger(__name__)

DEFAULT_SCOPE = "openid profile offline_access"
STATE_LENGTH = 32
CODE_VERIFIER_LENGTH = 64


class TokenBundle(BaseModel):
    """Tokens returned by a token endpoint.

    Providers may return additional fields, which are kept. Instances must never be
    logged.
    """

    model_config = ConfigDict(extra="allow")

    access_token: str
    refresh_token: Optional[str] = None
    id_token: Optional[str] = None
    token_type: str = "Bearer"
    expires_in: Optional[int] = None
    scope: Optional[str] = None


class AuthorizationRequest(BaseModel):
    """Result of starting an authorization: where to send the user, and what to keep."""

    url: str
    state: str
    code_verifier: str
    issuer: str


def generate_random_string(length: int) -> str:
    """Generate a URL-safe random string from ``length`` random bytes, truncated to ``length``."""
    encoded = base64.urlsafe_b64encode(secrets.token_bytes(length))
    return encoded.decode("ascii").rstrip("=")[:length]


def generate_code_challenge(code_verifier: str) -> str:
    """Derive the S256 PKCE challenge for a verifier."""
    hashed = hashlib.sha256(code_verifier.encode("ascii")).digest()
    encoded = base64.urlsafe_b64encode(hashed)
    return encoded.decode("ascii").rstrip("=")


def generate_pkce_verifier() -> Tuple[str, str]:
    """
    Generate PKCE (Proof Key for Code Exchange) verifier and challenge.

    Returns:
        Tuple[str, str]: A tuple containing (code_verifier, code_challenge)
        - code_verifier: The secret sent only to the token endpoint
        - code_challenge: SHA-256 of the verifier, sent in the authorization request
    """
    code_verifier = generate_random_string(CODE_VERIFIER_LENGTH)
    return (code_verifier, generate_code_challenge(code_verifier))


async def generate_authorization_url(
    http_session: ClientSession,
    issuer: str,
    client_id: str,
    redirect_uri: str,
    scope: Optional[str] = None,
    state: Optional[str] = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> AuthorizationRequest:
    """
    Build the authorization URL for a Solid identity provider.

    Args:
        http_session: HTTP session for discovery
        issuer: Issuer URL or WebID
        client_id: OAuth client identifier
        redirect_uri: Callback URL
        scope: Requested scope, defaults to ``openid profile offline_access``
        state: CSRF state, generated when not supplied
        timeout: Discovery timeout in seconds

    Returns:
        AuthorizationRequest with the URL, the state and the PKCE verifier

    Raises:
        DiscoveryError: If the issuer cannot be discovered
    """
    metadata = await discover_issuer(http_session, issuer, timeout)

    if state is None:
        state = generate_random_string(STATE_LENGTH)
    (code_verifier, code_challenge) = generate_pkce_verifier()

    parsed_authorization_endpoint = urlparse(metadata.authorization_endpoint)
    query = dict(parse_qsl(parsed_authorization_endpoint.query))
    query.update(
        {
            "response_type": "code",
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "scope": scope or DEFAULT_SCOPE,
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
        }
    )
    parsed_authorization_endpoint = parsed_authorization_endpoint._replace(
        query=urlencode(query)
    )

    return AuthorizationRequest(
        url=urlunparse(parsed_authorization_endpoint),
        state=state,
        code_verifier=code_verifier,
        issuer=metadata.issuer,
    )


async def _token_request(
    http_session: ClientSession,
    issuer: str,
    fields: Dict[str, str],
    timeout: float,
    label: str,
) -> TokenBundle:
    metadata = await discover_issuer(http_session, issuer, timeout)

    async with http_session.post(
        metadata.token_endpoint,
        data=FormData(fields),
        headers={"Accept": "application/json"},
        timeout=ClientTimeout(total=timeout),
    ) as resp:
        if resp.status < 200 or resp.status >= 300:
            body = await resp.text()
            raise TokenError(
                f"{label} failed: {resp.status} {resp.reason} - {body}",
                status=resp.status,
                body=body,
            )
        token_response = await resp.json(content_type=None)

    if not isinstance(token_response, dict) or not token_response.get(
        "access_token", None
    ):
        raise TokenError("Invalid token response: missing access_token")

    return TokenBundle(**token_response)


async def exchange_code_for_tokens(
    http_session: ClientSession,
    code: str,
    code_verifier: str,
    redirect_uri: str,
    issuer: str,
    client_id: str,
    timeout: float = DEFAULT_TIMEOUT,
) -> TokenBundle:
    """
    Exchange an authorization code for tokens.

    Raises:
        TokenError: ``Failed to exchange code for tokens: <cause>``, carrying the HTTP
            status and body when the token endpoint rejected the request
    """
    try:
        return await _token_request(
            http_session,
            issuer,
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
                "client_id": client_id,
                "code_verifier": code_verifier,
            },
            timeout,
            "Token exchange",
        )
    except TokenError as e:
        raise TokenError(
            f"Failed to exchange code for tokens: {e}", status=e.status, body=e.body
        ) from e
    except (DiscoveryError, ClientError, asyncio.TimeoutError, ValueError) as e:
        raise TokenError(f"Failed to exchange code for tokens: {e}") from e


async def refresh_access_token(
    http_session: ClientSession,
    refresh_token: str,
    issuer: str,
    client_id: str,
    timeout: float = DEFAULT_TIMEOUT,
) -> TokenBundle:
    """
    Obtain a new access token with a refresh token.

    The provider may omit ``refresh_token`` from the response; the caller keeps the
    previous one in that case.

    Raises:
        TokenError: ``Failed to refresh access token: <cause>``
    """
    try:
        return await _token_request(
            http_session,
            issuer,
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": client_id,
            },
            timeout,
            "Token refresh",
        )
    except TokenError as e:
        raise TokenError(
            f"Failed to refresh access token: {e}", status=e.status, body=e.body
        ) from e
    except (DiscoveryError, ClientError, asyncio.TimeoutError, ValueError) as e:
        raise TokenError(f"Failed to refresh access token: {e}") from e


def parse_id_token(id_token: str) -> Dict[str, Any]:
    """
    Decode the claims of a compact JWT without verifying its signature.

    Raises:
        IdTokenError: If the token does not have exactly three segments, or its payload
            is not a base64url encoded JSON object
    """
    try:
        parts = id_token.split(".")
        if len(parts) != 3:
            raise ValueError("Invalid JWT format")

        claims = json.loads(base64url_decode(parts[1]))
        if not isinstance(claims, dict):
            raise ValueError("Invalid JWT payload")
    except ValueError as e:
        raise IdTokenError(f"Failed to parse ID token: {e}") from e

    return claims

"""
Authenticated Pod Client

Issues HTTP requests against a user's Pod with the user's access token, keeping the
token fresh:

1. Before a request the in-memory token is used while it is unexpired. Otherwise the
   connection's token envelope is decrypted and adopted, and refreshed first when it
   expires within the refresh margin (5 minutes by default).
2. A refresh merges the new token bundle into the stored envelope, keeping the previous
   refresh and ID tokens when the provider does not return new ones, then re-encrypts
   and persists it along with the new expiry.
3. A 401 response triggers one forced refresh and one retry. A second 401 is returned
   as-is.

Refreshes are serialized per client with an ``asyncio.Lock``. A forced refresh is
skipped when another task already replaced the token that was rejected, since some
providers invalidate a refresh token once it is used.
"""

import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from aiohttp import ClientError, ClientSession, ClientTimeout, hdrs

from social.quotevote.podsync.app.metrics import MetricsClient, NoOpMetricsClient
from social.quotevote.podsync.client.chain import (
    ChainMiddlewareClient,
    ChainRequest,
    ChainResponse,
    ChainHandler,
    ChainResult,
    RequestMiddlewareBase,
    StatsdMiddleware,
)
from social.quotevote.podsync.errors import (
    ConnectionNotFound,
    NoRefreshToken,
    PodRequestError,
    PodResourceError,
)
from social.quotevote.podsync.model.connection import ConnectionStore, SolidConnection
from social.quotevote.podsync.oidc.authorization import refresh_access_token
from social.quotevote.podsync.storage.encryption import TokenCipher

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
DEFAULT_REFRESH_MARGIN = 300
DEFAULT_EXPIRES_IN = 3600

AUTH_RETRIED = "auth_retried"

JSON_ACCEPT = "application/json, application/ld+json"


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class BearerTokenMiddleware(RequestMiddlewareBase):
    """Attaches the bearer token and retries once after a forced refresh on 401."""

    def __init__(self, pod_client: "PodClient") -> None:
        super().__init__()
        self._pod_client = pod_client

    async def handle(
        self, next: ChainHandler, request: ChainRequest
    ) -> ChainResult:
        access_token = await self._pod_client.ensure_valid_token()

        if request.headers is None:
            request.headers = {}
        request.headers[hdrs.AUTHORIZATION] = f"Bearer {access_token}"

        response = await next(request)
        client_response = response[0]
        chain_response = response[1]

        trace_request_ctx = request.trace_request_ctx or {}
        if chain_response.status != 401 or trace_request_ctx.get(AUTH_RETRIED, False):
            return client_response, chain_response

        logger.info(
            "Pod returned 401 for user %s at %s, refreshing token",
            self._pod_client.user_id,
            request.url,
        )
        await self._pod_client.refresh(failed_token=access_token)

        client_response.release()

        new_request = ChainRequest.from_chain_request(request)
        new_request.trace_request_ctx = {**trace_request_ctx, AUTH_RETRIED: True}
        return client_response, chain_response, new_request


class PodClient:
    """
    HTTP client bound to one user's Solid connection.

    Args:
        http_session: Shared aiohttp session
        store: Connection store holding the encrypted token envelope
        cipher: Token cipher for the envelope
        user_id: Application user the connection belongs to
        client_id: OAuth client identifier used for refreshes
        metrics_client: Metrics client for request and refresh counters
        timeout: Default per-request timeout in seconds
        refresh_margin: Seconds before expiry at which tokens are refreshed
        default_expires_in: Token lifetime assumed when the provider omits expires_in
    """

    def __init__(
        self,
        http_session: ClientSession,
        store: ConnectionStore,
        cipher: TokenCipher,
        user_id: str,
        client_id: str,
        metrics_client: Optional[MetricsClient] = None,
        timeout: float = DEFAULT_TIMEOUT,
        refresh_margin: int = DEFAULT_REFRESH_MARGIN,
        default_expires_in: int = DEFAULT_EXPIRES_IN,
    ) -> None:
        self.http_session = http_session
        self.store = store
        self.cipher = cipher
        self.user_id = user_id
        self.client_id = client_id
        self.metrics_client = metrics_client or NoOpMetricsClient()
        self.timeout = timeout
        self.refresh_margin = timedelta(seconds=refresh_margin)
        self.default_expires_in = default_expires_in

        self.access_token: Optional[str] = None
        self.token_expiry: Optional[datetime] = None

        self._lock = asyncio.Lock()
        self._chain_client = ChainMiddlewareClient(
            client_session=http_session,
            logger=logger,
            middleware=[
                StatsdMiddleware(self.metrics_client),
                BearerTokenMiddleware(self),
            ],
            raise_for_status=False,
            attempt_max=2,
        )

    def _token_is_current(self) -> bool:
        return (
            self.access_token is not None
            and self.token_expiry is not None
            and self.token_expiry > datetime.now(timezone.utc)
        )

    async def _load_connection(self) -> SolidConnection:
        connection = await self.store.find_connection(self.user_id)
        if connection is None:
            raise ConnectionNotFound(self.user_id)
        return connection

    async def ensure_valid_token(self) -> str:
        """Return an access token that is not about to expire, refreshing if needed."""
        if self._token_is_current():
            return self.access_token  # type: ignore

        async with self._lock:
            if self._token_is_current():
                return self.access_token  # type: ignore

            connection = await self._load_connection()
            tokens = self.cipher.decrypt(connection.encrypted_tokens)

            self.access_token = tokens.get("access_token", None)
            self.token_expiry = (
                as_utc(connection.token_expiry)
                if connection.token_expiry is not None
                else None
            )

            now = datetime.now(timezone.utc)
            if (
                self.access_token is None
                or self.token_expiry is None
                or self.token_expiry - now <= self.refresh_margin
            ):
                await self._refresh_locked(connection, tokens)

            return self.access_token  # type: ignore

    async def refresh(self, failed_token: Optional[str] = None) -> str:
        """
        Force a token refresh.

        Args:
            failed_token: The token a request was rejected with. When the client
                already holds a different, unexpired token the refresh is skipped.

        Returns:
            The current access token

        Raises:
            NoRefreshToken: If the stored envelope has no refresh token
            TokenError: If the identity provider rejects the refresh
        """
        async with self._lock:
            if (
                failed_token is not None
                and self.access_token != failed_token
                and self._token_is_current()
            ):
                return self.access_token  # type: ignore

            connection = await self._load_connection()
            tokens = self.cipher.decrypt(connection.encrypted_tokens)
            await self._refresh_locked(connection, tokens)
            return self.access_token  # type: ignore

    async def _refresh_locked(
        self, connection: SolidConnection, tokens: Dict[str, Any]
    ) -> None:
        refresh_token = tokens.get("refresh_token", None)
        if not refresh_token:
            raise NoRefreshToken()

        token_bundle = await refresh_access_token(
            self.http_session,
            refresh_token,
            connection.issuer,
            self.client_id,
            self.timeout,
        )

        merged_tokens = {
            **tokens,
            "access_token": token_bundle.access_token,
            "refresh_token": token_bundle.refresh_token or refresh_token,
            "id_token": token_bundle.id_token or tokens.get("id_token", None),
        }

        expires_in = token_bundle.expires_in or self.default_expires_in
        token_expiry = datetime.now(timezone.utc) + timedelta(seconds=expires_in)

        await self.store.upsert_connection(
            self.user_id,
            encrypted_tokens=self.cipher.encrypt(merged_tokens),
            token_expiry=token_expiry,
        )

        self.access_token = token_bundle.access_token
        self.token_expiry = token_expiry

        self.metrics_client.increment("client.refresh.count", 1)
        logger.info("Refreshed access token for user %s", self.user_id)

    async def fetch(
        self,
        url: str,
        method: str = hdrs.METH_GET,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        **kwargs: Any,
    ) -> ChainResponse:
        """
        Issue an authenticated request and return the response with its body read.

        Non-2xx responses are returned, not raised.

        Raises:
            PodRequestError: If no response arrived (connection refused, DNS, timeout)
        """
        try:
            async with self._chain_client.request(
                method,
                url,
                headers=dict(headers or {}),
                timeout=ClientTimeout(total=timeout or self.timeout),
                **kwargs,
            ) as (_, chain_response):
                return chain_response
        except (ClientError, asyncio.TimeoutError) as e:
            logger.warning("Pod request %s %s failed: %r", method, url, e)
            raise PodRequestError(
                f"Solid fetch failed for {url}: {str(e) or type(e).__name__}", url=url
            ) from e

    async def get_json(self, url: str) -> Any:
        """
        Fetch a JSON resource.

        Raises:
            PodResourceError: If the response is not 2xx or not JSON
            PodRequestError: If no response arrived
        """
        response = await self.fetch(url, headers={hdrs.ACCEPT: JSON_ACCEPT})
        return self.json_body(response, url)

    @staticmethod
    def json_body(response: ChainResponse, url: str) -> Any:
        if not response.ok:
            raise PodResourceError(
                f"Failed to fetch resource: {response.status} {url}",
                status=response.status,
                url=url,
            )

        body = response.body
        if isinstance(body, (str, bytes)):
            try:
                body = json.loads(body)
            except ValueError as e:
                raise PodResourceError(
                    f"Failed to fetch resource: invalid JSON at {url}",
                    status=response.status,
                    url=url,
                ) from e
        return body

    async def put_json(
        self, url: str, body: Any, headers: Optional[Dict[str, str]] = None
    ) -> ChainResponse:
        """
        Store a JSON resource.

        Raises:
            PodResourceError: If the response is not 2xx
        """
        response = await self.fetch(
            url,
            method=hdrs.METH_PUT,
            headers={
                hdrs.CONTENT_TYPE: "application/json",
                **(headers or {}),
            },
            data=json.dumps(body),
        )

        if not response.ok:
            raise PodResourceError(
                f"Failed to write resource: {response.status} {url}",
                status=response.status,
                url=url,
            )
        return response

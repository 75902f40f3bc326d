"""
Pod Connection Service

The API the rest of the application uses to connect, inspect, disconnect and sync a
user's Solid Pod. Every operation is keyed by the application user id.

Connecting is a two-step redirect flow:
1. `start_connect` validates the issuer, builds the authorization URL and records the
   state, issuer and PKCE verifier in the pending authorization store
2. `finish_connect` consumes that state on callback and completes the code exchange,
   storing the encrypted tokens on the user's connection

`complete_connect` performs the exchange directly for callers that hold the verifier
themselves.
"""

import asyncio
import logging
import weakref
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Union

from aiohttp import ClientSession

from social.quotevote.podsync.app.config import Settings
from social.quotevote.podsync.app.metrics import MetricsClient, NoOpMetricsClient
from social.quotevote.podsync.client.pod_client import PodClient
from social.quotevote.podsync.errors import InvalidIssuer
from social.quotevote.podsync.model.connection import ConnectionStore
from social.quotevote.podsync.oidc.authorization import (
    exchange_code_for_tokens,
    generate_authorization_url,
    parse_id_token,
)
from social.quotevote.podsync.oidc.discovery import validate_issuer_url
from social.quotevote.podsync.oidc.state import (
    AuthorizationStateStore,
    PendingAuthorization,
)
from social.quotevote.podsync.storage.encryption import (
    TokenCipher,
    validate_encryption_key,
)
from social.quotevote.podsync.sync.portable import (
    ActivityEvent,
    ActivityEventInput,
    PortableState,
    PortableStateInput,
)
from social.quotevote.podsync.sync.service import PortableStateSync

logger = logging.getLogger(__name__)


class PodConnectionService:
    """
    Connection lifecycle and sync operations.

    Args:
        settings: Application settings
        http_session: Shared aiohttp session for identity provider and Pod requests
        store: Connection store
        state_store: Pending authorization store
        metrics_client: Metrics client, disabled when None
    """

    def __init__(
        self,
        settings: Settings,
        http_session: ClientSession,
        store: ConnectionStore,
        state_store: AuthorizationStateStore,
        metrics_client: Optional[MetricsClient] = None,
    ) -> None:
        self.settings = settings
        self.http_session = http_session
        self.store = store
        self.state_store = state_store
        self.metrics_client = metrics_client or NoOpMetricsClient()

        self._cipher: Optional[TokenCipher] = None
        self._append_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    @property
    def cipher(self) -> TokenCipher:
        """The token cipher, built on first use so a bad key fails that operation."""
        if self._cipher is None:
            self._cipher = TokenCipher(self.settings.solid_token_encryption_key)
        return self._cipher

    def validate_key(self) -> bool:
        return validate_encryption_key(self.settings.solid_token_encryption_key or "")

    def pod_client(self, user_id: str) -> PodClient:
        return PodClient(
            http_session=self.http_session,
            store=self.store,
            cipher=self.cipher,
            user_id=user_id,
            client_id=self.settings.solid_client_id,
            metrics_client=self.metrics_client,
            timeout=self.settings.solid_http_timeout,
            refresh_margin=self.settings.solid_token_refresh_margin,
            default_expires_in=self.settings.solid_default_expires_in,
        )

    def portable_state_sync(self, user_id: str) -> PortableStateSync:
        return PortableStateSync(
            client=self.pod_client(user_id),
            store=self.store,
            user_id=user_id,
            activity_ledger_enabled=self.settings.solid_activity_ledger_enabled,
        )

    async def start_connect(self, user_id: str, issuer: str) -> str:
        """
        Begin connecting a Pod.

        Args:
            user_id: Application user
            issuer: Issuer URL or WebID entered by the user

        Returns:
            str: URL to redirect the user to

        Raises:
            InvalidIssuer: If the issuer is not https (or http on localhost)
            DiscoveryError: If the issuer metadata cannot be discovered
        """
        if not validate_issuer_url(issuer):
            raise InvalidIssuer(issuer)

        redirect_uri = self.settings.redirect_uri
        authorization_request = await generate_authorization_url(
            self.http_session,
            issuer,
            self.settings.solid_client_id,
            redirect_uri,
            scope=self.settings.solid_scope,
            timeout=self.settings.solid_http_timeout,
        )

        await self.state_store.save(
            authorization_request.state,
            PendingAuthorization(
                user_id=user_id,
                issuer=authorization_request.issuer,
                code_verifier=authorization_request.code_verifier,
                redirect_uri=redirect_uri,
            ),
        )

        logger.info(
            "Started Solid connection for user %s with issuer %s",
            user_id,
            authorization_request.issuer,
        )
        return authorization_request.url

    async def finish_connect(
        self,
        user_id: str,
        code: str,
        state: str,
        redirect_uri: Optional[str] = None,
    ) -> Dict[str, str]:
        """
        Complete a connection started with `start_connect`.

        Raises:
            AuthorizationStateError: If the state is unknown, expired or belongs to
                another user
            TokenError: If the code exchange fails
        """
        pending = await self.state_store.consume(state, user_id)
        return await self.complete_connect(
            user_id,
            code,
            redirect_uri or pending.redirect_uri,
            pending.code_verifier,
            pending.issuer,
        )

    async def complete_connect(
        self,
        user_id: str,
        code: str,
        redirect_uri: str,
        code_verifier: str,
        issuer: str,
    ) -> Dict[str, str]:
        """
        Exchange an authorization code and store the resulting connection.

        The WebID is taken from the ID token's ``webid`` claim, falling back to ``sub``
        and then to the issuer.

        Returns:
            ``{"webId": ..., "issuer": ...}``
        """
        cipher = self.cipher

        token_bundle = await exchange_code_for_tokens(
            self.http_session,
            code,
            code_verifier,
            redirect_uri,
            issuer,
            self.settings.solid_client_id,
            timeout=self.settings.solid_http_timeout,
        )

        id_token_claims: Dict[str, Any] = {}
        if token_bundle.id_token:
            id_token_claims = parse_id_token(token_bundle.id_token)

        web_id = id_token_claims.get("webid", None) or id_token_claims.get("sub", None)
        if not web_id:
            web_id = issuer

        expires_in = token_bundle.expires_in or self.settings.solid_default_expires_in
        token_expiry = datetime.now(timezone.utc) + timedelta(seconds=expires_in)

        encrypted_tokens = cipher.encrypt(
            {
                "access_token": token_bundle.access_token,
                "refresh_token": token_bundle.refresh_token,
                "id_token": token_bundle.id_token,
            }
        )

        await self.store.upsert_connection(
            user_id,
            web_id=web_id,
            issuer=issuer,
            encrypted_tokens=encrypted_tokens,
            scopes=token_bundle.scope.split() if token_bundle.scope else [],
            id_token_claims=id_token_claims or None,
            token_expiry=token_expiry,
            resource_uris=None,
        )

        self.metrics_client.increment("connection.connected.count", 1)
        logger.info("Connected Solid Pod %s for user %s", web_id, user_id)

        return {"webId": web_id, "issuer": issuer}

    async def connection_status(self, user_id: str) -> Dict[str, Any]:
        connection = await self.store.find_connection(user_id)
        if connection is None:
            return {
                "connected": False,
                "webId": None,
                "issuer": None,
                "lastSyncAt": None,
            }

        return {
            "connected": True,
            "webId": connection.web_id,
            "issuer": connection.issuer,
            "lastSyncAt": (
                connection.last_sync_at.isoformat()
                if connection.last_sync_at is not None
                else None
            ),
        }

    async def disconnect(self, user_id: str) -> bool:
        return await self.store.delete_connection(user_id)

    async def pull_portable_state(self, user_id: str) -> PortableState:
        return await self.portable_state_sync(user_id).pull()

    async def push_portable_state(
        self, user_id: str, state_input: Union[PortableStateInput, Dict[str, Any]]
    ) -> bool:
        if not isinstance(state_input, PortableStateInput):
            state_input = PortableStateInput.model_validate(state_input)
        return await self.portable_state_sync(user_id).push(state_input)

    async def append_activity_event(
        self, user_id: str, event: Union[ActivityEventInput, Dict[str, Any]]
    ) -> ActivityEvent:
        """
        Append an event to the user's activity ledger.

        Appends for the same user are serialized within this process. Conditional writes
        protect against writers in other processes.
        """
        if not isinstance(event, ActivityEventInput):
            event = ActivityEventInput.model_validate(event)

        lock = self._append_locks.get(user_id, None)
        if lock is None:
            lock = asyncio.Lock()
            self._append_locks[user_id] = lock

        async with lock:
            return await self.portable_state_sync(user_id).append(event)

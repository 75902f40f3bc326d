"""Pending authorization storage.

Binds an authorization ``state`` to the user, issuer and PKCE verifier that created it
for the time between the redirect to the identity provider and the callback. Entries
live in redis with a TTL and are consumed exactly once.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field

from social.quotevote.podsync.errors import AuthorizationStateError

logger = logging.getLogger(__name__)

STATE_KEY_PREFIX = "solid:oauth:state:"
DEFAULT_STATE_TTL = 600


class PendingAuthorization(BaseModel):
    user_id: str
    issuer: str
    code_verifier: str
    redirect_uri: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class AuthorizationStateStore:
    """
    Redis-backed store for pending authorizations.

    Args:
        redis_client: ``redis.asyncio.Redis`` compatible client
        ttl: Seconds a pending authorization stays valid
    """

    def __init__(self, redis_client: Any, ttl: int = DEFAULT_STATE_TTL) -> None:
        self.redis_client = redis_client
        self.ttl = ttl

    @staticmethod
    def _key(state: str) -> str:
        return f"{STATE_KEY_PREFIX}{state}"

    async def save(self, state: str, pending: PendingAuthorization) -> None:
        """
        Record a pending authorization.

        Raises:
            AuthorizationStateError: If the state is already in use
        """
        stored = await self.redis_client.set(
            self._key(state), pending.model_dump_json(), nx=True, ex=self.ttl
        )
        if not stored:
            raise AuthorizationStateError.duplicate()

    async def consume(
        self, state: str, user_id: Optional[str] = None
    ) -> PendingAuthorization:
        """
        Remove and return the pending authorization for a state.

        The entry is deleted even when it belongs to a different user, so a leaked state
        cannot be replayed.

        Raises:
            AuthorizationStateError: If the state is unknown or expired, or belongs to
                a user other than ``user_id``
        """
        value = await self.redis_client.getdel(self._key(state))
        if value is None:
            raise AuthorizationStateError.unknown()

        pending = PendingAuthorization.model_validate_json(value)
        if user_id is not None and pending.user_id != user_id:
            logger.warning(
                "Authorization state for user %s presented by user %s",
                pending.user_id,
                user_id,
            )
            raise AuthorizationStateError.user_mismatch()

        return pending

"""Solid connection records.

One ``SolidConnection`` per application user links the user to a WebID, the issuing
identity provider and the encrypted token envelope. Records are created on the first
successful code exchange, updated on every token refresh and successful push, and
deleted when the user disconnects.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

from sqlalchemy import Index, delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapped, mapped_column

from social.quotevote.podsync.model.base import (
    Base,
    jsondict,
    jsonlist,
    str255,
    str1024,
    text,
    timestamptz,
)

logger = logging.getLogger(__name__)


class SolidConnection(Base):
    """Persisted link between an application user and their Pod identity.

    ``token_expiry`` mirrors the expiry inside ``encrypted_tokens`` so callers can tell
    whether a refresh is needed without decrypting.
    """

    __tablename__ = "solid_connections"
    __table_args__ = (Index("ix_solid_connections_web_id", "web_id"),)

    user_id: Mapped[str255] = mapped_column(primary_key=True)
    web_id: Mapped[str1024]
    issuer: Mapped[str1024]
    encrypted_tokens: Mapped[text]
    scopes: Mapped[jsonlist] = mapped_column(default=list)
    id_token_claims: Mapped[Optional[jsondict]]
    token_expiry: Mapped[Optional[timestamptz]]
    resource_uris: Mapped[Optional[jsondict]]
    last_sync_at: Mapped[Optional[timestamptz]]
    created_at: Mapped[timestamptz]
    updated_at: Mapped[timestamptz]


CONNECTION_FIELDS = frozenset(
    [
        "web_id",
        "issuer",
        "encrypted_tokens",
        "scopes",
        "id_token_claims",
        "token_expiry",
        "resource_uris",
        "last_sync_at",
    ]
)


def check_connection_fields(fields: dict[str, Any]) -> None:
    unknown = set(fields) - CONNECTION_FIELDS
    if unknown:
        raise ValueError(f"Unknown connection fields: {', '.join(sorted(unknown))}")


class ConnectionStore(Protocol):
    """Key-value access to connections by application user id.

    ``upsert_connection`` merges the given fields into the existing record, creating it
    when absent.
    """

    async def find_connection(self, user_id: str) -> Optional[SolidConnection]: ...

    async def upsert_connection(
        self, user_id: str, **fields: Any
    ) -> SolidConnection: ...

    async def delete_connection(self, user_id: str) -> bool: ...


class DatabaseConnectionStore:
    """``ConnectionStore`` backed by PostgreSQL.

    The session maker must be created with ``expire_on_commit=False`` so returned records
    stay readable after their session closes.
    """

    def __init__(
        self, database_session_maker: async_sessionmaker[AsyncSession]
    ) -> None:
        self.database_session_maker = database_session_maker

    async def find_connection(self, user_id: str) -> Optional[SolidConnection]:
        async with self.database_session_maker() as database_session:
            stmt = select(SolidConnection).where(SolidConnection.user_id == user_id)
            return (await database_session.scalars(stmt)).first()

    async def upsert_connection(self, user_id: str, **fields: Any) -> SolidConnection:
        check_connection_fields(fields)
        now = datetime.now(timezone.utc)

        async with self.database_session_maker() as database_session:
            async with database_session.begin():
                stmt = (
                    select(SolidConnection)
                    .where(SolidConnection.user_id == user_id)
                    .with_for_update()
                )
                connection = (await database_session.scalars(stmt)).first()

                if connection is None:
                    connection = SolidConnection(
                        user_id=user_id, created_at=now, updated_at=now, **fields
                    )
                    database_session.add(connection)
                else:
                    for key, value in fields.items():
                        setattr(connection, key, value)
                    connection.updated_at = now

        return connection

    async def delete_connection(self, user_id: str) -> bool:
        async with self.database_session_maker() as database_session:
            async with database_session.begin():
                stmt = delete(SolidConnection).where(SolidConnection.user_id == user_id)
                result = await database_session.execute(stmt)

        deleted = (result.rowcount or 0) > 0
        if deleted:
            logger.info("Deleted Solid connection for user %s", user_id)
        return deleted

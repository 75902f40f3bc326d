"""
Unit tests for Solid connection records in social.quotevote.podsync.model.connection

Tests cover create, merge-update, and delete through DatabaseConnectionStore using
async SQLAlchemy against PostgreSQL. They are skipped when no database is available.
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import inspect, select

from social.quotevote.podsync.model.connection import (
    DatabaseConnectionStore,
    SolidConnection,
    check_connection_fields,
)

from fakes import TEST_ISSUER, TEST_USER_ID, TEST_WEB_ID


@pytest.fixture
def sample_connection_fields():
    return {
        "web_id": TEST_WEB_ID,
        "issuer": TEST_ISSUER,
        "encrypted_tokens": "aa:bb:cc:dd",
        "scopes": ["openid", "offline_access"],
        "id_token_claims": {"sub": TEST_WEB_ID},
        "token_expiry": datetime.now(timezone.utc) + timedelta(hours=1),
    }


class TestConnectionFields:
    def test_known_fields(self, sample_connection_fields):
        check_connection_fields(sample_connection_fields)

    def test_unknown_field(self):
        with pytest.raises(ValueError, match="Unknown connection fields: password"):
            check_connection_fields({"web_id": "x", "password": "y"})

    def test_primary_key_cannot_be_set(self):
        with pytest.raises(ValueError):
            check_connection_fields({"user_id": "other"})


@pytest.mark.asyncio
class TestDatabaseConnectionStore:
    async def test_create_connection(self, session_maker, sample_connection_fields):
        store = DatabaseConnectionStore(session_maker)

        connection = await store.upsert_connection(
            TEST_USER_ID, **sample_connection_fields
        )

        assert connection.user_id == TEST_USER_ID
        assert connection.created_at == connection.updated_at

        found = await store.find_connection(TEST_USER_ID)
        assert found is not None
        assert found.web_id == TEST_WEB_ID
        assert found.scopes == ["openid", "offline_access"]
        assert found.id_token_claims == {"sub": TEST_WEB_ID}
        assert found.token_expiry.tzinfo is not None
        assert found.resource_uris is None
        assert found.last_sync_at is None

    async def test_update_merges_fields(self, session_maker, sample_connection_fields):
        store = DatabaseConnectionStore(session_maker)
        created = await store.upsert_connection(TEST_USER_ID, **sample_connection_fields)

        sync_time = datetime.now(timezone.utc)
        await store.upsert_connection(TEST_USER_ID, last_sync_at=sync_time)

        found = await store.find_connection(TEST_USER_ID)
        assert found.last_sync_at == sync_time
        assert found.encrypted_tokens == "aa:bb:cc:dd"
        assert found.created_at == created.created_at
        assert found.updated_at >= created.updated_at

    async def test_clear_resource_uris(self, session_maker, sample_connection_fields):
        store = DatabaseConnectionStore(session_maker)
        await store.upsert_connection(
            TEST_USER_ID,
            resource_uris={"profile": "https://p", "preferences": "https://q"},
            **sample_connection_fields,
        )

        await store.upsert_connection(TEST_USER_ID, resource_uris=None)

        found = await store.find_connection(TEST_USER_ID)
        assert found.resource_uris is None

    async def test_one_connection_per_user(
        self, session_maker, sample_connection_fields
    ):
        store = DatabaseConnectionStore(session_maker)
        await store.upsert_connection(TEST_USER_ID, **sample_connection_fields)
        await store.upsert_connection(
            TEST_USER_ID, web_id="https://bob.pod.example/profile/card#me"
        )

        async with session_maker() as session:
            rows = (await session.scalars(select(SolidConnection))).all()

        assert len(rows) == 1
        assert rows[0].web_id == "https://bob.pod.example/profile/card#me"

    async def test_delete_connection(self, session_maker, sample_connection_fields):
        store = DatabaseConnectionStore(session_maker)
        await store.upsert_connection(TEST_USER_ID, **sample_connection_fields)

        assert await store.delete_connection(TEST_USER_ID) is True
        assert await store.find_connection(TEST_USER_ID) is None
        assert await store.delete_connection(TEST_USER_ID) is False

    async def test_find_missing(self, session_maker):
        store = DatabaseConnectionStore(session_maker)
        assert await store.find_connection("nobody") is None

    async def test_web_id_index(self, engine):
        async with engine.connect() as conn:
            indexes = await conn.run_sync(
                lambda sync_conn: inspect(sync_conn).get_indexes("solid_connections")
            )

        assert "ix_solid_connections_web_id" in {index["name"] for index in indexes}

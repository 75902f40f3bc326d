"""
Shared fixtures for the Pod sync tests.

Connection store tests run against a throwaway PostgreSQL database per test and are
skipped when no server is reachable. Everything else runs against in-memory fakes.
"""

import asyncio
import os
import uuid
from datetime import datetime, timedelta, timezone

import fakeredis.aioredis
import pytest
import pytest_asyncio
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from social.quotevote.podsync.app.config import Settings
from social.quotevote.podsync.model.base import Base
from social.quotevote.podsync.storage.encryption import (
    TokenCipher,
    generate_encryption_key,
)

from fakes import TEST_ISSUER, TEST_USER_ID, TEST_WEB_ID, InMemoryConnectionStore


def postgres_url(database: str) -> str:
    user = os.getenv("TEST_DB_USER", "postgres")
    password = os.getenv("TEST_DB_PASSWORD", "password")
    host = os.getenv("TEST_DB_HOST", "postgres")
    port = os.getenv("TEST_DB_PORT", "5432")
    return f"postgresql+asyncpg://{user}:{password}@{host}:{port}/{database}"


@pytest_asyncio.fixture
async def test_database():
    """URL of a freshly created database, dropped after the test."""
    admin_engine = create_async_engine(
        postgres_url("postgres"), isolation_level="AUTOCOMMIT"
    )
    database_name = f"podsync_test_{uuid.uuid4().hex[:8]}"

    try:
        async with admin_engine.connect() as conn:
            await conn.execute(text(f"CREATE DATABASE {database_name}"))
    except (OSError, SQLAlchemyError, asyncio.TimeoutError):
        await admin_engine.dispose()
        pytest.skip("PostgreSQL database not available for testing")

    try:
        yield postgres_url(database_name)
    finally:
        async with admin_engine.connect() as conn:
            await conn.execute(text(f"DROP DATABASE IF EXISTS {database_name}"))
        await admin_engine.dispose()


@pytest_asyncio.fixture
async def engine(test_database):
    engine = create_async_engine(test_database)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def session_maker(engine):
    """Session factory configured the way the service configures it."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def fake_redis_client():
    client = fakeredis.aioredis.FakeRedis(decode_responses=False)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def encryption_key():
    return generate_encryption_key()


@pytest.fixture
def cipher(encryption_key):
    return TokenCipher(encryption_key)


@pytest.fixture
def settings(encryption_key):
    """Settings with a valid key and metrics disabled."""
    return Settings(
        debug=False,
        solid_token_encryption_key=encryption_key,
        solid_client_id="quotevote-test",
        solid_redirect_uri_base="https://app.example/",
        solid_activity_ledger_enabled=True,
        metrics_backend="none",
    )


@pytest.fixture
def connection_store():
    return InMemoryConnectionStore()


@pytest_asyncio.fixture
async def connected_store(connection_store, cipher):
    """A store holding one connection with an access token valid for an hour."""
    await connection_store.upsert_connection(
        TEST_USER_ID,
        web_id=TEST_WEB_ID,
        issuer=TEST_ISSUER,
        encrypted_tokens=cipher.encrypt(
            {
                "access_token": "access-1",
                "refresh_token": "refresh-1",
                "id_token": "id-1",
            }
        ),
        scopes=["openid", "offline_access"],
        token_expiry=datetime.now(timezone.utc) + timedelta(hours=1),
    )
    return connection_store

"""Shared fixtures."""

import time
from uuid import uuid4

import jwt
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from campus_dm.api.app import create_app
from campus_dm.api.rate_limiter import SlidingWindowRateLimiter
from campus_dm.config import Settings
from campus_dm.domain.models import Party
from campus_dm.repositories.memory import InMemoryRepository
from campus_dm.services.conversation_engine import ConversationEngine

TEST_SECRET = "test-secret"


def make_party(name: str) -> Party:
    return Party(user_id=f"auth-{name}-{uuid4()}", name=name, user_type="student")


def make_token(user_id: str, email_confirmed: bool = True, expires_in: int = 300) -> str:
    now = int(time.time())
    claims = {
        "sub": user_id,
        "aud": "authenticated",
        "iat": now,
        "exp": now + expires_in,
        "email_confirmed": email_confirmed,
    }
    return jwt.encode(claims, TEST_SECRET, algorithm="HS256")


def auth_headers(party: Party, email_confirmed: bool = True) -> dict:
    return {"Authorization": f"Bearer {make_token(party.user_id, email_confirmed)}"}


@pytest.fixture
def repository():
    return InMemoryRepository()


@pytest.fixture
def engine(repository):
    return ConversationEngine(repository, max_message_length=200)


@pytest_asyncio.fixture
async def alice(repository):
    return await repository.add_party(make_party("alice"))


@pytest_asyncio.fixture
async def bob(repository):
    return await repository.add_party(make_party("bob"))


@pytest_asyncio.fixture
async def carol(repository):
    return await repository.add_party(make_party("carol"))


@pytest.fixture
def settings():
    return Settings(
        database_url="",
        jwt_secret=TEST_SECRET,
        jwt_audience="authenticated",
        rate_limit_requests=1000,
        rate_limit_window_seconds=60,
        rate_limit_redis_url="",
        max_message_length=200,
    )


@pytest.fixture
def app(settings, repository):
    limiter = SlidingWindowRateLimiter(
        rate_limit=settings.rate_limit_requests,
        time_window=settings.rate_limit_window_seconds,
    )
    return create_app(settings=settings, repository=repository, rate_limiter=limiter)


@pytest_asyncio.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

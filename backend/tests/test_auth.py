from contextlib import asynccontextmanager
from datetime import timedelta

import jwt
import pytest
import pytest_asyncio
from fastapi import HTTPException
from sqlalchemy import select

from app.database import AsyncSessionMaker, Base, data_engine
from app.models import User
from app.services.auth import create_access_token, decode_user_id, get_or_create_user


@pytest_asyncio.fixture(autouse=True)
async def prepare_db():
    async with data_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield


def test_token_round_trip():
    token = create_access_token("user-1")
    assert decode_user_id(token) == "user-1"


def test_expired_token_rejected():
    token = create_access_token("user-1", expires_in=timedelta(seconds=-5))
    with pytest.raises(HTTPException) as exc:
        decode_user_id(token)
    assert exc.value.status_code == 401
    assert exc.value.detail == "token_expired"


def test_foreign_signature_rejected():
    token = jwt.encode({"sub": "user-1"}, "another-secret-of-sufficient-length-123456", algorithm="HS256")
    with pytest.raises(HTTPException) as exc:
        decode_user_id(token)
    assert exc.value.detail == "invalid_token"


@pytest.mark.asyncio
async def test_get_or_create_user_accepts_context_manager():
    @asynccontextmanager
    async def session_cm():
        async with AsyncSessionMaker() as session:
            yield session

    user = await get_or_create_user(session_cm(), None, "  Alice ")
    assert user.name == "Alice"

    renamed = await get_or_create_user(session_cm(), user.id, "Alicia")
    assert renamed.id == user.id

    async with AsyncSessionMaker() as session:
        fetched = await session.execute(select(User).where(User.id == user.id))
        assert fetched.scalar_one().name == "Alicia"


@pytest.mark.asyncio
async def test_unknown_user_id_creates_new_user():
    async with AsyncSessionMaker() as session:
        user = await get_or_create_user(session, "does-not-exist", "Bob")
    assert user.id != "does-not-exist"
    assert user.name == "Bob"

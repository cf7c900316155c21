"""
Tests for bearer token verification.
"""
import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials
from jose import jwt

from app.core.auth import verify_token
from app.core.config import settings


def _credentials(claims, key=None):
    token = jwt.encode(claims, key or settings.jwt_secret_key, algorithm=settings.jwt_algorithm)
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


async def test_valid_token_yields_user():
    token_data = await verify_token(
        _credentials({"sub": "user_42", "email": "a@example.com", "aud": settings.jwt_audience})
    )

    assert token_data.user_id == "user_42"
    assert token_data.email == "a@example.com"


@pytest.mark.parametrize(
    "claims, key",
    [
        ({"sub": "user_42", "aud": "authenticated"}, "wrong-secret"),
        ({"sub": "user_42", "aud": "someone-else"}, None),
        ({"email": "a@example.com", "aud": "authenticated"}, None),
    ],
)
async def test_invalid_tokens_are_rejected(claims, key):
    with pytest.raises(HTTPException) as exc_info:
        await verify_token(_credentials(claims, key))

    assert exc_info.value.status_code == 401


async def test_protected_route_requires_bearer_token():
    import httpx
    from app.main import app

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/api/billing/credits")

    assert response.status_code in (401, 403)

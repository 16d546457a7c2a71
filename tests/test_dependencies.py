from datetime import datetime, timedelta, timezone

import pytest
from fastapi import HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials
from jose import jwt

from livemarket.config import settings
from livemarket.dependencies import get_current_user_optional, get_processor


def test_get_current_user_success(db, buyer, headers_for):
    token = headers_for(buyer)["Authorization"].split(" ", 1)[1]
    credentials = HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)

    user = get_current_user_optional(credentials, db)

    assert user is not None
    assert user.id == buyer.id


def test_get_current_user_no_token(client):
    response = client.get("/api/bids/me")
    assert response.status_code == status.HTTP_401_UNAUTHORIZED
    assert "authenticated" in response.json()["detail"].lower()


def test_get_current_user_invalid_token(client):
    response = client.get(
        "/api/bids/me",
        headers={"Authorization": "Bearer invalid_token_here"},
    )
    assert response.status_code == status.HTTP_401_UNAUTHORIZED


def test_get_current_user_expired_token(client, buyer):
    expired_token = jwt.encode(
        {"sub": str(buyer.id), "exp": datetime.now(timezone.utc) - timedelta(hours=1)},
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
    )

    response = client.get("/api/bids/me", headers={"Authorization": f"Bearer {expired_token}"})
    assert response.status_code == status.HTTP_401_UNAUTHORIZED


def test_refresh_tokens_are_not_access_tokens(client, buyer):
    token = jwt.encode(
        {"sub": str(buyer.id), "type": "refresh", "exp": datetime.now(timezone.utc) + timedelta(hours=1)},
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
    )

    response = client.get("/api/bids/me", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == status.HTTP_401_UNAUTHORIZED


def test_get_current_user_nonexistent_user(client, db):
    token = jwt.encode(
        {"sub": "99999", "exp": datetime.now(timezone.utc) + timedelta(hours=1)},
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
    )

    response = client.get("/api/bids/me", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == status.HTTP_401_UNAUTHORIZED


def test_get_current_user_optional_none(db):
    assert get_current_user_optional(None, db) is None


def test_get_processor_unconfigured_is_503(monkeypatch):
    monkeypatch.setenv("STRIPE_SECRET_KEY", "")

    with pytest.raises(HTTPException) as exc_info:
        get_processor()

    assert exc_info.value.status_code == status.HTTP_503_SERVICE_UNAVAILABLE

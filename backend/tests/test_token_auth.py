"""Tests for bearer token verification."""

from datetime import timedelta

import pytest
from fastapi import HTTPException
from jose import jwt

from app.auth import create_access_token, decode_token
from app.config import get_settings
from factories import OWNER_A


class TestDecodeToken:
    def test_round_trip(self):
        settings = get_settings()
        payload = decode_token(create_access_token(OWNER_A, settings), settings)
        assert payload["sub"] == OWNER_A
        assert payload["aud"] == "authenticated"

    def test_wrong_secret(self):
        settings = get_settings()
        token = jwt.encode({"sub": OWNER_A, "aud": "authenticated"}, "not-the-secret", algorithm="HS256")
        with pytest.raises(HTTPException) as exc:
            decode_token(token, settings)
        assert exc.value.status_code == 401
        assert exc.value.detail == "unauthorized"

    def test_wrong_audience(self):
        settings = get_settings()
        token = jwt.encode(
            {"sub": OWNER_A, "aud": "someone-else"}, settings.jwt_secret_key, algorithm="HS256"
        )
        with pytest.raises(HTTPException):
            decode_token(token, settings)

    def test_expired(self):
        settings = get_settings()
        token = create_access_token(OWNER_A, settings, expires_delta=timedelta(minutes=-1))
        with pytest.raises(HTTPException):
            decode_token(token, settings)


class TestOwnerFromToken:
    def test_missing_sub_is_unauthorized(self, client):
        settings = get_settings()
        token = jwt.encode({"aud": "authenticated"}, settings.jwt_secret_key, algorithm="HS256")
        response = client.post("/sync/pull", json={}, headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401
        assert response.json() == {"error": "unauthorized"}

    def test_body_cannot_choose_owner(self, client, auth_headers, other_auth_headers):
        from factories import new_id, upsert

        mutation = upsert("activities", new_id(), {"name": "Mine"})
        client.post(
            "/sync/push",
            json={"mutations": [mutation], "owner_id": "22222222-2222-4222-8222-222222222222"},
            headers=auth_headers,
        )
        assert client.post("/sync/pull", json={}, headers=other_auth_headers).json()["changes"] == []

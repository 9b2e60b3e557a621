"""
Tests for bearer token creation and verification.
"""

from datetime import timedelta

import jwt
import pytest

from league_night.services import auth_service


@pytest.fixture(autouse=True)
def jwt_settings(monkeypatch):
    monkeypatch.setenv("AUTH_JWT_SECRET", "test-secret")
    monkeypatch.delenv("AUTH_JWT_AUDIENCE", raising=False)


def test_token_round_trip():
    token = auth_service.create_access_token({"user_id": 42})

    payload = auth_service.verify_token(token)

    assert payload["user_id"] == 42
    assert auth_service.get_user_id(payload) == 42


def test_expired_token_is_rejected():
    token = auth_service.create_access_token({"user_id": 42}, expires_delta=timedelta(seconds=-5))
    assert auth_service.verify_token(token) is None


def test_token_signed_with_other_secret_is_rejected():
    token = jwt.encode({"user_id": 42}, "someone-else", algorithm="HS256")
    assert auth_service.verify_token(token) is None


def test_garbage_token_is_rejected():
    assert auth_service.verify_token("not-a-jwt") is None


def test_audience_is_enforced_when_configured(monkeypatch):
    monkeypatch.setenv("AUTH_JWT_AUDIENCE", "league-night")
    good = auth_service.create_access_token({"user_id": 7})
    bad = jwt.encode({"user_id": 7, "aud": "other-app"}, "test-secret", algorithm="HS256")

    assert auth_service.get_user_id(auth_service.verify_token(good)) == 7
    assert auth_service.verify_token(bad) is None


@pytest.mark.parametrize(
    "payload,expected",
    [
        ({"user_id": 5}, 5),
        ({"sub": "9"}, 9),
        ({"user_id": 5, "sub": "9"}, 5),
        ({"sub": "auth0|abc"}, None),
        ({}, None),
    ],
)
def test_get_user_id(payload, expected):
    assert auth_service.get_user_id(payload) == expected

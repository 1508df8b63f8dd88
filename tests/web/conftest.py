"""Shared fixtures for web API tests."""

import os
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from jose import jwt

ADMIN_EMAIL = "admin@example.com"


@pytest.fixture
def jwt_secret():
    return "test-jwt-secret"


def _make_auth_token(jwt_secret, user_id, email="u@test.com", name="U"):
    return jwt.encode(
        {"sub": user_id, "email": email, "name": name},
        jwt_secret,
        algorithm="HS256",
    )


@pytest.fixture
def make_headers(jwt_secret):
    def _make(user_id, email="u@test.com", name="U"):
        return {"Authorization": f"Bearer {_make_auth_token(jwt_secret, user_id, email, name)}"}

    return _make


@pytest.fixture
def admin_headers(make_headers):
    """Admin via the ADMIN_EMAILS allow-list."""
    return make_headers("admin-1", ADMIN_EMAIL, "Admin")


@pytest.fixture
def user_headers(make_headers):
    return make_headers("user-123", "test@example.com", "Test")


@pytest.fixture
def client(jwt_secret, tmp_path, db_path):
    """Test client whose config points at this test's tuning.db."""
    from web.deps import get_analyzer_gateway, get_config

    env = {
        "TUNER_JWT_SECRET": jwt_secret,
        "TUNER_HOME": str(tmp_path),
        "ADMIN_EMAILS": ADMIN_EMAIL,
    }
    with patch.dict(os.environ, env):
        get_config.cache_clear()
        get_analyzer_gateway.cache_clear()

        from web.app import app

        yield TestClient(app)

        get_config.cache_clear()
        get_analyzer_gateway.cache_clear()

from __future__ import annotations

from datetime import datetime

import pytest
import requests

from app import create_app
from config import TestingConfig
from models import db, Identity
from sessions import bind_identity, get_session_store, new_session


@pytest.fixture
def app():
    app = create_app(TestingConfig)
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


def login_as(app, client, social_id="user-1", platform="google", name="Test User",
             email="test@example.com"):
    """Create an identity and a logged-in session record, then hand the cookie to the client."""
    with app.app_context():
        identity = Identity(
            social_id=social_id,
            platform=platform,
            name=name,
            email=email,
            profile_picture="",
            last_login=datetime.utcnow(),
        )
        db.session.add(identity)
        db.session.commit()
        identity_id = identity.id

        session = get_session_store().set(bind_identity(new_session(), identity_id))

    client.set_cookie(app.config["SESSION_ID_COOKIE_NAME"], session.id)
    return identity_id


@pytest.fixture
def logged_in(app, client):
    return login_as(app, client)


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error")

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON body")
        return self._payload


class FakeProvider:
    """Stands in for a provider's token and userinfo endpoints.

    Authorization codes are single use, like a real provider.
    """

    def __init__(self, profile, token="access-token"):
        self.profile = profile
        self.token = token
        self.used_codes = set()
        self.token_requests = []
        self.profile_requests = []
        self.token_error = None
        self.profile_error = None

    def post(self, url, data=None, headers=None, timeout=None):
        self.token_requests.append({"url": url, "data": data, "headers": headers, "timeout": timeout})
        if self.token_error is not None:
            raise self.token_error
        code = data["code"]
        if code in self.used_codes:
            return FakeResponse(400, {"error": "invalid_grant"})
        self.used_codes.add(code)
        return FakeResponse(200, {"access_token": self.token, "expires_in": 3600})

    def get(self, url, headers=None, timeout=None):
        self.profile_requests.append({"url": url, "headers": headers, "timeout": timeout})
        if self.profile_error is not None:
            raise self.profile_error
        if headers.get("Authorization") != f"Bearer {self.token}":
            return FakeResponse(401, {"message": "invalid token"})
        return FakeResponse(200, self.profile)


@pytest.fixture
def fake_provider(monkeypatch):
    provider = FakeProvider(
        profile={
            "sub": "li-123",
            "name": "Ada Lovelace",
            "email": "ada@example.com",
            "picture": "https://media.example.com/ada.png",
        }
    )
    monkeypatch.setattr("oauth.requests.post", provider.post)
    monkeypatch.setattr("oauth.requests.get", provider.get)
    return provider

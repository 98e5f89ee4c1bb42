from __future__ import annotations

from datetime import datetime, timedelta

from config import TestingConfig
from app import create_app
from conftest import login_as
from models import db, Identity, SessionRecord
from sessions import (
    Session,
    SessionStore,
    bind_identity,
    clear_oauth_state,
    get_session_store,
    new_session,
    unbind_identity,
    with_oauth_state,
)


def test_bind_and_unbind_return_new_sessions():
    original = Session(id="sid", data={"other": 1})

    bound = bind_identity(original, "a" * 24)
    unbound = unbind_identity(bound)

    assert original.user_id is None
    assert bound.user_id == "a" * 24
    assert bound.modified is True
    assert unbound.user_id is None
    assert unbound.data == {"other": 1}


def test_oauth_state_is_kept_per_provider():
    session = with_oauth_state(Session(id="sid"), "linkedin", "s1")
    session = with_oauth_state(session, "google", "s2")

    cleared = clear_oauth_state(session, "linkedin")

    assert cleared.oauth_state("linkedin") is None
    assert cleared.oauth_state("google") == "s2"
    assert clear_oauth_state(cleared, "google").data == {}


def test_store_set_then_get_round_trips_data(app):
    with app.app_context():
        store = get_session_store()
        saved = store.set(bind_identity(new_session(), "b" * 24))

        loaded = store.get(saved.id)

    assert saved.is_new is False
    assert loaded.user_id == "b" * 24
    assert loaded.expires_at == saved.expires_at


def test_store_get_returns_none_for_expired_session_and_removes_it(app):
    now = datetime.utcnow()
    with app.app_context():
        store = get_session_store()
        saved = store.set(new_session(), now=now - timedelta(days=2))

        assert store.get(saved.id, now=now) is None
        assert db.session.get(SessionRecord, saved.id) is None


def test_touch_only_extends_expiry_after_touch_window(app):
    start = datetime(2026, 1, 1, 12, 0, 0)
    with app.app_context():
        store = SessionStore(ttl=timedelta(hours=24), touch_after=timedelta(hours=1))
        saved = store.set(new_session(), now=start)

        early = store.touch(saved, now=start + timedelta(minutes=10))
        late = store.touch(saved, now=start + timedelta(hours=2))

        record = db.session.get(SessionRecord, saved.id)
        assert record.expires_at == start + timedelta(hours=26)

    assert early.expires_at == start + timedelta(hours=24)
    assert late.expires_at == start + timedelta(hours=26)


def test_destroy_and_purge_expired(app):
    now = datetime.utcnow()
    with app.app_context():
        store = get_session_store()
        live = store.set(new_session(), now=now)
        stale = store.set(new_session(), now=now - timedelta(days=3))
        gone = store.set(new_session(), now=now)

        store.destroy(gone.id)
        purged = store.purge_expired(now=now)

        assert purged == 1
        assert store.get(live.id, now=now) is not None
        assert db.session.get(SessionRecord, stale.id) is None
        assert db.session.get(SessionRecord, gone.id) is None


def test_first_request_creates_and_persists_session_cookie(app, client):
    response = client.get("/")

    cookie_header = response.headers["Set-Cookie"]
    assert cookie_header.startswith("sessionId=")
    assert "HttpOnly" in cookie_header
    assert "Max-Age=86400" in cookie_header

    session_id = client.get_cookie("sessionId").value
    with app.app_context():
        assert db.session.get(SessionRecord, session_id) is not None


def test_session_cookie_is_reused_across_requests(client):
    client.get("/")
    first = client.get_cookie("sessionId").value

    client.get("/api/projects")

    assert client.get_cookie("sessionId").value == first


def test_health_check_does_not_create_sessions(app, client):
    response = client.get("/health")

    assert "Set-Cookie" not in response.headers
    with app.app_context():
        assert SessionRecord.query.count() == 0


def test_production_cookie_is_secure_and_cross_site():
    class SecureCookieConfig(TestingConfig):
        SESSION_COOKIE_SECURE = True
        SESSION_COOKIE_SAMESITE = "None"

    app = create_app(SecureCookieConfig)
    response = app.test_client().get("/")

    cookie_header = response.headers["Set-Cookie"]
    assert "Secure" in cookie_header
    assert "SameSite=None" in cookie_header
    with app.app_context():
        db.drop_all()


def test_unknown_cookie_value_starts_a_fresh_session(client):
    client.set_cookie("sessionId", "not-a-real-session")

    client.get("/")

    assert client.get_cookie("sessionId").value != "not-a-real-session"


def test_session_bound_to_deleted_identity_is_unbound(app, client):
    identity_id = login_as(app, client)
    with app.app_context():
        db.session.delete(db.session.get(Identity, identity_id))
        db.session.commit()

    assert client.get("/profile").status_code == 401

    session_id = client.get_cookie("sessionId").value
    with app.app_context():
        assert get_session_store().get(session_id).user_id is None


def test_profile_requires_login(client):
    response = client.get("/profile")

    assert response.status_code == 401
    assert response.get_json() == {"error": "Unauthorized"}


def test_profile_returns_identity_fields(app, client):
    login_as(app, client, name="Grace Hopper", email="grace@example.com", platform="github")

    response = client.get("/profile")

    assert response.status_code == 200
    body = response.get_json()
    assert body["name"] == "Grace Hopper"
    assert body["email"] == "grace@example.com"
    assert body["platform"] == "github"
    assert set(body) == {"name", "email", "profilePicture", "platform", "lastLogin"}


def test_logout_destroys_session_and_clears_cookie(app, client, logged_in):
    session_id = client.get_cookie("sessionId").value

    response = client.get("/logout")

    assert response.status_code == 200
    assert response.get_json() == {"message": "Logged out successfully"}
    assert "sessionId=;" in response.headers["Set-Cookie"]
    with app.app_context():
        assert db.session.get(SessionRecord, session_id) is None
    assert client.get("/profile").status_code == 401


def test_purge_sessions_cli_command(app):
    with app.app_context():
        get_session_store().set(new_session(), now=datetime.utcnow() - timedelta(days=5))

    result = app.test_cli_runner().invoke(args=["purge-sessions"])

    assert "Purged 1 expired sessions" in result.output


def test_session_cookie_is_separate_from_flask_cookie_session(app, client):
    response = client.get("/")

    set_cookies = response.headers.getlist("Set-Cookie")
    assert app.config["SESSION_ID_COOKIE_NAME"] == "sessionId"
    assert app.session_interface.get_cookie_name(app) != "sessionId"
    assert len(set_cookies) == 1
    assert set_cookies[0].startswith("sessionId=")

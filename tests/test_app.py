from __future__ import annotations

import logging
import os

import pytest

from app import create_app, setup_logging
from config import Config, TestingConfig
from models import db


def test_health_check(client):
    response = client.get("/health")

    assert response.status_code == 200
    body = response.get_json()
    assert body["status"] == "healthy"
    assert body["database"] == "connected"


def test_index_lists_configured_providers(client):
    response = client.get("/")

    assert response.status_code == 200
    assert response.get_json()["endpoints"]["auth"]["providers"] == ["github", "google", "linkedin"]


def test_security_headers_are_set(client):
    response = client.get("/health")

    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["X-XSS-Protection"] == "1; mode=block"


def test_unknown_route_returns_json_404(client):
    response = client.get("/does-not-exist")

    assert response.status_code == 404
    assert response.get_json()["error"] == "not_found"


def test_wrong_method_returns_json_405(client):
    response = client.patch("/api/projects")

    assert response.status_code == 405
    assert response.get_json()["error"] == "method_not_allowed"


def test_cors_allows_frontend_with_credentials(client):
    response = client.get("/health", headers={"Origin": "http://frontend.test"})

    assert response.headers["Access-Control-Allow-Origin"] == "http://frontend.test"
    assert response.headers["Access-Control-Allow-Credentials"] == "true"


def test_unexpected_error_hides_detail_outside_development(app, client):
    def explode():
        raise RuntimeError("secret internals")

    app.add_url_rule("/explode", "explode", explode)

    response = client.get("/explode")

    assert response.status_code == 500
    assert response.get_json() == {"error": "Something went wrong!"}


def test_unexpected_error_shows_detail_in_development():
    class DevelopmentTestingConfig(TestingConfig):
        ENV = "development"

    app = create_app(DevelopmentTestingConfig)

    def explode():
        raise RuntimeError("secret internals")

    app.add_url_rule("/explode", "explode", explode)

    response = app.test_client().get("/explode")

    assert response.status_code == 500
    assert response.get_json()["message"] == "secret internals"
    with app.app_context():
        db.drop_all()


def test_unconfigured_provider_is_not_offered():
    class NoGithubConfig(TestingConfig):
        GITHUB_CLIENT_ID = None

    app = create_app(NoGithubConfig)

    response = app.test_client().get("/auth/github")

    assert response.status_code == 404
    with app.app_context():
        db.drop_all()


def test_production_validation_requires_secrets(monkeypatch):
    monkeypatch.setattr(Config, "ENV", "production")
    monkeypatch.delenv("DATABASE_URL", raising=False)

    with pytest.raises(ValueError):
        Config.validate()


def test_debug_routes_and_test_session_only_in_debug(client):
    assert client.get("/debug/routes").status_code == 404
    assert client.get("/test-session").status_code == 404


def test_test_session_persists_value_in_debug():
    class DebugTestingConfig(TestingConfig):
        DEBUG = True

    app = create_app(DebugTestingConfig)
    debug_client = app.test_client()

    response = debug_client.get("/test-session")

    assert response.status_code == 200
    body = response.get_json()
    assert body["sessionData"] == {"testData": "test"}
    assert debug_client.get_cookie("sessionId").value == body["sessionID"]
    assert any(r["path"] == "/api/projects" for r in debug_client.get("/debug/routes").get_json()["routes"])
    with app.app_context():
        db.drop_all()


def test_setup_logging_twice_does_not_duplicate_handlers(app, tmp_path):
    app.config["LOG_DIR"] = str(tmp_path / "logs")
    root = logging.getLogger()
    handlers_before = list(root.handlers)
    level_before = root.level

    try:
        setup_logging(app)
        setup_logging(app)

        added = [h for h in root.handlers if h not in handlers_before]
        assert sorted(os.path.basename(h.baseFilename) for h in added) == ["app.log", "error.log"]
    finally:
        for handler in root.handlers[:]:
            if handler not in handlers_before:
                root.removeHandler(handler)
                handler.close()
        root.setLevel(level_before)

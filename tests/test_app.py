from __future__ import annotations

from werkzeug.exceptions import UnsupportedMediaType


def test_blueprints_are_mounted_under_their_own_paths(app) -> None:
    rules = {rule.rule for rule in app.url_map.iter_rules()}

    assert {
        "/api/v1/auth/login",
        "/api/v1/auth/refresh",
        "/api/v1/auth/logout",
        "/api/v1/auth/me",
        "/api/v1/auth/sessions/<session_id>",
        "/api/v1/users/<user_id>",
        "/api/v1/users/<user_id>/deactivate",
        "/api/v1/audit",
        "/api/v1/health",
    } <= rules
    assert "/api/v1/login" not in rules
    assert "/api/v1/<user_id>" not in rules


def test_http_errors_keep_their_own_code(app, client) -> None:
    def upload():
        raise UnsupportedMediaType()

    app.add_url_rule("/upload-test", "upload_test", upload, methods=["POST"])

    resp = client.post("/upload-test")

    assert resp.status_code == 415
    assert resp.get_json()["error"] == "UNSUPPORTED_MEDIA_TYPE"
    assert resp.get_json()["status"] == 415

from __future__ import annotations

import json
import time

import pytest

from models import storage
from models.audit_log import AuditLog
from models.refresh_token import RefreshToken
from models.user import Role, User
from tests.support import OTHER_STRONG_PASSWORD, STRONG_PASSWORD, FakeClock
from utils.rate_limit import RateLimiter
from utils.security import TokenIssuer, verify_password

API = "/api/v1/auth"


def _tokens_for(user_id: str):
    return (
        storage.get_session()
        .query(RefreshToken)
        .filter(RefreshToken.user_id == user_id)
        .order_by(RefreshToken.created_at.asc())
        .all()
    )


def _audit_rows(event_type: str | None = None):
    query = storage.get_session().query(AuditLog)
    if event_type:
        query = query.filter(AuditLog.event_type == event_type)
    return query.order_by(AuditLog.created_at.asc()).all()


def _set_active(user_id: str, active: bool) -> None:
    user = storage.get(User, user_id)
    user.is_active = active
    storage.save()


# -- login ---------------------------------------------------------------

def test_login_returns_token_pair_and_profile(client, make_user, school, login) -> None:
    user = make_user(email="ada@example.org", role=Role.STAFF, school=school)

    resp = login("ada@example.org")

    assert resp.status_code == 200
    body = resp.get_json()
    assert body["tokenType"] == "Bearer"
    assert body["expiresIn"] == 4 * 60 * 60
    assert body["accessToken"] and body["refreshToken"]
    assert body["user"]["id"] == user.id
    assert body["user"]["role"] == "staff"
    assert body["user"]["schoolId"] == school.id
    assert "passwordHash" not in body["user"] and "password_hash" not in body["user"]

    me = client.get(f"{API}/me", headers={"Authorization": f"Bearer {body['accessToken']}"})
    assert me.status_code == 200
    assert me.get_json()["data"]["email"] == "ada@example.org"


def test_login_email_is_case_insensitive(make_user, login) -> None:
    make_user(email="grace@example.org")

    assert login("  Grace@Example.org ").status_code == 200


@pytest.mark.parametrize("case", ["unknown_email", "wrong_password", "inactive"])
def test_login_failures_are_indistinguishable(make_user, login, case) -> None:
    make_user(email="bob@example.org")
    make_user(email="idle@example.org", is_active=False)
    email, password = {
        "unknown_email": ("nobody@example.org", STRONG_PASSWORD),
        "wrong_password": ("bob@example.org", "Wr0ng&Passw0rd!"),
        "inactive": ("idle@example.org", STRONG_PASSWORD),
    }[case]

    resp = login(email, password)

    assert resp.status_code == 401
    assert resp.get_json() == {"error": "INVALID_CREDENTIALS", "message": "Invalid credentials", "status": 401}
    failed = _audit_rows("login_failed")
    assert len(failed) == 1
    assert failed[0].severity == "high"
    assert failed[0].success is False


def test_login_requires_fields(client) -> None:
    resp = client.post(f"{API}/login", json={"email": "a@example.org"})

    assert resp.status_code == 422
    assert "password" in resp.get_json()["details"]


def test_audit_never_contains_password_or_refresh_token(make_user, login, client) -> None:
    make_user(email="ada@example.org")
    login("ada@example.org", "Wr0ng&Passw0rd!")
    refresh_token = login("ada@example.org").get_json()["refreshToken"]
    client.post(f"{API}/refresh", json={"refreshToken": refresh_token})
    client.post(f"{API}/logout", json={"refreshToken": "not-a-real-token"})

    rows = _audit_rows()
    assert {r.event_type for r in rows} >= {"login_failed", "login_success", "token_refresh", "logout"}
    dumped = json.dumps([r.to_dict() for r in rows], default=str)
    assert STRONG_PASSWORD not in dumped
    assert "Wr0ng&Passw0rd!" not in dumped
    assert refresh_token not in dumped
    assert "not-a-real-token" not in dumped


# -- session cap -----------------------------------------------------------

def test_n_plus_one_logins_revoke_exactly_the_oldest(app, make_user, login) -> None:
    user = make_user(email="multi@example.org")
    cap = app.config["MAX_TOKENS_PER_USER"]

    issued = []
    for i in range(cap + 1):
        resp = login("multi@example.org", ip=f"10.0.0.{i + 1}")
        assert resp.status_code == 200
        issued.append(resp.get_json()["refreshToken"])

    rows = _tokens_for(user.id)
    live = [r for r in rows if not r.revoked]
    assert len(rows) == cap + 1
    assert len(live) == cap
    assert rows[0].revoked
    assert all(not r.revoked for r in rows[1:])

    client = app.test_client()
    assert client.post(f"{API}/refresh", json={"refreshToken": issued[0]}).status_code == 401
    assert client.post(f"{API}/refresh", json={"refreshToken": issued[-1]}).status_code == 200


# -- refresh -----------------------------------------------------------------

def test_refresh_rotates_by_default(client, make_user, login) -> None:
    make_user(email="ada@example.org")
    first = login("ada@example.org").get_json()["refreshToken"]

    resp = client.post(f"{API}/refresh", json={"refreshToken": first})

    assert resp.status_code == 200
    body = resp.get_json()
    assert body["accessToken"] and body["expiresIn"] == 4 * 60 * 60
    assert body["refreshToken"] != first
    # the consumed token is dead, its replacement works
    assert client.post(f"{API}/refresh", json={"refreshToken": first}).status_code == 401
    assert client.post(f"{API}/refresh", json={"refreshToken": body["refreshToken"]}).status_code == 200


def test_refresh_without_rotation_keeps_the_token(app, client, make_user, login) -> None:
    app.config["REFRESH_TOKEN_ROTATION"] = False
    make_user(email="ada@example.org")
    token = login("ada@example.org").get_json()["refreshToken"]

    for _ in range(3):
        resp = client.post(f"{API}/refresh", json={"refreshToken": token})
        assert resp.status_code == 200
        assert "refreshToken" not in resp.get_json()


def test_refresh_with_garbage_is_401(client) -> None:
    resp = client.post(f"{API}/refresh", json={"refreshToken": "garbage"})

    assert resp.status_code == 401
    assert resp.get_json()["message"] == "Invalid or expired token"
    assert resp.headers["WWW-Authenticate"] == "Bearer"


@pytest.mark.parametrize("rotation", [True, False])
def test_deactivated_user_cannot_refresh_and_token_is_revoked(app, client, make_user, login, rotation) -> None:
    app.config["REFRESH_TOKEN_ROTATION"] = rotation
    user = make_user(email="ada@example.org")
    body = login("ada@example.org").get_json()

    _set_active(user.id, False)

    assert client.post(f"{API}/refresh", json={"refreshToken": body["refreshToken"]}).status_code == 401
    assert all(r.revoked for r in _tokens_for(user.id))
    # the still unexpired access token stops working too
    me = client.get(f"{API}/me", headers={"Authorization": f"Bearer {body['accessToken']}"})
    assert me.status_code == 401

    _set_active(user.id, True)
    assert client.post(f"{API}/refresh", json={"refreshToken": body["refreshToken"]}).status_code == 401


# -- logout ------------------------------------------------------------------

def test_logout_revokes_one_session(client, make_user, login) -> None:
    make_user(email="ada@example.org")
    keep = login("ada@example.org").get_json()["refreshToken"]
    drop = login("ada@example.org").get_json()["refreshToken"]

    resp = client.post(f"{API}/logout", json={"refreshToken": drop})

    assert resp.status_code == 200
    assert resp.get_json()["revokedSessions"] == 1
    assert client.post(f"{API}/refresh", json={"refreshToken": drop}).status_code == 401
    assert client.post(f"{API}/refresh", json={"refreshToken": keep}).status_code == 200


def test_logout_all_revokes_exactly_the_open_sessions(client, make_user, login) -> None:
    user = make_user(email="ada@example.org")
    tokens = [login("ada@example.org", ip=f"10.1.0.{i}").get_json()["refreshToken"] for i in range(3)]

    resp = client.post(f"{API}/logout", json={"refreshToken": tokens[0], "logoutAll": True})

    assert resp.status_code == 200
    assert resp.get_json()["revokedSessions"] == 3
    assert all(r.revoked for r in _tokens_for(user.id))
    for token in tokens:
        assert client.post(f"{API}/refresh", json={"refreshToken": token}).status_code == 401


def test_logout_with_unknown_token_is_401(client) -> None:
    resp = client.post(f"{API}/logout", json={"refreshToken": "unknown"})

    assert resp.status_code == 401
    rows = _audit_rows("logout")
    assert rows[-1].success is False
    assert rows[-1].severity == "high"


@pytest.mark.parametrize(
    "path, body, message",
    [
        ("/refresh", '{"refreshToken": "\\ud800abc"}', "Invalid or expired token"),
        ("/logout", '{"refreshToken": "\\ud800abc"}', "Invalid or expired token"),
        ("/login", '{"email": "lone@example.org", "password": "\\ud800abc"}', "Invalid credentials"),
    ],
)
def test_lone_surrogates_fail_like_any_bad_credential(client, make_user, path, body, message) -> None:
    make_user(email="lone@example.org")

    resp = client.post(f"{API}{path}", data=body, content_type="application/json")

    assert resp.status_code == 401
    assert resp.get_json()["message"] == message
    assert _audit_rows("suspicious_activity") == []


def test_logout_is_idempotent_for_a_known_token(client, make_user, login) -> None:
    make_user(email="ada@example.org")
    token = login("ada@example.org").get_json()["refreshToken"]

    assert client.post(f"{API}/logout", json={"refreshToken": token}).status_code == 200
    assert client.post(f"{API}/logout", json={"refreshToken": token}).status_code == 200


# -- change password -----------------------------------------------------------

def test_change_password_rejects_weak_password_with_details(client, make_user, auth_headers) -> None:
    user = make_user()

    resp = client.put(
        f"{API}/change-password",
        json={"currentPassword": STRONG_PASSWORD, "newPassword": "password123"},
        headers=auth_headers(user),
    )

    assert resp.status_code == 400
    body = resp.get_json()
    assert body["error"] == "VALIDATION_FAILED"
    rules = {v["rule"] for v in body["details"]["violations"]}
    assert "common_password" in rules
    assert body["details"]["strength"]["score"] < 50


def test_change_password_accepts_strong_password(client, make_user, auth_headers, login) -> None:
    user = make_user(email="ada@example.org", password=OTHER_STRONG_PASSWORD)

    resp = client.put(
        f"{API}/change-password",
        json={"currentPassword": OTHER_STRONG_PASSWORD, "newPassword": STRONG_PASSWORD},
        headers=auth_headers(user),
    )

    assert resp.status_code == 200
    assert verify_password(STRONG_PASSWORD, storage.get(User, user.id).password_hash)
    assert login("ada@example.org", OTHER_STRONG_PASSWORD).status_code == 401
    assert login("ada@example.org", STRONG_PASSWORD).status_code == 200
    changes = _audit_rows("password_change")
    assert changes[-1].severity == "medium"


def test_change_password_checks_current_password(client, make_user, auth_headers) -> None:
    user = make_user()

    wrong = client.put(
        f"{API}/change-password",
        json={"currentPassword": "Not-The-0ne&Pw", "newPassword": OTHER_STRONG_PASSWORD},
        headers=auth_headers(user),
    )
    same = client.put(
        f"{API}/change-password",
        json={"currentPassword": STRONG_PASSWORD, "newPassword": STRONG_PASSWORD},
        headers=auth_headers(user),
    )

    assert wrong.status_code == 400
    assert wrong.get_json()["message"] == "Current password is incorrect"
    assert same.status_code == 400


def test_change_password_can_end_other_sessions(app, client, make_user, auth_headers, login) -> None:
    app.config["REVOKE_SESSIONS_ON_PASSWORD_CHANGE"] = True
    user = make_user(email="ada@example.org")
    token = login("ada@example.org").get_json()["refreshToken"]

    resp = client.put(
        f"{API}/change-password",
        json={"currentPassword": STRONG_PASSWORD, "newPassword": OTHER_STRONG_PASSWORD},
        headers=auth_headers(user),
    )

    assert resp.get_json()["revokedSessions"] == 1
    assert client.post(f"{API}/refresh", json={"refreshToken": token}).status_code == 401


def test_change_password_requires_bearer(client) -> None:
    resp = client.put(f"{API}/change-password", json={"currentPassword": "x", "newPassword": "y"})

    assert resp.status_code == 401
    assert _audit_rows("invalid_token")[-1].details == {"reason": "missing", "has_auth_header": False}


# -- rate limiting -------------------------------------------------------------

def test_sixth_login_in_window_is_429_until_window_passes(app, make_user, login) -> None:
    clock = FakeClock()
    app.extensions["rate_limiter"] = RateLimiter(clock=clock)
    make_user(email="ada@example.org")

    for _ in range(5):
        assert login("ada@example.org", "Wr0ng&Passw0rd!").status_code == 401

    blocked = login("ada@example.org")
    assert blocked.status_code == 429
    assert blocked.get_json()["message"] == "Too many login attempts, please try again later"
    assert int(blocked.headers["Retry-After"]) == 900
    assert _audit_rows("rate_limit_exceeded")[-1].severity == "high"

    # another client address is not affected
    assert login("ada@example.org", ip="10.20.30.40").status_code == 200

    clock.advance(15 * 60 + 1)
    assert login("ada@example.org").status_code == 200


def test_general_api_limit(app, client) -> None:
    app.config["RATE_LIMITS"] = {"login": (5, 900), "api": (3, 900)}

    statuses = [client.get(f"{API}/me").status_code for _ in range(4)]
    assert statuses == [401, 401, 401, 429]
    # health probes are exempt
    assert client.get("/api/v1/health").status_code == 200


# -- end to end ----------------------------------------------------------------

def test_access_expiry_then_refresh_end_to_end(app, client, make_user, login) -> None:
    make_user(email="ada@example.org")
    offset = {"seconds": -(4 * 60 * 60 - 2)}
    app.extensions["token_issuer"] = TokenIssuer(
        app.config["JWT_SECRET"],
        app.extensions["refresh_tokens"],
        issuer=app.config["JWT_ISSUER"],
        clock=lambda: time.time() + offset["seconds"],
    )

    body = login("ada@example.org").get_json()
    headers = {"Authorization": f"Bearer {body['accessToken']}"}
    assert client.get(f"{API}/me", headers=headers).status_code == 200

    time.sleep(3)
    expired = client.get(f"{API}/me", headers=headers)
    assert expired.status_code == 401
    assert expired.get_json()["message"] == "Invalid or expired token"
    assert _audit_rows("invalid_token")[-1].details["reason"] == "expired"

    offset["seconds"] = 0
    refreshed = client.post(f"{API}/refresh", json={"refreshToken": body["refreshToken"]})
    assert refreshed.status_code == 200
    new_headers = {"Authorization": f"Bearer {refreshed.get_json()['accessToken']}"}
    assert client.get(f"{API}/me", headers=new_headers).status_code == 200


def test_tampered_access_token_is_401(client, make_user, auth_headers) -> None:
    headers = auth_headers(make_user())
    headers["Authorization"] = headers["Authorization"][:-3] + "xyz"

    assert client.get(f"{API}/me", headers=headers).status_code == 401


# -- registration --------------------------------------------------------------

def test_tenant_admin_registers_user_in_own_school(client, make_user, school, auth_headers) -> None:
    admin = make_user(role=Role.TENANT_ADMIN, school=school)

    resp = client.post(
        f"{API}/register",
        json={"email": "New.Staffer@example.org", "password": STRONG_PASSWORD,
              "firstName": "New", "lastName": "Staffer", "role": "staff"},
        headers=auth_headers(admin),
    )

    assert resp.status_code == 201
    data = resp.get_json()["data"]
    assert data["email"] == "new.staffer@example.org"
    assert data["schoolId"] == school.id
    assert data["role"] == "staff"
    assert _audit_rows("user_created")[-1].user_id == admin.id


def test_register_rejects_weak_password_and_duplicates(client, make_user, school, auth_headers) -> None:
    admin = make_user(email="admin@example.org", role=Role.TENANT_ADMIN, school=school)
    payload = {"email": "admin@example.org", "password": STRONG_PASSWORD, "firstName": "A", "lastName": "B"}

    weak = client.post(f"{API}/register", json={**payload, "password": "password123"},
                       headers=auth_headers(admin))
    dup = client.post(f"{API}/register", json=payload, headers=auth_headers(admin))

    assert weak.status_code == 400
    assert weak.get_json()["details"]["violations"]
    assert dup.status_code == 409


def test_register_is_scoped(client, make_user, make_school, auth_headers) -> None:
    school_a, school_b = make_school("A"), make_school("B")
    admin = make_user(role=Role.TENANT_ADMIN, school=school_a)
    learner = make_user(role=Role.LEARNER, school=school_a)
    payload = {"email": "x@example.org", "password": STRONG_PASSWORD, "firstName": "X", "lastName": "Y"}

    other_school = client.post(f"{API}/register", json={**payload, "schoolId": school_b.id},
                               headers=auth_headers(admin))
    escalation = client.post(f"{API}/register", json={**payload, "role": "platform_admin"},
                             headers=auth_headers(admin))
    by_learner = client.post(f"{API}/register", json=payload, headers=auth_headers(learner))

    assert other_school.status_code == 403
    assert escalation.status_code == 403
    assert by_learner.status_code == 403
    assert _audit_rows("permission_escalation")[-1].severity == "critical"
    assert len(_audit_rows("access_denied")) == 2


# -- sessions --------------------------------------------------------------------

def test_list_and_revoke_own_sessions(client, make_user, login, auth_headers) -> None:
    user = make_user(email="ada@example.org")
    other = make_user(email="eve@example.org")
    login("ada@example.org", ip="10.0.0.1")
    second = login("ada@example.org", ip="10.0.0.2").get_json()["refreshToken"]

    listed = client.get(f"{API}/sessions", headers=auth_headers(user)).get_json()
    assert listed["count"] == 2
    assert {"id", "deviceInfo", "createdAt", "lastUsedAt", "expiresAt"} <= set(listed["data"][0])
    session_id = listed["data"][0]["id"]

    assert client.delete(f"{API}/sessions/{session_id}", headers=auth_headers(other)).status_code == 404
    assert client.delete(f"{API}/sessions/{session_id}", headers=auth_headers(user)).status_code == 200
    assert client.get(f"{API}/sessions", headers=auth_headers(user)).get_json()["count"] == 1
    assert second not in json.dumps(listed)


# -- response hygiene ------------------------------------------------------------

def test_security_headers_on_every_response(client) -> None:
    for resp in (client.get("/api/v1/health"), client.get(f"{API}/me"), client.get("/nope")):
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
        assert resp.headers["X-Frame-Options"] == "DENY"
        assert "Referrer-Policy" in resp.headers
        assert "Strict-Transport-Security" not in resp.headers

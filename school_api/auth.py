"""
Authentication blueprint:
- POST   /auth/login
- POST   /auth/refresh
- POST   /auth/logout
- PUT    /auth/change-password
- GET    /auth/me
- POST   /auth/register          (admins) -> create an account in a school
- GET    /auth/sessions          -> the caller's open sessions
- DELETE /auth/sessions/<id>     -> revoke one of them

The implementation:
- Uses argon2 for password hashing (via utils.security)
- Issues short-lived access tokens (JWT, HS256) and opaque refresh tokens
- Stores only a SHA-256 of each refresh token (RefreshTokenStore) so sessions
  can be capped, rotated and revoked
- Every outcome is recorded by the audit logger
"""
from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request

from models import storage
from models.school import School
from models.user import Role, User
from models.schemas.user import (
    ChangePasswordSchema,
    LoginSchema,
    LogoutSchema,
    RefreshSchema,
    RegisterSchema,
    SessionOutSchema,
    UserOutSchema,
)
from utils.audit import AuditEventType, get_audit_logger
from utils.client import client_ip, device_info, user_agent
from utils.decorators import capability_required, check_capability, jwt_required
from utils.exceptions import (
    AccountInactive,
    Conflict,
    InvalidCredentials,
    PermissionDenied,
    ResourceNotFound,
    TokenInvalidOrExpired,
    ValidationFailed,
)
from utils.password_policy import validate_password
from utils.permissions import get_capability
from utils.rate_limit import rate_limited
from utils.refresh_tokens import get_refresh_store
from utils.security import get_token_issuer, hash_password, needs_rehash, verify_password

TOKEN_TYPE = "Bearer"

bp = Blueprint("auth", __name__, url_prefix="/auth")

login_schema = LoginSchema()
refresh_schema = RefreshSchema()
logout_schema = LogoutSchema()
change_password_schema = ChangePasswordSchema()
register_schema = RegisterSchema()
user_out_schema = UserOutSchema()
session_list_schema = SessionOutSchema(many=True)


def _user_context(user: User) -> dict:
    return {
        "user_id": user.id,
        "user_email": user.email,
        "user_role": user.role,
        "school_id": user.school_id,
    }


def _check_new_password(password: str, message: str) -> None:
    result = validate_password(password, min_score=current_app.config["PASSWORD_MIN_SCORE"])
    if not result.is_valid:
        raise ValidationFailed(message, details=result.to_details())


@bp.post("/login")
@rate_limited("login")
def login():
    """
    Login: return an access token and a refresh token
    ---
    tags:
      - Auth
    consumes:
      - application/json
    parameters:
      -  in: body
         name: body
         schema:
           type: object
           required: [email, password]
           properties:
             email: { type: string }
             password: { type: string }
    responses:
      200:
        description: OK (returns tokens and the user profile)
      401:
        description: Invalid credentials
      429:
        description: Too many login attempts
    """
    data = login_schema.load(request.get_json(silent=True) or {})
    audit = get_audit_logger()

    session = storage.get_session()
    user: User | None = session.query(User).filter(User.email == data["email"]).first()
    # Always run one argon2 verification so unknown emails cost the same as wrong passwords
    password_ok = verify_password(data["password"], user.password_hash if user else None)

    if user is None or not password_ok:
        reason = "unknown_email" if user is None else "wrong_password"
        context = _user_context(user) if user else {"user_email": data["email"]}
        audit.log_auth("login", success=False, details={"reason": reason},
                       error_message="Invalid credentials", **context)
        raise InvalidCredentials(reason=reason)

    if not user.is_active:
        audit.log_auth("login", success=False, details={"reason": "account_inactive"},
                       error_message="Account is inactive", **_user_context(user))
        raise AccountInactive()

    if needs_rehash(user.password_hash):
        user.password_hash = hash_password(data["password"])
        storage.save()

    device = device_info(user_agent(), client_ip())
    tokens = get_token_issuer().issue_session(user, device)

    audit.log_auth("login", success=True, details={"device": device}, **_user_context(user))

    return jsonify(
        {
            "accessToken": tokens.access_token,
            "refreshToken": tokens.refresh_token,
            "tokenType": TOKEN_TYPE,
            "expiresIn": tokens.expires_in,
            "user": user_out_schema.dump(user),
        }
    ), 200


@bp.post("/refresh")
def refresh():
    """
    Exchange a refresh token for a new access token
    With rotation enabled the presented token is consumed and a new one is returned.
    ---
    tags:
      - Auth
    consumes:
      - application/json
    parameters:
      -  in: body
         name: body
         schema:
           type: object
           required: [refreshToken]
           properties:
             refreshToken: { type: string }
    responses:
      200:
        description: OK (returns a new access token)
      401:
        description: Invalid, expired or revoked refresh token
    """
    data = refresh_schema.load(request.get_json(silent=True) or {})
    store = get_refresh_store()
    audit = get_audit_logger()
    rotate = current_app.config["REFRESH_TOKEN_ROTATION"]

    new_refresh = None
    if rotate:
        rotated = store.rotate(data["refresh_token"])
        record = rotated[1] if rotated else None
        if rotated:
            new_refresh = rotated[0]
    else:
        record = store.verify(data["refresh_token"])

    user = storage.get(User, record.user_id) if record else None
    if user is None:
        audit.log_auth("token_refresh", success=False, details={"reason": "invalid_refresh_token"},
                       error_message="Invalid or expired refresh token")
        raise TokenInvalidOrExpired(reason="invalid_refresh_token")

    issuer = get_token_issuer()
    body = {
        "accessToken": issuer.create_access_token(user),
        "tokenType": TOKEN_TYPE,
        "expiresIn": issuer.expires_in,
    }
    if new_refresh:
        body["refreshToken"] = new_refresh

    audit.log_auth("token_refresh", success=True, details={"session_id": record.id, "rotated": rotate},
                   **_user_context(user))
    return jsonify(body), 200


@bp.post("/logout")
def logout():
    """
    Revoke the presented session, or every session of its owner
    ---
    tags:
      - Auth
    consumes:
      - application/json
    parameters:
      -  in: body
         name: body
         schema:
           type: object
           required: [refreshToken]
           properties:
             refreshToken: { type: string }
             logoutAll: { type: boolean, default: false }
    responses:
      200:
        description: Logged out (returns the number of revoked sessions)
      401:
        description: Unknown refresh token
    """
    data = logout_schema.load(request.get_json(silent=True) or {})
    store = get_refresh_store()
    audit = get_audit_logger()
    raw = data["refresh_token"]

    if data["logout_all"]:
        # Only a live token may end every session of its owner
        record = store.verify(raw)
        if record is not None:
            count = store.revoke_all(record.user_id)
            audit.log_auth("logout", success=True, user_id=record.user_id,
                           details={"logout_type": "all_devices", "revoked_sessions": count})
            return jsonify(
                {"message": f"Logged out from all devices ({count} sessions)", "revokedSessions": count}
            ), 200

    owner_id = store.owner_of(raw)
    if not store.revoke(raw):
        audit.log_auth("logout", success=False, details={"logout_type": "single_device"},
                       error_message="Invalid refresh token")
        raise TokenInvalidOrExpired(reason="unknown_refresh_token")

    audit.log_auth("logout", success=True, user_id=owner_id, details={"logout_type": "single_device"})
    return jsonify({"message": "Logged out successfully", "revokedSessions": 1}), 200


@bp.put("/change-password")
@jwt_required()
def change_password():
    """
    Change the caller's password
    ---
    tags:
      - Auth
    security:
      - Bearer: []
    consumes:
      - application/json
    parameters:
      -  in: body
         name: body
         schema:
           type: object
           required: [currentPassword, newPassword]
           properties:
             currentPassword: { type: string }
             newPassword: { type: string }
    responses:
      200:
        description: Password updated
      400:
        description: Weak new password (details.violations, details.strength) or wrong current password
      401:
        description: Missing or invalid access token
    """
    data = change_password_schema.load(request.get_json(silent=True) or {})
    user: User = g.current_user
    audit = get_audit_logger()

    _check_new_password(data["new_password"], "New password validation failed")

    if not verify_password(data["current_password"], user.password_hash):
        audit.log_auth("password_change", success=False, details={"reason": "wrong_current_password"},
                       error_message="Current password is incorrect", **_user_context(user))
        raise ValidationFailed("Current password is incorrect")
    if verify_password(data["new_password"], user.password_hash):
        raise ValidationFailed("New password must be different from current password")

    user.password_hash = hash_password(data["new_password"])
    storage.save()

    revoked = 0
    if current_app.config["REVOKE_SESSIONS_ON_PASSWORD_CHANGE"]:
        revoked = get_refresh_store().revoke_all(user.id)

    audit.log_auth("password_change", success=True, details={"revoked_sessions": revoked},
                   **_user_context(user))
    return jsonify({"message": "Password updated successfully", "revokedSessions": revoked}), 200


@bp.get("/me")
@jwt_required()
def me():
    """
    Current user's profile
    ---
    tags:
      - Auth
    security:
      - Bearer: []
    responses:
      200:
        description: OK
      401:
        description: Missing or invalid access token
    """
    return jsonify({"data": user_out_schema.dump(g.current_user)}), 200


@bp.post("/register")
@capability_required("auth.register")
def register():
    """
    Create a user account (platform and tenant admins)
    Tenant admins may only create accounts in their own school.
    ---
    tags:
      - Auth
    security:
      - Bearer: []
    consumes:
      - application/json
    parameters:
      - in: body
        name: body
        schema:
          type: object
          required: [email, password, firstName, lastName]
          properties:
            email: { type: string }
            password: { type: string }
            firstName: { type: string }
            lastName: { type: string }
            role: { type: string, enum: [platform_admin, tenant_admin, staff, learner, guardian] }
            schoolId: { type: string }
    responses:
      201:
        description: Created
      400:
        description: Password policy violation
      403:
        description: Insufficient permissions
      409:
        description: Email already registered
      422:
        description: Validation error
    """
    data = register_schema.load(request.get_json(silent=True) or {})
    principal = g.principal

    role = data["role"]

    if role is Role.PLATFORM_ADMIN and not principal.is_platform_admin:
        get_audit_logger().from_request(
            AuditEventType.PERMISSION_ESCALATION,
            success=False,
            details={"requested_role": role.value},
            error_message="Attempt to create a platform admin",
        )
        raise PermissionDenied("Insufficient permissions")

    # Tenant admins default to (and are limited to) their own school
    school_id = None if role is Role.PLATFORM_ADMIN else (data["school_id"] or principal.tenant_id)
    if role is not Role.PLATFORM_ADMIN:
        if school_id is None:
            raise ValidationFailed("schoolId is required for this role")
        check_capability(get_capability("auth.register"), target_tenant_id=school_id)

    _check_new_password(data["password"], "Password validation failed")

    session = storage.get_session()
    if session.query(User).filter(User.email == data["email"]).first():
        raise Conflict("User already exists with this email")
    if school_id is not None and storage.get(School, school_id) is None:
        raise ResourceNotFound("School not found")

    user = User(
        email=data["email"],
        password_hash=hash_password(data["password"]),
        first_name=data["first_name"],
        last_name=data["last_name"],
        role=role,
        school_id=school_id,
    )
    storage.new(user)
    storage.save()

    get_audit_logger().log_data_event(
        "create", "users", resource_id=user.id,
        new_data={"email": user.email, "role": user.role.value, "school_id": user.school_id},
    )
    return jsonify({"message": "User created successfully", "data": user_out_schema.dump(user)}), 201


@bp.get("/sessions")
@jwt_required()
def list_sessions():
    """
    The caller's active sessions, most recently used first
    ---
    tags:
      - Auth
    security:
      - Bearer: []
    responses:
      200:
        description: OK
      401:
        description: Missing or invalid access token
    """
    sessions = get_refresh_store().active_sessions(g.principal.user_id)
    return jsonify({"data": session_list_schema.dump(sessions), "count": len(sessions)}), 200


@bp.delete("/sessions/<session_id>")
@jwt_required()
def revoke_session(session_id: str):
    """
    Revoke one of the caller's sessions
    ---
    tags:
      - Auth
    security:
      - Bearer: []
    parameters:
      - in: path
        name: session_id
        type: string
        required: true
    responses:
      200:
        description: Revoked
      404:
        description: No such open session for the caller
    """
    if not get_refresh_store().revoke_session(g.principal.user_id, session_id):
        raise ResourceNotFound("Session not found")
    get_audit_logger().from_request(
        AuditEventType.TOKEN_REVOKED,
        details={"session_id": session_id, "scope": "single_session"},
    )
    return jsonify({"message": "Session revoked", "revokedSessions": 1}), 200

from __future__ import annotations

from typing import Tuple

from flask import Blueprint, g, jsonify

from models import storage
from models.user import User
from models.schemas.user import UserOutSchema
from utils.audit import AuditEventType, get_audit_logger
from utils.decorators import capability_required
from utils.exceptions import ResourceNotFound, ValidationFailed
from utils.refresh_tokens import get_refresh_store

bp = Blueprint("users", __name__, url_prefix="/users")

user_out_schema = UserOutSchema()


def _target_user(user_id: str, **_) -> Tuple[str | None, str]:
    """
    Scope of a /users/<user_id> route. A missing user has no tenant, so only
    a platform admin gets past the guard and sees the 404.
    """
    user = storage.get(User, user_id)
    return (user.school_id if user else None), user_id


def _get_user_or_404(user_id: str) -> User:
    user = storage.get(User, user_id)
    if user is None:
        raise ResourceNotFound("User not found")
    return user


def _set_active(user: User, active: bool) -> None:
    old = user.is_active
    user.is_active = active
    storage.save()
    get_audit_logger().log_data_event(
        "update", "users", resource_id=user.id,
        old_data={"is_active": old}, new_data={"is_active": active},
    )


@bp.get("/<user_id>")
@capability_required("users.read", target=_target_user)
def get_user(user_id: str):
    """
    Get one user profile
    Staff and admins see users of their own school; anyone may read themselves
    if their role grants users.read.
    ---
    tags:
      - Users
    security:
      - Bearer: []
    parameters:
      - in: path
        name: user_id
        type: string
        required: true
    responses:
      200:
        description: OK
      403:
        description: Insufficient permissions
      404:
        description: Not found
    """
    user = _get_user_or_404(user_id)
    return jsonify({"data": user_out_schema.dump(user)}), 200


@bp.post("/<user_id>/deactivate")
@capability_required("users.deactivate", target=_target_user)
def deactivate_user(user_id: str):
    """
    Deactivate a user and end all of their sessions
    ---
    tags:
      - Users
    security:
      - Bearer: []
    parameters:
      - in: path
        name: user_id
        type: string
        required: true
    responses:
      200:
        description: Deactivated (returns the number of revoked sessions)
      400:
        description: Cannot deactivate your own account
      403:
        description: Insufficient permissions
      404:
        description: Not found
    """
    if user_id == g.principal.user_id:
        raise ValidationFailed("Cannot deactivate your own account")
    user = _get_user_or_404(user_id)
    _set_active(user, False)

    revoked = get_refresh_store().revoke_all(user.id)
    if revoked:
        get_audit_logger().from_request(
            AuditEventType.TOKEN_REVOKED,
            details={"target_user_id": user.id, "scope": "deactivation", "revoked_sessions": revoked},
        )
    return jsonify({
        "message": "User deactivated successfully",
        "revokedSessions": revoked,
        "data": user_out_schema.dump(user),
    }), 200


@bp.post("/<user_id>/activate")
@capability_required("users.activate", target=_target_user)
def activate_user(user_id: str):
    """
    Re-activate a user
    Sessions revoked at deactivation stay revoked; the user logs in again.
    ---
    tags:
      - Users
    security:
      - Bearer: []
    parameters:
      - in: path
        name: user_id
        type: string
        required: true
    responses:
      200:
        description: Activated
      403:
        description: Insufficient permissions
      404:
        description: Not found
    """
    user = _get_user_or_404(user_id)
    _set_active(user, True)
    return jsonify({"message": "User activated successfully", "data": user_out_schema.dump(user)}), 200


@bp.post("/<user_id>/sessions/revoke")
@capability_required("users.revoke_sessions", target=_target_user)
def revoke_user_sessions(user_id: str):
    """
    Log a user out everywhere
    ---
    tags:
      - Users
    security:
      - Bearer: []
    parameters:
      - in: path
        name: user_id
        type: string
        required: true
    responses:
      200:
        description: OK (returns the number of revoked sessions)
      403:
        description: Insufficient permissions
      404:
        description: Not found
    """
    user = _get_user_or_404(user_id)
    revoked = get_refresh_store().revoke_all(user.id)
    get_audit_logger().from_request(
        AuditEventType.TOKEN_REVOKED,
        details={"target_user_id": user.id, "scope": "all_sessions", "revoked_sessions": revoked},
    )
    return jsonify({"message": f"Revoked {revoked} session(s)", "revokedSessions": revoked}), 200

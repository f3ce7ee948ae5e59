from flask import Blueprint, g, jsonify, request

from models.schemas.audit import AuditLogOutSchema, AuditQuerySchema
from utils.audit import get_audit_logger
from utils.decorators import capability_required

bp = Blueprint("audit", __name__)

audit_query_schema = AuditQuerySchema()
audit_list_schema = AuditLogOutSchema(many=True)


@bp.get("/audit")
@capability_required("audit.read")
def list_audit_entries():
    """
    Most recent audit entries, newest first
    Tenant admins only see entries recorded for their own school.
    ---
    tags:
      - Audit
    security:
      - Bearer: []
    parameters:
      - in: query
        name: limit
        type: integer
        default: 100
      - in: query
        name: eventType
        type: string
    responses:
      200:
        description: OK
      403:
        description: Insufficient permissions
      422:
        description: Invalid query parameters
    """
    args = audit_query_schema.load(request.args)
    principal = g.principal
    school_id = None if principal.is_platform_admin else principal.tenant_id

    rows = get_audit_logger().recent(
        limit=args["limit"],
        school_id=school_id,
        event_type=args["event_type"],
    )
    return jsonify({"data": audit_list_schema.dump(rows), "count": len(rows)}), 200

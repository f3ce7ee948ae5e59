from marshmallow import Schema, fields, validate

from utils.audit import AuditEventType

MAX_AUDIT_LIMIT = 500


class AuditQuerySchema(Schema):
    limit = fields.Integer(load_default=100, validate=validate.Range(min=1, max=MAX_AUDIT_LIMIT))
    event_type = fields.String(
        load_default=None,
        data_key="eventType",
        validate=validate.OneOf([e.value for e in AuditEventType]),
    )


class AuditLogOutSchema(Schema):
    id = fields.String()
    timestamp = fields.DateTime(attribute="created_at")
    event_type = fields.String(data_key="eventType")
    severity = fields.String()
    user_id = fields.String(allow_none=True, data_key="userId")
    user_email = fields.String(allow_none=True, data_key="userEmail")
    user_role = fields.String(allow_none=True, data_key="userRole")
    school_id = fields.String(allow_none=True, data_key="schoolId")
    ip_address = fields.String(data_key="ipAddress")
    user_agent = fields.String(data_key="userAgent")
    resource = fields.String(allow_none=True)
    action = fields.String(allow_none=True)
    details = fields.Dict()
    success = fields.Boolean()
    error_message = fields.String(allow_none=True, data_key="errorMessage")

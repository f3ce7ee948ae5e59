from marshmallow import Schema, fields, pre_load, validate

from models.user import Role


def _norm_email(v):
    return v.strip().lower() if isinstance(v, str) else v


class _EmailNormalizingSchema(Schema):
    @pre_load
    def normalize(self, data, **kwargs):
        if isinstance(data, dict) and "email" in data:
            data = dict(data)
            data["email"] = _norm_email(data["email"])
        return data


class LoginSchema(_EmailNormalizingSchema):
    # Not fields.Email: a malformed address fails as "Invalid credentials" like any unknown one
    email = fields.String(required=True, validate=validate.Length(min=1, max=255))
    password = fields.String(required=True, load_only=True, validate=validate.Length(min=1))


class RefreshSchema(Schema):
    refresh_token = fields.String(required=True, data_key="refreshToken", validate=validate.Length(min=1))


class LogoutSchema(Schema):
    refresh_token = fields.String(required=True, data_key="refreshToken", validate=validate.Length(min=1))
    logout_all = fields.Boolean(load_default=False, data_key="logoutAll")


class ChangePasswordSchema(Schema):
    current_password = fields.String(required=True, data_key="currentPassword", validate=validate.Length(min=1))
    new_password = fields.String(required=True, data_key="newPassword", validate=validate.Length(min=1))


class RegisterSchema(_EmailNormalizingSchema):
    email = fields.Email(required=True)
    # Strength rules are applied by the password policy, not here
    password = fields.String(required=True, load_only=True)
    first_name = fields.String(required=True, data_key="firstName", validate=validate.Length(min=1, max=100))
    last_name = fields.String(required=True, data_key="lastName", validate=validate.Length(min=1, max=100))
    role = fields.Enum(Role, by_value=True, load_default=Role.LEARNER)
    school_id = fields.String(allow_none=True, load_default=None, data_key="schoolId")


class UserOutSchema(Schema):
    id = fields.String()
    email = fields.String()
    first_name = fields.String(data_key="firstName")
    last_name = fields.String(data_key="lastName")
    full_name = fields.String(data_key="fullName")
    role = fields.Method("get_role")
    school_id = fields.String(allow_none=True, data_key="schoolId")
    is_active = fields.Boolean(data_key="isActive")
    created_at = fields.DateTime(data_key="createdAt")

    def get_role(self, obj):
        return getattr(obj.role, "value", obj.role)


class SessionOutSchema(Schema):
    id = fields.String()
    device_info = fields.String(allow_none=True, data_key="deviceInfo")
    created_at = fields.DateTime(data_key="createdAt")
    last_used_at = fields.DateTime(allow_none=True, data_key="lastUsedAt")
    expires_at = fields.DateTime(data_key="expiresAt")

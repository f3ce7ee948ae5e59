"""
AuditLog model: append-only security event trail.
created_at doubles as the event timestamp; nothing in the code base updates
or deletes these rows.
"""
from sqlalchemy import JSON, Boolean, Column, Index, String, Text

from models.base_model import BaseModel, Base


class AuditLog(BaseModel, Base):
    __tablename__ = "audit_logs"

    event_type = Column(String(64), nullable=False, index=True)
    severity = Column(String(16), nullable=False)
    user_id = Column(String(36), nullable=True, index=True)
    user_email = Column(String(255), nullable=True)
    user_role = Column(String(32), nullable=True)
    school_id = Column(String(36), nullable=True, index=True)
    ip_address = Column(String(64), nullable=False, default="unknown")
    user_agent = Column(String(512), nullable=False, default="Unknown")
    resource = Column(String(255), nullable=True)
    action = Column(String(64), nullable=True)
    details = Column(JSON, nullable=False, default=dict)
    success = Column(Boolean, nullable=False, default=True)
    error_message = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_audit_logs_created_at", "created_at"),
    )

    def __repr__(self):
        return f"<AuditLog {self.event_type} severity={self.severity} user={self.user_id}>"

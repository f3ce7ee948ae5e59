"""
RefreshToken model: one row per session.
Fields:
- user_id (String(36)) - FK to users.id
- token_hash - SHA-256 of the opaque secret; the secret itself is never stored
- expires_at, revoked, last_used_at
- device_info - free-form client descriptor shown on the sessions page
Rows are revoked, never deleted, so the history stays available for audits.
"""
from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, String
from sqlalchemy.orm import relationship

from models.base_model import BaseModel, Base


class RefreshToken(BaseModel, Base):
    __tablename__ = "refresh_tokens"

    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    token_hash = Column(String(64), nullable=False, unique=True, index=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    revoked = Column(Boolean, default=False, nullable=False)
    device_info = Column(String(255), nullable=True)
    last_used_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="refresh_tokens")

    __table_args__ = (
        Index("ix_refresh_tokens_user_active", "user_id", "revoked", "created_at"),
    )

    def __repr__(self):
        return f"<RefreshToken id={self.id} user={self.user_id} revoked={self.revoked}>"

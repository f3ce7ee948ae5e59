from sqlalchemy import Boolean, Column, String
from sqlalchemy.orm import relationship

from models.base_model import BaseModel, Base


class School(BaseModel, Base):
    """A tenant. Owned by the CRUD layer; the auth core only references it."""
    __tablename__ = "schools"

    name = Column(String(255), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    users = relationship("User", back_populates="school", passive_deletes=True)

# src/healguard/infrastructure/db/models/auth.py
"""Operator accounts used to mint API tokens."""

from sqlalchemy import Column, Integer, String, DateTime, Boolean, func

from healguard.domain.entities import utcnow
from .base import Base, JSONType


class Operator(Base):
    __tablename__ = 'operators'

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    hashed_password = Column(String(255), nullable=False)
    # e.g. ["operator"], ["admin"]; the token carries them upper-cased
    roles = Column(JSONType, nullable=False, default=list)
    is_active = Column(Boolean, default=True, server_default='true', nullable=False)

    created_at = Column(DateTime, default=utcnow, server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<Operator(id={self.id}, email='{self.email}', roles={self.roles}, active={self.is_active})>"

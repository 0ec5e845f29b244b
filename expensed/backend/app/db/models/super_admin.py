# backend/app/db/models/super_admin.py
from sqlalchemy import Column, String, Boolean, DateTime, JSON

from app.db.base import BaseModel, generate_uuid


class SuperAdmin(BaseModel):
    """Platform operator with a named permission set"""
    __tablename__ = "super_admins"

    id = Column(String(36), primary_key=True, default=generate_uuid, index=True)
    user_id = Column(String(36), unique=True, nullable=False, index=True)
    display_name = Column(String(255), nullable=True)

    # {permission_name: bool}; unknown or missing keys are treated as False
    permissions = Column(JSON, default=dict, nullable=False)

    is_active = Column(Boolean, default=True, nullable=False)
    last_login_at = Column(DateTime, nullable=True)
    created_by = Column(String(36), nullable=True)

# backend/app/db/models/organization.py
from sqlalchemy import Column, String, DateTime

from app.db.base import BaseModel, generate_uuid


class Organization(BaseModel):
    """Customer organization; billing is attached per organization"""
    __tablename__ = "organizations"

    id = Column(String(36), primary_key=True, default=generate_uuid, index=True)
    name = Column(String(255), nullable=False, index=True)
    processor_customer_id = Column(String(255), unique=True, nullable=True)

    # Soft delete only; billing history must survive
    deleted_at = Column(DateTime, nullable=True)
    deleted_by = Column(String(36), nullable=True)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

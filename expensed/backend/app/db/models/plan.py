# backend/app/db/models/plan.py
from sqlalchemy import Column, String, Integer, Boolean, JSON, Text

from app.db.base import BaseModel, generate_uuid


class Plan(BaseModel):
    """Pricing tier and its feature matrix"""
    __tablename__ = "subscription_plans"

    id = Column(String(36), primary_key=True, default=generate_uuid, index=True)
    name = Column(String(50), unique=True, nullable=False, index=True)  # free, starter, team...
    display_name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)

    # Pricing (cents)
    monthly_price_cents = Column(Integer, default=0, nullable=False)
    annual_price_cents = Column(Integer, default=0, nullable=False)

    # Seats; max_users NULL means unlimited
    min_users = Column(Integer, default=1, nullable=False)
    max_users = Column(Integer, nullable=True)

    # receipts_per_month, *_enabled booleans, support_level
    features = Column(JSON, default=dict, nullable=False)

    # Processor catalog ids
    processor_product_id = Column(String(255), nullable=True)
    processor_monthly_price_id = Column(String(255), nullable=True, index=True)
    processor_annual_price_id = Column(String(255), nullable=True, index=True)

    display_order = Column(Integer, default=0, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    is_public = Column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<Plan {self.name}>"

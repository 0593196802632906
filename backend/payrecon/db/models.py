"""
SQLAlchemy ORM Models for payrecon

Defines the transactions table. Amounts are stored as integer minor units so
two-decimal major amounts round-trip exactly.
"""
from datetime import datetime, timezone
from sqlalchemy import Column, String, Integer, Boolean, DateTime, Text, JSON, CheckConstraint, Index
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, as stored by SQLite."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class TransactionModel(Base):
    """
    ORM model for transactions table.

    One row per payment attempt, never physically deleted.
    """
    __tablename__ = "transactions"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    gateway_order_id = Column(String, unique=True, index=True)
    gateway_transaction_id = Column(String, index=True)
    amount_minor = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="ILS")
    payment_url = Column(Text, nullable=False)
    status = Column(String(20), nullable=False, default="pending", index=True)
    description = Column(Text)
    line_items = Column(JSON)  # [{"name", "price", "quantity", "includes_vat"}]
    customer_email = Column(String(255), index=True)
    customer_name = Column(String(255))
    customer_phone = Column(String(50))
    customer_id_number = Column(String(20))
    max_installments = Column(Integer)
    fixed_installments = Column(Boolean, nullable=False, default=False)
    expires_at = Column(DateTime)
    preauthorize = Column(Boolean, nullable=False, default=False)
    custom_field_1 = Column(String(255))
    custom_field_2 = Column(String(255))
    success_url = Column(Text)
    cancel_url = Column(Text)
    webhook_url = Column(Text)
    metadata_ = Column("metadata", JSON)
    api_key_id = Column(String, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("amount_minor > 0", name="amount_positive_check"),
        CheckConstraint(
            "status IN ('pending', 'completed', 'failed', 'cancelled', 'refunded', 'partially_refunded')",
            name="status_check"
        ),
        CheckConstraint(
            "max_installments IS NULL OR (max_installments >= 1 AND max_installments <= 12)",
            name="max_installments_check"
        ),
        Index("idx_transactions_user_created", "user_id", "created_at"),
    )

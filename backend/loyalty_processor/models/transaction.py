"""Transaction model"""
from sqlalchemy import Column, Integer, Numeric, String, ForeignKey, Index, DateTime
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from loyalty_processor.models.base import Base


class Transaction(Base):
    """Points ledger entry, one per awarded event. Presence means "already awarded"."""
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String(255), unique=True, nullable=False, index=True)
    user_id = Column(String(255), ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(Numeric(20, 4), nullable=False)  # Minor currency units
    points = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False, index=True)

    user = relationship("User", back_populates="transactions")

    __table_args__ = (
        Index('ix_transactions_user_created', 'user_id', 'created_at'),
    )

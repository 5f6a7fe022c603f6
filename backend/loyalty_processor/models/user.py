"""User model"""
from sqlalchemy import Column, Integer, String, DateTime, CheckConstraint
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from loyalty_processor.models.base import Base


class User(Base):
    """Loyalty beneficiary, keyed by the external user id from the payment provider"""
    __tablename__ = "users"

    id = Column(String(255), primary_key=True)
    email = Column(String(255), nullable=True)
    name = Column(String(255), nullable=True)
    points = Column(Integer, default=0, nullable=False)  # Only ever incremented in SQL
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    transactions = relationship("Transaction", back_populates="user")

    __table_args__ = (
        CheckConstraint("points >= 0", name="ck_users_points_non_negative"),
    )

    def __repr__(self):
        return f"<User(id={self.id}, points={self.points})>"

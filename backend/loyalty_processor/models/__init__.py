"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from loyalty_processor.models.base import Base
from loyalty_processor.models.event import Event
from loyalty_processor.models.user import User
from loyalty_processor.models.transaction import Transaction

__all__ = ["Base", "Event", "User", "Transaction"]

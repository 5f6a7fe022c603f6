"""Pydantic schemas for the read-only loyalty endpoints"""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, field_serializer

from loyalty_processor.schemas.webhook import amount_to_json


class UserResponse(BaseModel):
    id: str
    email: Optional[str] = None
    name: Optional[str] = None
    points: int
    createdAt: datetime
    updatedAt: datetime


class TransactionResponse(BaseModel):
    id: int
    eventId: str
    userId: str
    amount: Decimal
    points: int
    createdAt: datetime

    @field_serializer("amount")
    def serialize_amount(self, value: Decimal):
        return amount_to_json(value)


class TransactionListResponse(BaseModel):
    transactions: List[TransactionResponse]
    count: int
    limit: int
    offset: int


class ErrorResponse(BaseModel):
    error: str
    message: str

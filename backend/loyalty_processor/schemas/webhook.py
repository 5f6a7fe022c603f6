"""Pydantic schemas for inbound payment webhooks"""
import math
from datetime import datetime
from decimal import Decimal
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator


def amount_to_json(value: Decimal) -> Union[int, float]:
    """Render an amount as a JSON number: integral amounts stay integers"""
    if value == value.to_integral_value():
        return int(value)
    return float(value)


class PaymentWebhookPayload(BaseModel):
    """Body of POST /webhooks/payment"""
    model_config = ConfigDict(populate_by_name=True)

    event_id: str = Field(..., alias="eventId", min_length=1, max_length=255)
    type: str = Field(..., min_length=1, max_length=100)
    user_id: str = Field(..., alias="userId", min_length=1, max_length=255)
    amount: Decimal = Field(..., gt=0)  # Minor currency units, fractions allowed
    currency: str = Field(..., pattern=r"^[A-Za-z]{3}$")
    timestamp: str

    @field_validator("amount", mode="before")
    @classmethod
    def check_amount_is_number(cls, v):
        # JSON numbers only; "1000" and true are not amounts
        if isinstance(v, bool) or not isinstance(v, (int, float, Decimal)):
            raise ValueError("amount must be a number")
        if isinstance(v, float):
            if not math.isfinite(v):
                raise ValueError("amount must be finite")
            return Decimal(repr(v))
        return v

    @field_validator("timestamp")
    @classmethod
    def check_timestamp(cls, v):
        try:
            datetime.fromisoformat(v.replace('Z', '+00:00'))
        except ValueError:
            raise ValueError("timestamp must be an ISO-8601 datetime")
        return v

    @field_serializer("amount")
    def serialize_amount(self, value: Decimal):
        return amount_to_json(value)


class WebhookResponse(BaseModel):
    success: bool = True
    message: str
    eventId: Optional[str] = None
    jobId: Optional[str] = None


class WebhookErrorResponse(BaseModel):
    success: bool = False
    error: str
    message: str

"""Transaction API routes"""
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from loyalty_processor.db.session import get_db
from loyalty_processor.schemas.loyalty import ErrorResponse, TransactionListResponse, TransactionResponse
from loyalty_processor.services.loyalty_service import get_transactions

router = APIRouter(prefix="/transactions", tags=["transactions"])

MAX_PAGE_SIZE = 1000


def _parse_int(value: str) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@router.get("", response_model=TransactionListResponse)
def list_transactions(
    userId: Optional[str] = None,
    limit: str = "100",
    offset: str = "0",
    db: Session = Depends(get_db)
):
    """List transactions, newest first, optionally for one user"""
    limit_num = _parse_int(limit)
    offset_num = _parse_int(offset)

    if limit_num is None or offset_num is None or limit_num < 1 or offset_num < 0:
        return JSONResponse(
            status_code=400,
            content=ErrorResponse(
                error="INVALID_PARAMS",
                message="Invalid limit or offset parameters"
            ).model_dump()
        )

    transactions = get_transactions(userId, min(limit_num, MAX_PAGE_SIZE), offset_num, db)
    return TransactionListResponse(
        transactions=[
            TransactionResponse(
                id=tx.id,
                eventId=tx.event_id,
                userId=tx.user_id,
                amount=tx.amount,
                points=tx.points,
                createdAt=tx.created_at
            )
            for tx in transactions
        ],
        count=len(transactions),
        limit=limit_num,
        offset=offset_num
    )

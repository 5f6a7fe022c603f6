"""User API routes"""
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from loyalty_processor.db.session import get_db
from loyalty_processor.schemas.loyalty import ErrorResponse, UserResponse
from loyalty_processor.services.loyalty_service import get_user

router = APIRouter(prefix="/users", tags=["users"])


@router.get("/{user_id}", response_model=UserResponse)
def read_user(user_id: str, db: Session = Depends(get_db)):
    """Get a user and their points balance"""
    user = get_user(user_id, db)
    if not user:
        return JSONResponse(
            status_code=404,
            content=ErrorResponse(error="NOT_FOUND", message="User not found").model_dump()
        )
    return UserResponse(
        id=user.id,
        email=user.email,
        name=user.name,
        points=user.points,
        createdAt=user.created_at,
        updatedAt=user.updated_at
    )

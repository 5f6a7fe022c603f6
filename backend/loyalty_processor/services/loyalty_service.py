"""Loyalty service - points calculation and the atomic award ledger

A Transaction row per event_id is the single source of truth for "already
awarded". The balance is only ever changed by `points = points + n` issued in
the same database transaction that inserts that row, so the two commit or
roll back together.
"""
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from loyalty_processor.models.transaction import Transaction
from loyalty_processor.models.user import User

logger = logging.getLogger(__name__)

AMOUNT_UNIT = 100  # Points are earned per 100 minor currency units

Amount = Union[int, float, Decimal]


def to_decimal_amount(amount: Amount) -> Decimal:
    """Exact Decimal for a numeric amount; floats go through their shortest repr"""
    if isinstance(amount, bool) or not isinstance(amount, (int, float, Decimal)):
        raise TypeError(f"amount must be a number, got {type(amount).__name__}")
    value = Decimal(repr(amount)) if isinstance(amount, float) else Decimal(amount)
    if not value.is_finite():
        raise ValueError("amount must be finite")
    return value


@dataclass
class AwardResult:
    user_id: str
    points_awarded: int
    total_points: int
    transaction_id: int
    already_awarded: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class LoyaltyService:
    """Computes and awards loyalty points for payment events"""

    def __init__(self, points_per_unit: int = 1):
        if points_per_unit < 0:
            raise ValueError("points_per_unit must not be negative")
        self.points_per_unit = points_per_unit

    def calculate_points(self, amount: Amount) -> int:
        """points = floor(amount / 100) * points_per_unit, exact Decimal arithmetic"""
        value = to_decimal_amount(amount)
        if value < 0:
            raise ValueError("amount must not be negative")
        return int(value // AMOUNT_UNIT) * self.points_per_unit

    def process_event(
        self,
        event_id: str,
        user_id: str,
        amount: Amount,
        event_type: str,
        db: Session
    ) -> AwardResult:
        """Award points for an event exactly once

        Redelivery of an already-awarded event returns the recorded award
        without touching the balance, whether the earlier award happened long
        ago or is a concurrent execution that committed first.

        Args:
            event_id: External event identifier
            user_id: Beneficiary
            amount: Payment amount in minor currency units (may be fractional)
            event_type: Event type (logged only)
            db: Database session

        Returns:
            AwardResult describing the (possibly pre-existing) award
        """
        logger.info(f"Processing payment event {event_id} ({event_type}) for user {user_id}, amount={amount}")

        existing = self._find_transaction(event_id, db)
        if existing is not None:
            logger.warning(f"Event {event_id} already awarded as transaction {existing.id}")
            return self._existing_award(existing, db)

        points = self.calculate_points(amount)

        try:
            self._ensure_user(user_id, db)

            db.execute(
                update(User)
                .where(User.id == user_id)
                .values(points=User.points + points, updated_at=datetime.now(timezone.utc))
            )

            transaction = Transaction(
                event_id=event_id,
                user_id=user_id,
                amount=to_decimal_amount(amount),
                points=points
            )
            db.add(transaction)
            db.flush()

            total_points = db.execute(
                select(User.points).where(User.id == user_id)
            ).scalar_one()
            transaction_id = transaction.id

            db.commit()
        except IntegrityError:
            # A concurrent execution inserted the ledger row first; our increment is rolled back with it
            db.rollback()
            existing = self._find_transaction(event_id, db)
            if existing is None:
                raise
            logger.warning(f"Event {event_id} awarded concurrently as transaction {existing.id}")
            return self._existing_award(existing, db)
        except Exception:
            db.rollback()
            raise

        logger.info(
            f"Loyalty points awarded for event {event_id}: user {user_id} +{points} (total: {total_points})"
        )
        return AwardResult(
            user_id=user_id,
            points_awarded=points,
            total_points=total_points,
            transaction_id=transaction_id
        )

    def _find_transaction(self, event_id: str, db: Session) -> Optional[Transaction]:
        return db.query(Transaction).filter(Transaction.event_id == event_id).first()

    def _existing_award(self, transaction: Transaction, db: Session) -> AwardResult:
        total_points = db.execute(
            select(User.points).where(User.id == transaction.user_id)
        ).scalar_one_or_none()
        return AwardResult(
            user_id=transaction.user_id,
            points_awarded=transaction.points,
            total_points=total_points or 0,
            transaction_id=transaction.id,
            already_awarded=True
        )

    def _ensure_user(self, user_id: str, db: Session) -> None:
        """Create the user with a zero balance unless it exists (concurrent creators are fine)"""
        dialect = db.get_bind().dialect.name
        values = {"id": user_id, "points": 0}

        if dialect == "postgresql":
            stmt = pg_insert(User).values(**values).on_conflict_do_nothing(index_elements=["id"])
        elif dialect == "sqlite":
            stmt = sqlite_insert(User).values(**values).on_conflict_do_nothing(index_elements=["id"])
        else:
            if db.get(User, user_id) is None:
                db.add(User(**values))
                db.flush()
            return

        db.execute(stmt)


def get_user(user_id: str, db: Session) -> Optional[User]:
    return db.query(User).filter(User.id == user_id).first()


def get_transactions(user_id: Optional[str], limit: int, offset: int, db: Session) -> List[Transaction]:
    """Get transaction history, newest first

    Args:
        user_id: Restrict to one user, or None for all users
        limit: Maximum number of transactions to return
        offset: Number of transactions to skip
        db: Database session
    """
    query = db.query(Transaction)
    if user_id:
        query = query.filter(Transaction.user_id == user_id)
    return query.order_by(
        Transaction.created_at.desc(),
        Transaction.id.desc()
    ).offset(offset).limit(limit).all()

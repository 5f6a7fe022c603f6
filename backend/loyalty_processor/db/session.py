"""Database engine and session management"""
import logging
from typing import Optional

from fastapi import Request
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from loyalty_processor.models import Base

logger = logging.getLogger(__name__)


class Database:
    """Explicit handle owning the SQLAlchemy engine and session factory"""

    def __init__(self, url: Optional[str] = None, engine: Optional[Engine] = None):
        if engine is None:
            if not url:
                raise ValueError("Either a database URL or an engine is required")
            engine = create_engine(
                url,
                pool_pre_ping=True,
                pool_recycle=3600
            )
        self.engine = engine
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    def session(self) -> Session:
        return self.SessionLocal()

    def init_db(self) -> None:
        """Create all tables (migrations own the schema in production)"""
        Base.metadata.create_all(bind=self.engine)

    def ping(self) -> None:
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))

    def dispose(self) -> None:
        self.engine.dispose()


def get_db(request: Request):
    """Dependency for FastAPI endpoints"""
    db = request.app.state.resources.database.session()
    try:
        yield db
    finally:
        db.close()

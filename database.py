# database.py
from sqlalchemy import (
    create_engine,
    Column,
    Integer,
    String,
    Numeric,
    DateTime,
    ForeignKey,
    Boolean,
    JSON,
    Text,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker, declarative_base
from fastapi import Request
from datetime import datetime, timezone

from errors import StorageFailure

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp; every stored datetime is naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    username = Column(String, unique=True, index=True, nullable=False)
    credential_hash = Column(String, nullable=True)
    email = Column(String, nullable=True)
    currency = Column(String(3), nullable=False, default="USD")
    budget = Column(Numeric(12, 2), nullable=False, default=0)
    external_identity_id = Column(String, unique=True, index=True, nullable=True)


class Expense(Base):
    __tablename__ = "expenses"
    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    title = Column(String, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    category = Column(String, index=True, nullable=False)
    date = Column(DateTime, nullable=False, default=utcnow)
    tags = Column(JSON, nullable=False, default=list)
    note = Column(Text, nullable=True)
    attachment = Column(String, nullable=True)
    currency = Column(String(3), nullable=False)
    recurring = Column(Boolean, nullable=False, default=False)
    next_occurrence = Column(DateTime, nullable=True)
    # Set on clones produced by the recurrence scheduler
    template_id = Column(Integer, nullable=True, index=True)


class ScheduledJob(Base):
    __tablename__ = "scheduled_jobs"
    expense_id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    fires_at = Column(DateTime, nullable=False, index=True)


def make_engine(database_url: str, **kwargs):
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
    return create_engine(database_url, connect_args=connect_args, **kwargs)


def make_session_factory(engine) -> sessionmaker:
    return sessionmaker(
        autocommit=False, autoflush=False, expire_on_commit=False, bind=engine
    )


def init_db(engine) -> None:
    Base.metadata.create_all(bind=engine)


def commit_or_fail(db: Session) -> None:
    """Commit, turning backing-store errors into StorageFailure."""
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise StorageFailure() from exc


def get_db(request: Request):
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()

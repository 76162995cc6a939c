"""
Database schema and connection management.

Uses SQLite with SQLAlchemy for the dedup state: registration transactions,
biometric references, ABIS requests/responses, dedupe lists and the manual
verification queue.
"""

from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, Iterator

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SQLEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    create_engine,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .errors import DedupError, ErrorKind

Base = declarative_base()


class TransactionStatus(str, Enum):
    RECEIVED = "RECEIVED"
    IN_PROGRESS = "IN_PROGRESS"
    AWAITING_MANUAL_REVIEW = "AWAITING_MANUAL_REVIEW"
    COMPLETED = "COMPLETED"
    DUPLICATE_FOUND = "DUPLICATE_FOUND"
    FAILED = "FAILED"


TERMINAL_STATUSES = frozenset({
    TransactionStatus.COMPLETED,
    TransactionStatus.DUPLICATE_FOUND,
    TransactionStatus.FAILED,
})


class RequestType(str, Enum):
    INSERT = "INSERT"
    IDENTIFY = "IDENTIFY"


class RequestStatus(str, Enum):
    CREATED = "CREATED"
    SENT = "SENT"
    PROCESSED = "PROCESSED"
    FAILED = "FAILED"


class DedupeType(str, Enum):
    DEMOGRAPHIC = "DEMOGRAPHIC"
    BIOMETRIC = "BIOMETRIC"


class MatchType(str, Enum):
    BIO = "BIO"
    DEMO = "DEMO"


class TaskStatus(str, Enum):
    PENDING = "PENDING"
    ASSIGNED = "ASSIGNED"
    COMPLETED = "COMPLETED"


class ManualOutcome(str, Enum):
    DUPLICATE_CONFIRMED = "DUPLICATE_CONFIRMED"
    UNIQUE_CONFIRMED = "UNIQUE_CONFIRMED"


class RegistrationTransaction(Base):
    """One dedup pass over a registration packet."""

    __tablename__ = "registration_transaction"

    transaction_id = Column(String, primary_key=True)
    registration_id = Column(String, nullable=False, index=True)
    stage = Column(String, nullable=False, default="BIOMETRIC_DEDUPE")
    status = Column(SQLEnum(TransactionStatus), nullable=False, default=TransactionStatus.RECEIVED)
    status_comment = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.now)
    updated_at = Column(DateTime, nullable=False, default=datetime.now, onupdate=datetime.now)


class BioReference(Base):
    """Registration id -> biometric reference id mapping."""

    __tablename__ = "reg_bio_ref"

    bio_ref_id = Column(String, primary_key=True)
    registration_id = Column(String, nullable=False, index=True)
    created_at = Column(DateTime, nullable=False, default=datetime.now)


class AbisRequest(Base):
    """Outbound insert/identify request addressed to an ABIS provider."""

    __tablename__ = "abis_request"
    __table_args__ = (
        # At most one active (non-FAILED) request per reference/transaction/type
        Index(
            "uq_abis_request_active",
            "bio_ref_id",
            "transaction_id",
            "request_type",
            unique=True,
            sqlite_where=text("status != 'FAILED'"),
            postgresql_where=text("status != 'FAILED'"),
        ),
    )

    request_id = Column(String, primary_key=True)
    bio_ref_id = Column(String, nullable=False, index=True)
    batch_id = Column(String, nullable=False, index=True)
    transaction_id = Column(String, nullable=False, index=True)
    request_type = Column(SQLEnum(RequestType), nullable=False)
    status = Column(SQLEnum(RequestStatus), nullable=False, default=RequestStatus.CREATED)
    abis_app_code = Column(String, nullable=False, default="ABIS")
    status_comment = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.now)
    sent_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.now, onupdate=datetime.now)


class AbisResponse(Base):
    """Inbound ABIS response; exactly one per request."""

    __tablename__ = "abis_response"

    response_id = Column(String, primary_key=True)
    request_id = Column(String, ForeignKey("abis_request.request_id"), nullable=False, unique=True)
    batch_id = Column(String, nullable=False, index=True)
    received_at = Column(DateTime, nullable=False, default=datetime.now)


class AbisResponseCandidate(Base):
    """One matched reference reported by ABIS inside a response."""

    __tablename__ = "abis_response_det"

    id = Column(Integer, primary_key=True, autoincrement=True)
    response_id = Column(String, ForeignKey("abis_response.response_id"), nullable=False, index=True)
    matched_ref_id = Column(String, nullable=False)
    score = Column(Float, nullable=False)
    rank = Column(Integer, nullable=False)


class DedupeListEntry(Base):
    """Recorded match of a registration against an existing identity."""

    __tablename__ = "reg_dedupe_list"

    id = Column(Integer, primary_key=True, autoincrement=True)
    transaction_id = Column(String, nullable=False, index=True)
    registration_id = Column(String, nullable=False, index=True)
    dedupe_type = Column(SQLEnum(DedupeType), nullable=False)
    matched_ref_id = Column(String, nullable=True)
    matched_registration_id = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.now)


class IndividualDedupeEntry(Base):
    """Per-registration identity record: assigned UIN and active flag."""

    __tablename__ = "individual_demographic_dedup"

    registration_id = Column(String, primary_key=True)
    uin = Column(String, nullable=True, index=True)
    is_active = Column(Boolean, nullable=False, default=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.now, onupdate=datetime.now)


class ManualVerificationTask(Base):
    """Human review work item keyed by (registration id, matched reference id)."""

    __tablename__ = "reg_manual_verification"

    registration_id = Column(String, primary_key=True)
    matched_ref_id = Column(String, primary_key=True)
    transaction_id = Column(String, nullable=False, index=True)
    match_type = Column(SQLEnum(MatchType), nullable=False, default=MatchType.BIO)
    verifier_id = Column(String, nullable=True, index=True)
    status = Column(SQLEnum(TaskStatus), nullable=False, default=TaskStatus.PENDING)
    outcome = Column(SQLEnum(ManualOutcome), nullable=True)
    reason_code = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.now, index=True)
    assigned_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)


_engines: Dict[str, Engine] = {}


def get_engine(db_path: Path) -> Engine:
    """
    Get (or create) the engine for a SQLite database file.

    One engine per path is shared by every session factory in the process,
    so its connection pool is shared as well. The busy timeout makes
    concurrent writers wait for the lock instead of failing.
    """
    key = str(db_path)
    engine = _engines.get(key)
    if engine is None:
        engine = create_engine(
            f"sqlite:///{db_path}",
            connect_args={"timeout": 30, "check_same_thread": False},
        )
        _engines[key] = engine
    return engine


def reset_engines() -> None:
    """Dispose all cached engines (useful for testing)."""
    for engine in _engines.values():
        engine.dispose()
    _engines.clear()


def init_database(db_path: Path) -> None:
    """
    Initialize database and create tables.

    Args:
        db_path: Path to SQLite database file
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)
    Base.metadata.create_all(get_engine(db_path))


def create_session_factory(db_path: Path) -> sessionmaker:
    """
    Build a session factory bound to the database file.

    Args:
        db_path: Path to SQLite database file

    Returns:
        sessionmaker producing independent sessions
    """
    return sessionmaker(bind=get_engine(db_path), expire_on_commit=False)


def get_session(db_path: Path) -> Session:
    """
    Get database session.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLAlchemy session
    """
    return create_session_factory(db_path)()


@contextmanager
def session_scope(session_factory: sessionmaker) -> Iterator[Session]:
    """
    Run a unit of work in its own session.

    Commits on success, rolls back on any error. An unreachable or locked
    database surfaces as STORAGE_UNAVAILABLE.
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except OperationalError as e:
        session.rollback()
        raise DedupError(
            ErrorKind.STORAGE_UNAVAILABLE,
            "Persistence layer unavailable",
            error=str(e.orig) if e.orig is not None else str(e),
        ) from e
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

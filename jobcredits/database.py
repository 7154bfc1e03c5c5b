"""
Database schema and connection management.

Uses SQLAlchemy over SQLite by default. Any SQLAlchemy URL works; SQLite
connections start every transaction with BEGIN IMMEDIATE so that
read-then-write sequences on one store are serialized.
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, Union

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    create_engine,
    event,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, relationship, sessionmaker

from .credit_types import ENTITLEMENT_COLUMNS, CreditType, PurchaseStatus

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp; all stored datetimes are naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class Purchase(Base):
    """Checkout attempt and the entitlement it declares."""

    __tablename__ = "purchases"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False, index=True)
    external_session_id = Column(String, nullable=False, unique=True)
    tier = Column(String, nullable=False)  # starter, credit_pack_fiveCredits, admin_grant, ...
    universal_credits = Column(Integer, nullable=False, default=0)
    job_post_credits = Column(Integer, nullable=False, default=0)
    featured_post_credits = Column(Integer, nullable=False, default=0)
    social_graphic_credits = Column(Integer, nullable=False, default=0)
    repost_credits = Column(Integer, nullable=False, default=0)
    amount_cents = Column(Integer, nullable=False, default=0)
    status = Column(
        Enum(PurchaseStatus, native_enum=False, length=16, values_callable=_enum_values),
        nullable=False,
        default=PurchaseStatus.PENDING,
    )
    external_payment_ref = Column(String)
    failure_reason = Column(String)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime)
    expires_at = Column(DateTime, nullable=False)
    # "metadata" is reserved on declarative classes
    extra = Column("metadata", JSON, nullable=False, default=dict)

    credits = relationship("Credit", back_populates="purchase")

    def entitlements(self) -> Dict[CreditType, int]:
        """Declared credit count per type."""
        return {t: getattr(self, column) or 0 for t, column in ENTITLEMENT_COLUMNS.items()}

    @property
    def total_entitlement(self) -> int:
        return sum(self.entitlements().values())

    def __repr__(self) -> str:
        return (
            f"<Purchase id={self.id} user={self.user_id} session={self.external_session_id} "
            f"status={self.status.value if self.status else None}>"
        )


class Credit(Base):
    """One consumable credit. Never deleted; used only moves false -> true."""

    __tablename__ = "credits"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False)
    purchase_id = Column(Integer, ForeignKey("purchases.id"), nullable=False, index=True)
    type = Column(
        Enum(CreditType, native_enum=False, length=32, values_callable=_enum_values),
        nullable=False,
    )
    used = Column(Boolean, nullable=False, default=False)
    used_at = Column(DateTime)
    used_for = Column(String)  # action id, e.g. the published job id
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    purchase = relationship("Purchase", back_populates="credits")

    __table_args__ = (
        Index("ix_credits_user_type_used_expires", "user_id", "type", "used", "expires_at"),
    )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def __repr__(self) -> str:
        return f"<Credit id={self.id} type={self.type.value} used={self.used} expires={self.expires_at}>"


class PurchaseMint(Base):
    """Marks a purchase as minted. The primary key makes a second mint impossible."""

    __tablename__ = "purchase_mints"

    purchase_id = Column(Integer, ForeignKey("purchases.id"), primary_key=True)
    credit_count = Column(Integer, nullable=False)
    minted_at = Column(DateTime, nullable=False, default=utcnow)


def _database_url(target: Union[str, Path]) -> str:
    if isinstance(target, str) and "://" in target:
        return target
    return f"sqlite:///{target}"


def _configure_sqlite(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # Let SQLAlchemy emit BEGIN itself instead of pysqlite's deferred BEGIN
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def get_engine(target: Union[str, Path]) -> Engine:
    """
    Create an engine for a SQLite file path or a full SQLAlchemy URL.

    Args:
        target: Path to SQLite database file, or database URL

    Returns:
        SQLAlchemy engine
    """
    url = _database_url(target)
    if url.startswith("sqlite"):
        engine = create_engine(url, connect_args={"timeout": 30, "check_same_thread": False})
        _configure_sqlite(engine)
        return engine
    return create_engine(url, pool_pre_ping=True)


def init_database(target: Union[str, Path]) -> Engine:
    """
    Initialize database and create tables.

    Args:
        target: Path to SQLite database file, or database URL

    Returns:
        Engine bound to the initialized database
    """
    if isinstance(target, Path):
        target.parent.mkdir(parents=True, exist_ok=True)
    engine = get_engine(target)
    Base.metadata.create_all(engine)
    return engine


def get_session_factory(engine: Engine) -> sessionmaker:
    """Session factory shared by the ledger services."""
    return sessionmaker(bind=engine, expire_on_commit=False)


def get_session(target: Union[str, Path]) -> Session:
    """
    Get database session.

    Args:
        target: Path to SQLite database file, or database URL

    Returns:
        SQLAlchemy session
    """
    return get_session_factory(get_engine(target))()


@contextmanager
def session_scope(session_factory: sessionmaker) -> Iterator[Session]:
    """Transactional scope: commit on success, roll back on any error."""
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

"""Database entity models for the Taxfolio engine."""

from datetime import datetime, timezone

from sqlalchemy import (
    Column, Integer, String, DateTime, Numeric, Text,
    ForeignKey, Index, UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .database import Base


def utc_now() -> datetime:
    """Naive UTC timestamp, as stored in DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Upload(Base):
    """One ingested file. Its id orders uploads for replay."""
    __tablename__ = "uploads"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    filename = Column(String(255))
    broker_format = Column(String(30), nullable=False)
    rows_parsed = Column(Integer, default=0)
    rows_stored = Column(Integer, default=0)

    transactions = relationship("Transaction", back_populates="upload")

    created_at = Column(DateTime, default=utc_now)


class Transaction(Base):
    """A normalized, converted broker transaction. Never updated once stored."""
    __tablename__ = "processed_transactions"
    __table_args__ = (
        UniqueConstraint("user_id", "hash_id", name="uq_transaction_user_hash"),
        Index("ix_transaction_user_timestamp", "user_id", "timestamp"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    upload_id = Column(Integer, ForeignKey("uploads.id", ondelete="CASCADE"), nullable=False)
    hash_id = Column(String(64), nullable=False)
    row_number = Column(Integer, nullable=False)

    source = Column(String(20), nullable=False)
    kind = Column(String(20), nullable=False)
    side = Column(String(4))
    sub_type = Column(String(30), default="")
    timestamp = Column(DateTime, nullable=False)

    instrument = Column(String(100), default="")
    product_name = Column(String(255), default="")
    description = Column(Text, default="")
    order_id = Column(String(100), default="")

    # Quantities and prices
    quantity = Column(Numeric(18, 8), default=0)  # Fractional shares
    unit_price = Column(Numeric(18, 6), default=0)
    amount = Column(Numeric(18, 4), nullable=False)
    currency = Column(String(3), default="EUR")
    commission = Column(Numeric(18, 4), default=0)
    commission_currency = Column(String(3), default="")

    # Corporate actions
    ratio = Column(Numeric(18, 8))
    ratio_base = Column(Numeric(18, 8))
    target_instrument = Column(String(100), default="")

    # Enrichment, fixed at ingestion
    exchange_rate = Column(Numeric(18, 6), nullable=False)
    amount_eur = Column(Numeric(18, 2), nullable=False)
    commission_eur = Column(Numeric(18, 2), default=0)
    country_code = Column(String(2), default="")

    upload = relationship("Upload", back_populates="transactions")

    created_at = Column(DateTime, default=utc_now)


class CachedResult(Base):
    """The latest computed report of a user, as one JSON snapshot."""
    __tablename__ = "cached_results"

    user_id = Column(Integer, primary_key=True)
    payload = Column(Text, nullable=False)
    transaction_count = Column(Integer, default=0)
    computed_at = Column(DateTime, default=utc_now)

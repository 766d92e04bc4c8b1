"""
Normalized transaction record shared by all broker parsers.

Every supported export format is turned into a list of ``RawTransaction``
records, oldest first. Exports that list the newest row first are reversed
by their parser. Amounts are signed from the account's point of view: cash
leaving the account is negative, cash arriving is positive.
Commissions are non-negative and expressed in the trade currency.
"""

import hashlib
import re
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Optional

from ..errors import ProcessingTimeout


class BrokerFormat(str, Enum):
    """Supported upload formats. Resolved once per file by detect_format."""
    DEGIRO_CSV = "degiro_csv"
    IBKR_FLEX_XML = "ibkr_flex_xml"
    TAXFOLIO_CSV = "taxfolio_csv"


class TransactionKind(str, Enum):
    """What a record does to the account."""
    STOCK = "stock"
    OPTION = "option"
    DIVIDEND = "dividend"
    CASH = "cash"
    FEE = "fee"
    CORPORATE_ACTION = "corporate_action"


class Side(str, Enum):
    BUY = "buy"
    SELL = "sell"


# Sub types used across parsers
SUB_TYPE_CALL = "call"
SUB_TYPE_PUT = "put"
SUB_TYPE_TAX = "tax"
SUB_TYPE_DEPOSIT = "deposit"
SUB_TYPE_WITHDRAWAL = "withdrawal"
SUB_TYPE_SPLIT = "split"
SUB_TYPE_MERGER = "merger"

OPTION_NAME_PATTERN = re.compile(r"\s+[CP]\d+(\.\d+)?\s+\d{2}[A-Z]{3}\d{2}$")


@dataclass(frozen=True)
class RawTransaction:
    """One normalized line of a broker export."""
    timestamp: datetime
    source: str
    kind: TransactionKind
    instrument: str  # ISIN where available, otherwise symbol / product name
    product_name: str
    row_number: int  # replay position within its file, ties broken by it
    side: Optional[Side] = None
    sub_type: str = ""
    quantity: Decimal = Decimal("0")
    unit_price: Decimal = Decimal("0")
    amount: Decimal = Decimal("0")
    currency: str = "EUR"
    commission: Decimal = Decimal("0")
    commission_currency: str = ""  # empty means same as currency
    description: str = ""
    order_id: str = ""

    # Corporate actions only: ratio new shares for ratio_base old shares
    ratio: Optional[Decimal] = None
    ratio_base: Optional[Decimal] = None
    target_instrument: str = ""

    # Filled in at ingestion, never recomputed afterwards
    exchange_rate: Optional[Decimal] = None
    amount_eur: Optional[Decimal] = None
    commission_eur: Optional[Decimal] = None
    country_code: str = ""

    hash_id: str = field(default="", compare=False)
    # Order of the upload that stored the record, 0 until persisted
    upload_sequence: int = field(default=0, compare=False)

    @property
    def trade_date(self):
        return self.timestamp.date()

    @property
    def gross_amount(self) -> Decimal:
        """Absolute trade value in the original currency."""
        return abs(self.amount)

    def with_hash(self) -> "RawTransaction":
        return replace(self, hash_id=content_hash(self))


def content_hash(tx: RawTransaction) -> str:
    """
    SHA-256 over the normalized source values of a record.

    Enrichment fields and the row number are excluded, so the same export
    line hashes identically whichever file it arrives in.
    """
    parts = [
        tx.source,
        tx.timestamp.isoformat(),
        tx.kind.value,
        tx.instrument,
        tx.side.value if tx.side else "",
        tx.sub_type,
        _canonical(tx.quantity),
        _canonical(tx.unit_price),
        _canonical(tx.amount),
        tx.currency,
        _canonical(tx.commission),
        tx.commission_currency,
        tx.order_id,
        tx.description,
        _canonical(tx.ratio) if tx.ratio is not None else "",
        _canonical(tx.ratio_base) if tx.ratio_base is not None else "",
        tx.target_instrument,
    ]
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


def _canonical(value: Decimal) -> str:
    normalized = value.normalize()
    # normalize() turns 100 into 1E+2
    return format(normalized, "f")


def drop_duplicates(transactions: list[RawTransaction]) -> list[RawTransaction]:
    """Keep the first record for each content hash, preserving order."""
    seen: set[str] = set()
    unique = []
    for tx in transactions:
        if tx.hash_id in seen:
            continue
        seen.add(tx.hash_id)
        unique.append(tx)
    return unique


def parse_decimal(raw: str) -> Decimal:
    """
    Parse a number written with either decimal convention.

    Handles: 1500.00, 1500,00, 1.500,00, 1,500.00, -0,5
    """
    text = (raw or "").strip().replace(" ", "").replace("\u00a0", "")
    if not text:
        raise ValueError("empty number")

    if "," in text and "." in text:
        # Whichever separator comes last is the decimal one
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    elif "," in text:
        text = text.replace(",", ".")

    try:
        return Decimal(text)
    except InvalidOperation:
        raise ValueError(f"invalid number '{raw}'")


def is_option_name(product_name: str) -> bool:
    """Option products end with e.g. 'P31.00 18MAR22'."""
    return bool(OPTION_NAME_PATTERN.search(product_name))


class Deadline:
    """
    Wall-clock limit for one parse, checked by parsers between rows.

    The caller can also abandon the parse early, e.g. after it stopped
    waiting for the result.
    """

    def __init__(self, seconds: float):
        self.seconds = seconds
        self._expires_at = time.monotonic() + seconds
        self._abandoned = threading.Event()

    def abandon(self) -> None:
        self._abandoned.set()

    @property
    def expired(self) -> bool:
        return self._abandoned.is_set() or time.monotonic() > self._expires_at

    def check(self) -> None:
        if self.expired:
            raise ProcessingTimeout(f"Parsing took longer than {self.seconds} seconds")


class BrokerParser(ABC):
    """Common interface of every format-specific parser."""

    format: BrokerFormat

    def __init__(self, deadline: Optional[Deadline] = None):
        self.deadline = deadline

    def check_deadline(self) -> None:
        """Raise ProcessingTimeout once the parse ran out of time."""
        if self.deadline is not None:
            self.deadline.check()

    @abstractmethod
    def parse(self, content: str) -> list[RawTransaction]:
        """Parse file content into normalized records, oldest first."""

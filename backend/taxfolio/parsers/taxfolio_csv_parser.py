"""
Normalized Taxfolio CSV Parser

A broker-neutral CSV with named columns, used for manual entries and for
corporate actions that broker exports do not describe well.

Required columns: date, kind, currency and one of isin / product.
Optional columns: time, side, quantity, price, amount, commission,
commission_currency, order_id, description, sub_type, ratio, ratio_base,
target_isin. A split of 1 for 3 is written ratio=1, ratio_base=3.

Dates are ISO (YYYY-MM-DD), times HH:MM[:SS]. ``amount`` defaults to
quantity x price, signed from the side.
"""

from datetime import datetime
from decimal import Decimal
from io import StringIO
from typing import Optional

import pandas as pd

from ..errors import ParseIssue, ParsingFailed
from ..logging_config import setup_logger
from .base import (
    BrokerFormat,
    BrokerParser,
    RawTransaction,
    Side,
    TransactionKind,
    parse_decimal,
)

logger = setup_logger(__name__)

SOURCE = "taxfolio"

REQUIRED_COLUMNS = {"date", "kind", "currency"}
INSTRUMENT_COLUMNS = {"isin", "product"}
KNOWN_COLUMNS = REQUIRED_COLUMNS | INSTRUMENT_COLUMNS | {
    "time", "side", "quantity", "price", "amount", "commission",
    "commission_currency", "order_id", "description", "sub_type",
    "ratio", "ratio_base", "target_isin",
}

TRADE_KINDS = {TransactionKind.STOCK, TransactionKind.OPTION}


class TaxfolioCSVParser(BrokerParser):
    """Parser for the normalized Taxfolio CSV layout."""

    format = BrokerFormat.TAXFOLIO_CSV

    def parse(self, content: str) -> list[RawTransaction]:
        try:
            df = pd.read_csv(StringIO(content), dtype=str, keep_default_na=False)
        except (pd.errors.ParserError, pd.errors.EmptyDataError) as e:
            raise ParsingFailed(f"CSV could not be read: {e}")

        df = df.fillna("")
        df.columns = [str(column).strip().lower() for column in df.columns]

        missing = REQUIRED_COLUMNS - set(df.columns)
        if missing or not INSTRUMENT_COLUMNS & set(df.columns):
            raise ParsingFailed(
                "CSV header not recognised, missing columns: "
                + ", ".join(sorted(missing) or ["isin/product"])
            )

        unknown = set(df.columns) - KNOWN_COLUMNS
        if unknown:
            logger.info(f"Ignoring unknown columns: {', '.join(sorted(unknown))}")

        transactions = []
        issues = []
        for position, record in enumerate(df.to_dict(orient="records")):
            line = position + 2
            self.check_deadline()
            row = {key: str(value).strip() for key, value in record.items()}
            if not any(row.values()):
                continue
            try:
                transactions.append(self._parse_row(line, row))
            except ValueError as e:
                issues.append(ParseIssue(line, str(e)))

        if issues:
            raise ParsingFailed("Malformed CSV", issues)

        logger.info(f"Parsed {len(transactions)} transactions from normalized CSV")
        return transactions

    def _parse_row(self, line: int, row: dict[str, str]) -> RawTransaction:
        timestamp = _parse_timestamp(row.get("date", ""), row.get("time", ""))

        try:
            kind = TransactionKind(row["kind"].lower())
        except ValueError:
            raise ValueError(f"unknown kind '{row['kind']}'")

        isin = row.get("isin", "")
        product = row.get("product", "") or isin
        if not (isin or product) and kind != TransactionKind.CASH:
            raise ValueError("missing isin/product")

        currency = row.get("currency", "").upper()
        if not currency:
            raise ValueError("missing currency")

        side = _parse_side(row.get("side", ""))
        quantity = _optional_decimal(row, "quantity")
        unit_price = _optional_decimal(row, "price")
        amount = _optional_decimal(row, "amount", default=None)

        if kind in TRADE_KINDS:
            if side is None:
                raise ValueError("trade without side")
            if quantity <= 0:
                raise ValueError("trade quantity must be positive")
            gross = abs(amount) if amount is not None else quantity * unit_price
            amount = -gross if side == Side.BUY else gross
        elif amount is None:
            amount = Decimal("0")

        ratio = _optional_decimal(row, "ratio", default=None)
        sub_type = row.get("sub_type", "").lower()
        if kind == TransactionKind.CORPORATE_ACTION:
            if not sub_type:
                raise ValueError("corporate action without sub_type")
            if ratio is None or ratio <= 0:
                raise ValueError("corporate action needs a positive ratio")
        ratio_base = _optional_decimal(row, "ratio_base", default=None)
        if ratio_base is not None and ratio_base <= 0:
            raise ValueError("ratio_base must be positive")

        commission = abs(_optional_decimal(row, "commission"))

        return RawTransaction(
            timestamp=timestamp,
            source=SOURCE,
            kind=kind,
            instrument=isin or product,
            product_name=product,
            row_number=line,
            side=side,
            sub_type=sub_type,
            quantity=quantity,
            unit_price=unit_price,
            amount=amount,
            currency=currency,
            commission=commission,
            commission_currency=row.get("commission_currency", "").upper(),
            description=row.get("description", ""),
            order_id=row.get("order_id", ""),
            ratio=ratio,
            ratio_base=ratio_base,
            target_instrument=row.get("target_isin", ""),
        )


def is_taxfolio_header(columns: list[str]) -> bool:
    normalized = {str(column).strip().lower() for column in columns}
    return REQUIRED_COLUMNS <= normalized and bool(INSTRUMENT_COLUMNS & normalized)


def _parse_side(text: str) -> Optional[Side]:
    if not text:
        return None
    try:
        return Side(text.lower())
    except ValueError:
        raise ValueError(f"unknown side '{text}'")


def _optional_decimal(row: dict[str, str], column: str, default=Decimal("0")):
    value = row.get(column, "")
    if not value:
        return default
    try:
        return parse_decimal(value)
    except ValueError as e:
        raise ValueError(f"{column}: {e}")


def _parse_timestamp(date_text: str, time_text: str) -> datetime:
    if not date_text:
        raise ValueError("missing date")
    try:
        timestamp = datetime.strptime(date_text, "%Y-%m-%d")
    except ValueError:
        raise ValueError(f"invalid date '{date_text}'")
    if time_text:
        for fmt in ("%H:%M:%S", "%H:%M"):
            try:
                clock = datetime.strptime(time_text, fmt)
                return timestamp.replace(hour=clock.hour, minute=clock.minute, second=clock.second)
            except ValueError:
                continue
        raise ValueError(f"invalid time '{time_text}'")
    return timestamp

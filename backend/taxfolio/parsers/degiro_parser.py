"""
DeGiro Account Statement CSV Parser

Parses the "Account" export (Portuguese or English locale):

    Data,Hora,Data Valor,Produto,ISIN,Descrição,Taxa de Câmbio,Variação,,Saldo,,ID da Ordem
    Date,Time,Value date,Product,ISIN,Description,FX,Change,,Balance,,Order Id

Columns are read by position; the two unnamed columns hold the amount and
the balance. Trades are recognised from the description text, e.g.
"Compra 100 APPLE INC@150,5 USD (US0378331005)".

The export lists the newest booking first; records are returned oldest
first, and parse issues refer to file lines.
"""

import csv
import re
from collections import defaultdict
from dataclasses import replace
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
    SUB_TYPE_CALL,
    SUB_TYPE_DEPOSIT,
    SUB_TYPE_PUT,
    SUB_TYPE_TAX,
    SUB_TYPE_WITHDRAWAL,
    is_option_name,
    parse_decimal,
)

logger = setup_logger(__name__)

SOURCE = "degiro"

# Column positions in the export
COL_DATE = 0
COL_TIME = 1
COL_PRODUCT = 3
COL_ISIN = 4
COL_DESCRIPTION = 5
COL_CURRENCY = 7
COL_AMOUNT = 8
COL_ORDER_ID = 11
MIN_COLUMNS = COL_AMOUNT + 1

HEADER_DATE = {"data", "date"}
HEADER_DESCRIPTION = {"descrição", "descricao", "description"}

TRADE_PATTERN = re.compile(
    r"^\s*(compra|venda|buy|sell)\s+([\d\s.,]+?)\s+(.+?)\s*@\s*([\d.,]+)",
    re.IGNORECASE,
)

# Bookings that move no position and produce no taxable income
IGNORED_KEYWORDS = (
    "mudança de produto",
    "product change",
    "cash sweep",
    "câmbio de divisa",
    "fx credit",
    "fx debit",
    "fx withdrawal",
    "transferir",
    "transfer to your cash account",
)

COMMISSION_KEYWORDS = (
    "comissões de transação",
    "custo de conectividade",
    "transaction and/or third",
    "transaction fee",
    "connection fee",
)


class DeGiroParser(BrokerParser):
    """Parser for DeGiro account statement CSV exports."""

    format = BrokerFormat.DEGIRO_CSV

    def parse(self, content: str) -> list[RawTransaction]:
        try:
            df = pd.read_csv(
                StringIO(content),
                header=None,
                dtype=str,
                keep_default_na=False,
                skip_blank_lines=True,
            )
            layout = _record_layout(content)
        except (pd.errors.ParserError, pd.errors.EmptyDataError, csv.Error) as e:
            raise ParsingFailed(f"DeGiro CSV could not be read: {e}")

        # pandas pads short rows to the widest one, so widths come from the layout
        table = [[str(cell).strip() for cell in row] for row in df.fillna("").values]
        table = [cells for cells in table if any(cells)]
        if len(table) != len(layout):
            raise ParsingFailed("DeGiro CSV rows could not be read consistently")

        if not table or not is_degiro_header(table[0]):
            raise ParsingFailed("DeGiro CSV header not recognised")

        rows = []
        issues = []
        for (line, width), cells in zip(layout[1:], table[1:]):
            self.check_deadline()
            if width < MIN_COLUMNS:
                issues.append(ParseIssue(line, f"expected at least {MIN_COLUMNS} columns, got {width}"))
                continue
            rows.append((line, cells))

        commissions = self._collect_commissions(rows, issues)

        transactions = []
        for line, cells in rows:
            self.check_deadline()
            try:
                tx = self._parse_row(line, cells, commissions)
            except ValueError as e:
                issues.append(ParseIssue(line, str(e)))
                continue
            if tx is not None:
                transactions.append(tx)

        if issues:
            raise ParsingFailed("Malformed DeGiro CSV", issues)

        logger.info(f"Parsed {len(transactions)} DeGiro transactions from {len(rows)} rows")
        return _oldest_first(transactions)

    def _collect_commissions(self, rows, issues) -> dict[str, tuple[Decimal, str]]:
        """Sum commission bookings per order id, in the booking currency."""
        totals: dict[str, Decimal] = defaultdict(Decimal)
        currencies: dict[str, str] = {}

        for line, cells in rows:
            order_id = _cell(cells, COL_ORDER_ID)
            if not order_id or not _is_commission(cells[COL_DESCRIPTION]):
                continue
            try:
                amount = parse_decimal(cells[COL_AMOUNT])
            except ValueError as e:
                issues.append(ParseIssue(line, f"commission amount: {e}"))
                continue
            totals[order_id] += abs(amount)
            currencies.setdefault(order_id, cells[COL_CURRENCY] or "EUR")

        return {order_id: (total, currencies[order_id]) for order_id, total in totals.items()}

    def _parse_row(
        self,
        line: int,
        cells: list[str],
        commissions: dict[str, tuple[Decimal, str]],
    ) -> Optional[RawTransaction]:
        description = cells[COL_DESCRIPTION].replace("\u00a0", " ").strip()
        lower = description.lower()
        order_id = _cell(cells, COL_ORDER_ID)

        if not description:
            raise ValueError("missing description")

        if any(keyword in lower for keyword in IGNORED_KEYWORDS):
            logger.debug(f"Skipping administrative booking on line {line}: {description}")
            return None

        timestamp = _parse_timestamp(cells[COL_DATE], cells[COL_TIME])
        isin = cells[COL_ISIN].strip()
        currency = cells[COL_CURRENCY] or "EUR"
        product = cells[COL_PRODUCT].strip()

        base = dict(
            timestamp=timestamp,
            source=SOURCE,
            instrument=isin or product,
            product_name=product,
            row_number=line,
            currency=currency,
            description=description,
            order_id=order_id,
        )

        if _is_commission(description):
            if order_id:
                # Folded into the trade with the same order id
                return None
            return RawTransaction(
                kind=TransactionKind.FEE,
                amount=-abs(parse_decimal(cells[COL_AMOUNT])),
                **{**base, "product_name": "Brokerage Fee"},
            )

        if "imposto sobre dividendo" in lower or "dividend tax" in lower:
            return RawTransaction(
                kind=TransactionKind.DIVIDEND,
                sub_type=SUB_TYPE_TAX,
                amount=-abs(parse_decimal(cells[COL_AMOUNT])),
                **base,
            )

        if "dividendo" in lower or lower.startswith("dividend"):
            return RawTransaction(
                kind=TransactionKind.DIVIDEND,
                amount=parse_decimal(cells[COL_AMOUNT]),
                **base,
            )

        if lower in ("depósito", "deposito", "deposit") or "flatex deposit" in lower:
            return RawTransaction(
                kind=TransactionKind.CASH,
                sub_type=SUB_TYPE_DEPOSIT,
                amount=abs(parse_decimal(cells[COL_AMOUNT])),
                **{**base, "instrument": "", "product_name": "Cash Deposit"},
            )

        if lower in ("levantamento", "withdrawal") or "flatex withdrawal" in lower:
            return RawTransaction(
                kind=TransactionKind.CASH,
                sub_type=SUB_TYPE_WITHDRAWAL,
                amount=-abs(parse_decimal(cells[COL_AMOUNT])),
                **{**base, "instrument": "", "product_name": "Cash Withdrawal"},
            )

        match = TRADE_PATTERN.match(description)
        if not match:
            logger.warning(f"Skipping unknown DeGiro booking on line {line}: '{description}'")
            return None

        return self._parse_trade(match, cells, base, commissions)

    def _parse_trade(self, match, cells, base, commissions) -> RawTransaction:
        side = Side.BUY if match.group(1).lower() in ("compra", "buy") else Side.SELL
        quantity = parse_decimal(match.group(2).replace(" ", "").replace(".", ""))
        product_name = match.group(3).strip()
        unit_price = parse_decimal(match.group(4))

        if quantity <= 0:
            raise ValueError(f"non-positive quantity in '{match.group(0)}'")

        if cells[COL_AMOUNT]:
            gross = abs(parse_decimal(cells[COL_AMOUNT]))
        else:
            gross = quantity * unit_price
        amount = -gross if side == Side.BUY else gross

        if is_option_name(product_name):
            kind = TransactionKind.OPTION
            sub_type = SUB_TYPE_CALL if re.search(r"\sC\d", product_name) else SUB_TYPE_PUT
            # Option series are identified by their name, ISINs are not reliable
            instrument = product_name
        else:
            kind = TransactionKind.STOCK
            sub_type = ""
            instrument = base["instrument"]

        commission, commission_currency = commissions.get(base["order_id"], (Decimal("0"), ""))

        return RawTransaction(
            kind=kind,
            side=side,
            sub_type=sub_type,
            quantity=quantity,
            unit_price=unit_price,
            amount=amount,
            commission=commission,
            commission_currency=commission_currency,
            **{**base, "instrument": instrument, "product_name": product_name},
        )


def is_degiro_header(cells: list[str]) -> bool:
    """True when a first row looks like a DeGiro account export header."""
    if len(cells) < MIN_COLUMNS:
        return False
    normalized = [str(cell).strip().lower() for cell in cells]
    return (
        normalized[COL_DATE] in HEADER_DATE
        and normalized[COL_ISIN] == "isin"
        and normalized[COL_DESCRIPTION] in HEADER_DESCRIPTION
    )


def _is_commission(description: str) -> bool:
    lower = description.lower()
    return any(keyword in lower for keyword in COMMISSION_KEYWORDS)


def _cell(cells: list[str], index: int) -> str:
    return cells[index].strip() if index < len(cells) else ""


def _parse_timestamp(date_text: str, time_text: str) -> datetime:
    if not date_text:
        raise ValueError("missing date")
    try:
        day = datetime.strptime(date_text.strip(), "%d-%m-%Y")
    except ValueError:
        raise ValueError(f"invalid date '{date_text}'")

    if time_text:
        try:
            clock = datetime.strptime(time_text.strip(), "%H:%M")
        except ValueError:
            raise ValueError(f"invalid time '{time_text}'")
        return day.replace(hour=clock.hour, minute=clock.minute)
    return day


def _record_layout(content: str) -> list[tuple[int, int]]:
    """(first file line, field count) of every non-blank CSV record."""
    layout = []
    reader = csv.reader(StringIO(content))
    start = 1
    for fields in reader:
        if any(field.strip() for field in fields):
            layout.append((start, len(fields)))
        start = reader.line_num + 1
    return layout


def _oldest_first(transactions: list[RawTransaction]) -> list[RawTransaction]:
    """
    Records in replay order, renumbered from 1.

    Account exports list the newest booking first, so rows sharing a minute
    appear in reverse order too. A file is only kept as is when it clearly
    runs oldest first.
    """
    if len(transactions) > 1 and transactions[0].timestamp < transactions[-1].timestamp:
        ordered = list(transactions)
    else:
        ordered = list(reversed(transactions))
    ordered.sort(key=lambda tx: tx.timestamp)
    return [replace(tx, row_number=position) for position, tx in enumerate(ordered, start=1)]

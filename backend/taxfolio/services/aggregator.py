"""
Report aggregation.

Pure functions over converted transactions and matching results. Nothing
here is stored; every summary can be regenerated from its inputs.
"""

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional

from ..parsers.base import (
    RawTransaction,
    TransactionKind,
    SUB_TYPE_DEPOSIT,
    SUB_TYPE_TAX,
)
from .country_codes import CountryDirectory
from .lot_matching import PurchaseLot, RealizedSale

ZERO = Decimal("0")

FEE_CATEGORY_BROKERAGE = "Brokerage Fee"
FEE_CATEGORY_COMMISSION = "Trade Commission"


@dataclass
class DividendEvent:
    """A dividend payment with the tax withheld on it."""
    date: datetime
    instrument: str
    product_name: str
    country: str
    gross_amount_eur: Decimal
    withheld_tax_eur: Decimal  # positive magnitude
    amount: Decimal            # original currency, gross
    currency: str
    country_code: str = ""


@dataclass
class CashMovement:
    date: datetime
    type: str  # "deposit" or "withdrawal"
    amount: Decimal
    currency: str
    amount_eur: Decimal
    order_id: str = ""


@dataclass
class FeeDetail:
    date: datetime
    description: str
    amount_eur: Decimal  # negative, a cost
    source: str
    category: str


@dataclass
class PositionSummary:
    """All open lots of one instrument."""
    instrument: str
    product_name: str
    quantity: Decimal
    open_amount_eur: Decimal
    commission_eur: Decimal
    currency: str
    lots: int


@dataclass
class YearlyRealized:
    year: int
    sales: int = 0
    close_amount_eur: Decimal = ZERO
    open_amount_eur: Decimal = ZERO
    commission: Decimal = ZERO
    delta: Decimal = ZERO


def dividend_events(
    transactions: Iterable[RawTransaction],
    countries: Optional[CountryDirectory] = None,
) -> list[DividendEvent]:
    """
    Pair dividend payments with their withholding-tax rows.

    Rows of the same instrument, day and currency form one event. A tax row
    without a payment still produces an event with zero gross.
    """
    countries = countries or CountryDirectory()
    events: dict[tuple, DividendEvent] = {}

    for tx in transactions:
        if tx.kind != TransactionKind.DIVIDEND:
            continue
        key = (tx.trade_date, tx.instrument, tx.currency)
        event = events.get(key)
        if event is None:
            code = tx.country_code or CountryDirectory.code_for_isin(tx.instrument)
            event = DividendEvent(
                date=tx.timestamp,
                instrument=tx.instrument,
                product_name=tx.product_name,
                country=countries.label(code),
                gross_amount_eur=ZERO,
                withheld_tax_eur=ZERO,
                amount=ZERO,
                currency=tx.currency,
                country_code=code,
            )
            events[key] = event

        amount_eur = tx.amount_eur if tx.amount_eur is not None else tx.amount
        if tx.sub_type == SUB_TYPE_TAX:
            # Withholding is booked negative, refunds positive
            event.withheld_tax_eur -= amount_eur
        else:
            event.gross_amount_eur += amount_eur
            event.amount += tx.amount
            if not event.product_name:
                event.product_name = tx.product_name

    return sorted(events.values(), key=lambda e: (e.date, e.instrument))


def dividend_tax_summary(events: Iterable[DividendEvent]) -> dict[int, dict[str, dict[str, Decimal]]]:
    """
    Gross dividends and withheld tax per tax year and source country:

        {2023: {"840 - United States of America (the)":
                    {"gross_amt": Decimal("12.40"), "taxed_amt": Decimal("1.86")}}}
    """
    summary: dict[int, dict[str, dict[str, Decimal]]] = defaultdict(dict)
    for event in events:
        by_country = summary[event.date.year]
        totals = by_country.setdefault(event.country, {"gross_amt": ZERO, "taxed_amt": ZERO})
        totals["gross_amt"] += event.gross_amount_eur
        totals["taxed_amt"] += event.withheld_tax_eur
    return {year: summary[year] for year in sorted(summary)}


def holdings_by_instrument(lots: Iterable[PurchaseLot]) -> list[PositionSummary]:
    """Net open quantity and cost per instrument. Fully netted-out instruments are dropped."""
    positions: dict[str, PositionSummary] = {}
    for lot in lots:
        position = positions.get(lot.instrument)
        if position is None:
            position = PositionSummary(
                instrument=lot.instrument,
                product_name=lot.product_name,
                quantity=ZERO,
                open_amount_eur=ZERO,
                commission_eur=ZERO,
                currency=lot.currency,
                lots=0,
            )
            positions[lot.instrument] = position
        position.quantity += lot.quantity
        position.open_amount_eur += lot.open_amount_eur if lot.quantity > 0 else -lot.open_amount_eur
        position.commission_eur += lot.commission_eur
        position.lots += 1

    return [p for p in sorted(positions.values(), key=lambda p: p.instrument) if p.quantity != 0]


def realized_by_year(sales: Iterable[RealizedSale]) -> dict[int, YearlyRealized]:
    """Realized results per tax year of the closing trade."""
    years: dict[int, YearlyRealized] = {}
    for sale in sales:
        year = sale.close_date.year
        totals = years.setdefault(year, YearlyRealized(year=year))
        totals.sales += 1
        totals.close_amount_eur += sale.close_amount_eur
        totals.open_amount_eur += sale.open_amount_eur
        totals.commission += sale.commission
        totals.delta += sale.delta
    return {year: years[year] for year in sorted(years)}


def cash_movements(transactions: Iterable[RawTransaction]) -> list[CashMovement]:
    movements = []
    for tx in transactions:
        if tx.kind != TransactionKind.CASH:
            continue
        movements.append(CashMovement(
            date=tx.timestamp,
            type="deposit" if tx.sub_type == SUB_TYPE_DEPOSIT else "withdrawal",
            amount=tx.amount,
            currency=tx.currency,
            amount_eur=tx.amount_eur if tx.amount_eur is not None else tx.amount,
            order_id=tx.order_id,
        ))
    return sorted(movements, key=lambda m: m.date)


def fee_details(transactions: Iterable[RawTransaction]) -> list[FeeDetail]:
    """Stand-alone fees and the commissions folded into trades, as costs."""
    fees = []
    for tx in transactions:
        if tx.kind == TransactionKind.FEE:
            fees.append(FeeDetail(
                date=tx.timestamp,
                description=tx.description or tx.product_name,
                amount_eur=-abs(tx.amount_eur if tx.amount_eur is not None else tx.amount),
                source=tx.source,
                category=FEE_CATEGORY_BROKERAGE,
            ))
        elif tx.commission_eur:
            fees.append(FeeDetail(
                date=tx.timestamp,
                description=tx.product_name,
                amount_eur=-tx.commission_eur,
                source=tx.source,
                category=FEE_CATEGORY_COMMISSION,
            ))
    return sorted(fees, key=lambda f: f.date)

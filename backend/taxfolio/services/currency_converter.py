"""
Historical currency conversion into the reporting currency (EUR).

Rates follow the ECB convention: units of foreign currency per 1 EUR, so

    amount_eur = amount / rate

Lookup takes the most recent observation on or before the requested date
(weekends and holidays have no fixing). Converted amounts are stored at
ingestion; refining the table later never changes what was stored.
"""

import json
import threading
from bisect import bisect_right, insort
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from pathlib import Path
from typing import Optional, Union

from ..errors import RateUnavailable
from ..logging_config import setup_logger

logger = setup_logger(__name__)

CENTS = Decimal("0.01")
REPORTING_CURRENCY = "EUR"


def to_cents(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class ConvertedAmount:
    """Result of one conversion."""
    rate: Decimal
    amount: Decimal  # in the reporting currency, rounded to cents


class RateTable:
    """Per-currency, date-sorted exchange rate observations."""

    def __init__(self):
        self._dates: dict[str, list[date]] = {}
        self._rates: dict[tuple[str, date], Decimal] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_ecb_json(cls, path: Union[str, Path]) -> "RateTable":
        """
        Load the ECB observation export:

            {"root": {"Obs": [{"_TIME_PERIOD": "2024-01-02",
                               "_OBS_VALUE": "1.0956", "_CCY": "USD"}, ...]}}
        """
        path = Path(path)
        logger.info(f"Loading historical exchange rates from {path}")
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        table = cls.from_ecb_data(data)
        logger.info(f"Loaded {len(table)} rate observations from {path.name}")
        return table

    @classmethod
    def from_ecb_data(cls, data: dict) -> "RateTable":
        table = cls()
        observations = data.get("root", {}).get("Obs", [])
        for obs in observations:
            try:
                on_date = datetime.strptime(obs["_TIME_PERIOD"], "%Y-%m-%d").date()
                rate = Decimal(str(obs["_OBS_VALUE"]))
                currency = obs["_CCY"]
            except (KeyError, ValueError, InvalidOperation) as e:
                logger.warning(f"Skipping invalid rate observation {obs}: {e}")
                continue
            table.add_rate(currency, on_date, rate)
        return table

    def add_rate(self, currency: str, on_date: date, rate: Decimal) -> None:
        """Add or replace one observation."""
        if rate <= 0:
            raise ValueError(f"Exchange rate must be positive, got {rate} for {currency}")
        currency = currency.upper()
        with self._lock:
            key = (currency, on_date)
            if key not in self._rates:
                insort(self._dates.setdefault(currency, []), on_date)
            self._rates[key] = rate

    def lookup(self, currency: str, on_date: date) -> Optional[tuple[date, Decimal]]:
        """Most recent (date, rate) on or before ``on_date``, or None."""
        currency = currency.upper()
        with self._lock:
            dates = self._dates.get(currency)
            if not dates:
                return None
            index = bisect_right(dates, on_date)
            if index == 0:
                return None
            found = dates[index - 1]
            return found, self._rates[(currency, found)]

    def currencies(self) -> list[str]:
        return sorted(self._dates)

    def __len__(self) -> int:
        return len(self._rates)


class CurrencyConverter:
    """Converts amounts into EUR using a ``RateTable``."""

    def __init__(self, rates: RateTable, reporting_currency: str = REPORTING_CURRENCY):
        if reporting_currency != REPORTING_CURRENCY:
            raise ValueError(f"Only EUR reporting is supported, got {reporting_currency}")
        self.rates = rates
        self.reporting_currency = reporting_currency

    def rate_for(self, currency: str, on_date: date) -> Decimal:
        """
        Raises:
            RateUnavailable: no rate on or before the date, or unknown currency
        """
        currency = (currency or REPORTING_CURRENCY).upper()
        if currency == self.reporting_currency:
            return Decimal("1")

        found = self.rates.lookup(currency, on_date)
        if found is None:
            logger.warning(f"Exchange rate not found for {currency} on or before {on_date}")
            raise RateUnavailable(currency, on_date)

        rate_date, rate = found
        if rate_date != on_date:
            logger.debug(f"Using {currency} rate of {rate_date} for {on_date}")
        return rate

    def convert(self, amount: Decimal, currency: str, on_date: date) -> ConvertedAmount:
        rate = self.rate_for(currency, on_date)
        return ConvertedAmount(rate=rate, amount=to_cents(amount / rate))

"""
Source country of an instrument, derived from its ISIN prefix.

With a country data file (a JSON list of ``{"country", "alpha2", "alpha3",
"numeric"}``) labels read like "840 - United States of America (the)";
without one the bare alpha-2 code is used.
"""

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from ..logging_config import setup_logger

logger = setup_logger(__name__)

UNKNOWN_COUNTRY = "Unknown"


@dataclass(frozen=True)
class CountryInfo:
    country: str
    alpha2: str
    alpha3: str = ""
    numeric: str = ""


class CountryDirectory:
    def __init__(self, countries: Optional[list[CountryInfo]] = None):
        self._by_alpha2 = {c.alpha2.upper(): c for c in countries or []}

    @classmethod
    def from_json(cls, path: Union[str, Path]) -> "CountryDirectory":
        with open(path, encoding="utf-8") as f:
            entries = json.load(f)
        countries = [
            CountryInfo(
                country=entry.get("country", ""),
                alpha2=entry.get("alpha2", ""),
                alpha3=entry.get("alpha3", ""),
                numeric=str(entry.get("numeric", "")).strip(),
            )
            for entry in entries
            if entry.get("alpha2")
        ]
        logger.info(f"Loaded {len(countries)} countries from {path}")
        return cls(countries)

    @staticmethod
    def code_for_isin(isin: str) -> str:
        """ISO alpha-2 prefix of an ISIN, or empty when it is not one."""
        prefix = (isin or "")[:2]
        if len(prefix) == 2 and prefix.isalpha() and len(isin) == 12:
            return prefix.upper()
        return ""

    def label(self, alpha2: str) -> str:
        """Display label used to key dividend summaries."""
        if not alpha2:
            return UNKNOWN_COUNTRY
        info = self._by_alpha2.get(alpha2.upper())
        if info is None:
            return alpha2.upper()
        numeric = info.numeric or "N/A"
        return f"{numeric} - {info.country}"

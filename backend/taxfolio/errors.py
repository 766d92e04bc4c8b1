"""
Error taxonomy for the tax engine.

Every error carries a ``category`` so callers can tell the user
"fix your file" (user), "try again later" (retry), or "your data cannot be
reported as-is" (processing). Anything outside this hierarchy is a bug.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Optional


class TaxfolioError(Exception):
    """Base class for all engine errors."""
    category = "internal"


@dataclass
class ParseIssue:
    """One offending row or element of an uploaded file."""
    line: int
    message: str

    def __str__(self) -> str:
        return f"line {self.line}: {self.message}"


class ParsingFailed(TaxfolioError):
    """The uploaded file is malformed or in an unsupported format."""
    category = "user"

    def __init__(self, message: str, issues: Optional[list[ParseIssue]] = None):
        self.issues = issues or []
        detail = message
        if self.issues:
            detail += ": " + "; ".join(str(issue) for issue in self.issues[:20])
            if len(self.issues) > 20:
                detail += f"; ... ({len(self.issues) - 20} more)"
        super().__init__(detail)


class FileTooLarge(TaxfolioError):
    """The upload exceeds the configured size limit."""
    category = "user"


class RateUnavailable(TaxfolioError):
    """No exchange rate exists on or before the requested date."""
    category = "processing"

    def __init__(self, currency: str, on_date: date):
        self.currency = currency
        self.on_date = on_date
        super().__init__(f"No exchange rate for {currency} on or before {on_date.isoformat()}")


class InsufficientLot(TaxfolioError):
    """A closing trade exceeds the open quantity and shorting is not allowed."""
    category = "processing"

    def __init__(self, instrument: str, trade_date: date, missing_quantity: Decimal):
        self.instrument = instrument
        self.trade_date = trade_date
        self.missing_quantity = missing_quantity
        super().__init__(
            f"Sell of {instrument} on {trade_date.isoformat()} exceeds open lots "
            f"by {missing_quantity} and short positions are not allowed"
        )


class UnsupportedCorporateAction(TaxfolioError):
    """A corporate action the engine cannot apply to lots."""
    category = "processing"

    def __init__(self, action_type: str, instrument: str, action_date: date):
        self.action_type = action_type
        self.instrument = instrument
        self.action_date = action_date
        super().__init__(
            f"Unsupported corporate action '{action_type}' for {instrument} "
            f"on {action_date.isoformat()}"
        )


class NotFound(TaxfolioError):
    """No cached result exists for the user."""
    category = "empty"

    def __init__(self, user_id: int):
        self.user_id = user_id
        super().__init__(f"No result for user {user_id}")


class ProcessingTimeout(TaxfolioError):
    """A bounded step (parsing, storage) took too long."""
    category = "retry"


class StorageError(TaxfolioError):
    """The persistence layer failed after retrying."""
    category = "retry"


class IngestionCancelled(TaxfolioError):
    """The caller cancelled the ingestion before it committed."""
    category = "retry"

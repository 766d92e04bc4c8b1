from .currency_converter import ConvertedAmount, CurrencyConverter, RateTable
from .country_codes import CountryDirectory
from .lot_matching import LotMatchingEngine, MatchingResult, ShortPolicy, chronological_key
from .result_cache import InMemoryResultCache, ResultCache, SQLResultCache, UploadResult, UserLockRegistry
from .transaction_store import TransactionStore
from .ingestion_service import UploadService, UploadSummary

__all__ = [
    "ConvertedAmount",
    "CurrencyConverter",
    "RateTable",
    "CountryDirectory",
    "LotMatchingEngine",
    "MatchingResult",
    "ShortPolicy",
    "chronological_key",
    "InMemoryResultCache",
    "ResultCache",
    "SQLResultCache",
    "UploadResult",
    "UserLockRegistry",
    "TransactionStore",
    "UploadService",
    "UploadSummary",
]

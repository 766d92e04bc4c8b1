from .base import BrokerFormat, BrokerParser, Deadline, RawTransaction, Side, TransactionKind
from .degiro_parser import DeGiroParser
from .ibkr_parser import IBKRParser
from .taxfolio_csv_parser import TaxfolioCSVParser
from .factory import ParsedFile, detect_format, get_parser, parse_file

__all__ = [
    "BrokerFormat",
    "BrokerParser",
    "Deadline",
    "RawTransaction",
    "Side",
    "TransactionKind",
    "DeGiroParser",
    "IBKRParser",
    "TaxfolioCSVParser",
    "ParsedFile",
    "detect_format",
    "get_parser",
    "parse_file",
]

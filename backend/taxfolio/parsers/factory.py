"""
Format detection and parser dispatch.

The broker format is resolved once per file from its header row or XML root
element; the filename only shows up in error messages.
"""

import csv
import re
from dataclasses import dataclass
from typing import Optional, Union

from ..errors import ParsingFailed
from ..logging_config import setup_logger
from .base import BrokerFormat, BrokerParser, Deadline, RawTransaction, drop_duplicates
from .degiro_parser import DeGiroParser, is_degiro_header
from .ibkr_parser import IBKRParser, ROOT_TAG
from .taxfolio_csv_parser import TaxfolioCSVParser, is_taxfolio_header

logger = setup_logger(__name__)

PARSERS: dict[BrokerFormat, type[BrokerParser]] = {
    BrokerFormat.DEGIRO_CSV: DeGiroParser,
    BrokerFormat.IBKR_FLEX_XML: IBKRParser,
    BrokerFormat.TAXFOLIO_CSV: TaxfolioCSVParser,
}

XML_ROOT_PATTERN = re.compile(r"<\s*([A-Za-z_][\w.-]*)")


def decode_content(content: Union[bytes, str]) -> str:
    """Decode an upload, accepting UTF-8 with or without BOM."""
    if isinstance(content, str):
        return content.lstrip("\ufeff")
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise ParsingFailed(f"File is not UTF-8 encoded: {e}")


def detect_format(content: str, filename: Optional[str] = None) -> BrokerFormat:
    """
    Work out which broker export a file is.

    Raises:
        ParsingFailed: when no supported format matches
    """
    text = content.lstrip()
    if not text:
        raise ParsingFailed("File is empty")

    if text.startswith("<"):
        # The pattern skips the XML declaration and comments
        match = XML_ROOT_PATTERN.search(text)
        if match and match.group(1) == ROOT_TAG:
            return BrokerFormat.IBKR_FLEX_XML
        raise ParsingFailed(f"Unsupported XML document, expected <{ROOT_TAG}>")

    first_line = text.splitlines()[0]
    header = next(csv.reader([first_line]), [])

    if is_degiro_header(header):
        return BrokerFormat.DEGIRO_CSV
    if is_taxfolio_header(header):
        return BrokerFormat.TAXFOLIO_CSV

    hint = f" ({filename})" if filename else ""
    raise ParsingFailed(f"Unrecognised file format{hint}: header '{first_line[:80]}'")


def get_parser(fmt: BrokerFormat, deadline: Optional[Deadline] = None) -> BrokerParser:
    try:
        parser_class = PARSERS[fmt]
    except KeyError:
        raise ParsingFailed(f"No parser available for format: {fmt}")
    return parser_class(deadline)


@dataclass
class ParsedFile:
    broker_format: BrokerFormat
    transactions: list[RawTransaction]
    duplicates_dropped: int = 0


def parse_file(
    content: Union[bytes, str],
    filename: Optional[str] = None,
    deadline: Optional[Deadline] = None,
) -> ParsedFile:
    """
    Parse an uploaded file into hashed, de-duplicated records, oldest first.

    Raises:
        ParsingFailed: on unknown formats or malformed rows
        ProcessingTimeout: ``deadline`` expired while parsing
    """
    text = decode_content(content)
    fmt = detect_format(text, filename)
    logger.info(f"Detected {fmt.value} for {filename or 'upload'}")

    records = [tx.with_hash() for tx in get_parser(fmt, deadline).parse(text)]
    unique = drop_duplicates(records)
    dropped = len(records) - len(unique)
    if dropped:
        logger.info(f"Dropped {dropped} duplicate rows within {filename or 'upload'}")
    return ParsedFile(broker_format=fmt, transactions=unique, duplicates_dropped=dropped)

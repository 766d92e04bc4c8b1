"""
Upload ingestion and report queries.

One upload runs through:

1. size check
2. parsing (bounded by the parse timeout)
3. conversion of every record to EUR at its trade date
4. under the user's lock, in one database transaction:
   store the new records, replay all of the user's records through the lot
   matching engine and aggregate the report
5. after commit, replace the cached report

Any failure before commit rolls the batch back and leaves the previously
cached report as it was.
"""

import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Optional, Union

from sqlalchemy.orm import Session, sessionmaker

from ..config import Settings
from ..errors import FileTooLarge, IngestionCancelled, NotFound, ProcessingTimeout
from ..logging_config import StepTimer, setup_logger
from ..models.entities import utc_now
from ..parsers.base import BrokerFormat, Deadline, RawTransaction
from ..parsers.factory import ParsedFile, parse_file
from .aggregator import (
    PositionSummary,
    YearlyRealized,
    cash_movements,
    dividend_events,
    dividend_tax_summary,
    fee_details,
    holdings_by_instrument,
    realized_by_year,
)
from .country_codes import CountryDirectory
from .currency_converter import CurrencyConverter, RateTable
from .lot_matching import LotMatchingEngine
from .result_cache import ResultCache, UploadResult, UserLockRegistry
from .transaction_store import TransactionStore

logger = setup_logger(__name__)

ZERO_CENTS = Decimal("0.00")


@dataclass(frozen=True)
class UploadSummary:
    """Outcome of one upload."""
    upload_id: int
    broker_format: BrokerFormat
    rows_parsed: int
    rows_stored: int
    duplicates_skipped: int
    result: UploadResult


class UploadService:
    """Ingests uploads and answers report queries for users."""

    def __init__(
        self,
        store: TransactionStore,
        cache: ResultCache,
        converter: CurrencyConverter,
        engine: LotMatchingEngine,
        countries: Optional[CountryDirectory] = None,
        locks: Optional[UserLockRegistry] = None,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.cache = cache
        self.converter = converter
        self.engine = engine
        self.countries = countries or CountryDirectory()
        self.locks = locks or UserLockRegistry()
        self.settings = settings or Settings()
        # Parsing runs off the request thread so it can be abandoned on timeout
        workers = self.settings.parse_workers
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="taxfolio-parse")
        # A slot is held until the worker really finishes, not until the caller gives up
        self._parse_slots = threading.BoundedSemaphore(workers)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_factory: sessionmaker,
        cache: ResultCache,
    ) -> "UploadService":
        if settings.exchange_rates_path and settings.exchange_rates_path.exists():
            rates = RateTable.from_ecb_json(settings.exchange_rates_path)
        else:
            logger.warning("No exchange rate file configured, only EUR amounts can be converted")
            rates = RateTable()

        if settings.country_data_path and settings.country_data_path.exists():
            countries = CountryDirectory.from_json(settings.country_data_path)
        else:
            countries = CountryDirectory()

        return cls(
            store=TransactionStore(session_factory),
            cache=cache,
            converter=CurrencyConverter(rates, settings.reporting_currency),
            engine=LotMatchingEngine.from_settings(settings),
            countries=countries,
            locks=UserLockRegistry(timeout_seconds=settings.parse_timeout_seconds + settings.storage_timeout_seconds),
            settings=settings,
        )

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def process_upload(
        self,
        user_id: int,
        content: Union[bytes, str],
        filename: Optional[str] = None,
        cancel: Optional[threading.Event] = None,
    ) -> UploadSummary:
        """
        Ingest one file for a user and return the refreshed report.

        Raises:
            FileTooLarge: the file exceeds the upload limit
            ParsingFailed: the file is malformed or in an unknown format
            ProcessingTimeout: parsing or the user lock took too long
            RateUnavailable: a record's currency has no rate at its date
            InsufficientLot: a sale exceeds the open quantity of a stock
            UnsupportedCorporateAction: a corporate action other than split or merger
            StorageError: the database failed after retrying
            IngestionCancelled: ``cancel`` was set before commit
        """
        size = len(content)
        if size > self.settings.max_upload_size_bytes:
            raise FileTooLarge(
                f"File is {size} bytes, the limit is {self.settings.max_upload_size_bytes} bytes"
            )

        with StepTimer(logger, f"parse {filename or 'upload'}"):
            parsed = self._parse_with_timeout(content, filename)
        _check_cancelled(cancel)

        with StepTimer(logger, f"convert {len(parsed.transactions)} records"):
            converted = [self.enrich(tx) for tx in parsed.transactions]

        with self.locks.hold(user_id):
            upload_id, stored, result = self.store.run(
                lambda session: self._ingest(session, user_id, parsed, converted, filename, cancel),
                description=f"ingestion for user {user_id}",
            )
            self._publish(user_id, result)

        logger.info(
            f"User {user_id}: stored {stored} of {len(converted)} records from "
            f"{filename or 'upload'} ({parsed.broker_format.value})"
        )
        return UploadSummary(
            upload_id=upload_id,
            broker_format=parsed.broker_format,
            rows_parsed=len(parsed.transactions) + parsed.duplicates_dropped,
            rows_stored=stored,
            duplicates_skipped=len(converted) - stored + parsed.duplicates_dropped,
            result=result,
        )

    def _parse_with_timeout(self, content, filename) -> ParsedFile:
        if not self._parse_slots.acquire(blocking=False):
            logger.warning(f"Rejecting {filename or 'upload'}: all parse workers are busy")
            raise ProcessingTimeout("All parse workers are busy, try again later")

        timeout = self.settings.parse_timeout_seconds
        deadline = Deadline(timeout)
        try:
            future = self._executor.submit(parse_file, content, filename, deadline)
        except RuntimeError:
            self._parse_slots.release()
            raise
        future.add_done_callback(lambda _: self._parse_slots.release())

        try:
            return future.result(timeout=timeout)
        except FuturesTimeout:
            # The worker stops at its next row
            deadline.abandon()
            logger.error(f"Parsing {filename or 'upload'} exceeded {timeout}s")
            raise ProcessingTimeout(f"Parsing took longer than {timeout} seconds")

    def enrich(self, tx: RawTransaction) -> RawTransaction:
        """
        Attach EUR amounts and the source country. Computed once, at ingestion.

        Raises:
            RateUnavailable: no rate for the record's currency and date
        """
        converted = self.converter.convert(tx.amount, tx.currency, tx.trade_date)
        if tx.commission:
            commission_currency = tx.commission_currency or tx.currency
            commission_eur = self.converter.convert(tx.commission, commission_currency, tx.trade_date).amount
        else:
            commission_eur = ZERO_CENTS

        return replace(
            tx,
            exchange_rate=converted.rate,
            amount_eur=converted.amount,
            commission_eur=commission_eur,
            country_code=CountryDirectory.code_for_isin(tx.instrument),
        )

    def _ingest(
        self,
        session: Session,
        user_id: int,
        parsed: ParsedFile,
        converted: list[RawTransaction],
        filename: Optional[str],
        cancel: Optional[threading.Event],
    ) -> tuple[int, int, UploadResult]:
        upload = self.store.create_upload(
            session, user_id, parsed.broker_format, filename, len(parsed.transactions)
        )
        stored = self.store.add_transactions(session, user_id, upload, converted)
        result = self._compute(session, user_id)
        # Last point where the batch can still be rolled back
        _check_cancelled(cancel)
        return upload.id, len(stored), result

    def _compute(self, session: Session, user_id: int) -> UploadResult:
        transactions = self.store.list_transactions(session, user_id)
        with StepTimer(logger, f"recompute user {user_id} ({len(transactions)} records)"):
            matching = self.engine.match(transactions)
            events = dividend_events(transactions, self.countries)
            return UploadResult(
                stock_sales=tuple(matching.stock_sales),
                stock_holdings=tuple(matching.stock_holdings),
                option_sales=tuple(matching.option_sales),
                option_holdings=tuple(matching.option_holdings),
                dividend_events=tuple(events),
                dividend_tax_summary=dividend_tax_summary(events),
                cash_movements=tuple(cash_movements(transactions)),
                fees=tuple(fee_details(transactions)),
                computed_at=utc_now(),
                transaction_count=len(transactions),
            )

    def _publish(self, user_id: int, result: UploadResult) -> None:
        try:
            self.cache.store(user_id, result)
        except Exception:
            # A stale report must not outlive the committed transactions
            logger.exception(f"Storing result for user {user_id} failed, invalidating")
            self.cache.invalidate(user_id)
            raise

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_latest_result(self, user_id: int) -> UploadResult:
        """
        The user's current report, recomputed from storage if the cache lost it.

        Raises:
            NotFound: the user has no transactions
        """
        try:
            return self.cache.get(user_id)
        except NotFound:
            pass

        with self.locks.hold(user_id):
            # Another request may have filled it while we waited
            try:
                return self.cache.get(user_id)
            except NotFound:
                pass

            def recompute(session: Session) -> Optional[UploadResult]:
                if self.store.count(session, user_id) == 0:
                    return None
                return self._compute(session, user_id)

            result = self.store.run(recompute, description=f"recompute for user {user_id}")
            if result is None:
                raise NotFound(user_id)
            self._publish(user_id, result)
            return result

    def get_stock_sales(self, user_id: int):
        return list(self.get_latest_result(user_id).stock_sales)

    def get_option_sales(self, user_id: int):
        return list(self.get_latest_result(user_id).option_sales)

    def get_stock_holdings(self, user_id: int):
        return list(self.get_latest_result(user_id).stock_holdings)

    def get_option_holdings(self, user_id: int):
        return list(self.get_latest_result(user_id).option_holdings)

    def get_stock_positions(self, user_id: int) -> list[PositionSummary]:
        return holdings_by_instrument(self.get_latest_result(user_id).stock_holdings)

    def get_realized_by_year(self, user_id: int) -> dict[str, dict[int, YearlyRealized]]:
        result = self.get_latest_result(user_id)
        return {
            "stocks": realized_by_year(result.stock_sales),
            "options": realized_by_year(result.option_sales),
        }

    def get_dividend_tax_summary(self, user_id: int):
        return self.get_latest_result(user_id).dividend_tax_summary

    def get_dividend_transactions(self, user_id: int):
        return list(self.get_latest_result(user_id).dividend_events)

    def get_cash_movements(self, user_id: int):
        return list(self.get_latest_result(user_id).cash_movements)

    def get_fees(self, user_id: int):
        return list(self.get_latest_result(user_id).fees)

    def get_transactions(self, user_id: int) -> list[RawTransaction]:
        """The user's stored, converted records, newest first. Empty when there are none."""
        transactions = self.store.run(
            lambda session: self.store.list_transactions(session, user_id),
            description=f"transaction listing for user {user_id}",
        )
        return transactions[::-1]

    def has_data(self, user_id: int) -> bool:
        return self.store.run(
            lambda session: self.store.count(session, user_id) > 0,
            description=f"data check for user {user_id}",
        )

    def delete_all_transactions(self, user_id: int) -> int:
        """Purge the user's transactions and report. Returns the number of records removed."""
        with self.locks.hold(user_id):
            deleted = self.store.run(
                lambda session: self.store.delete_user(session, user_id),
                description=f"purge for user {user_id}",
            )
            self.cache.invalidate(user_id)
        return deleted

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)


def _check_cancelled(cancel: Optional[threading.Event]) -> None:
    if cancel is not None and cancel.is_set():
        raise IngestionCancelled("Upload was cancelled before it was committed")

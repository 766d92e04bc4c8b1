"""
Tests for upload ingestion and report queries.

Tests cover:
- Re-uploading a file stores nothing new
- EUR amounts frozen at ingestion
- Failed uploads rolling back and keeping the previous report
- Cancellation, size limit and purge
- Recomputing a lost cached report from storage
- Busy and timed-out parse workers
- Splits and same-minute trades replayed from storage
"""
import threading
import time
from dataclasses import replace
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from taxfolio.errors import (
    FileTooLarge,
    IngestionCancelled,
    InsufficientLot,
    NotFound,
    ParsingFailed,
    ProcessingTimeout,
    RateUnavailable,
    StorageError,
)
from taxfolio.parsers.base import BrokerFormat
from taxfolio.services import UploadService, ingestion_service

HEADER = "date,time,kind,side,isin,product,quantity,price,currency,commission,sub_type"

BUYS = "\n".join([
    HEADER,
    "2024-01-05,10:00,stock,buy,US0378331005,APPLE INC,10,100,USD,1,",
    "2024-01-08,10:00,stock,buy,US0378331005,APPLE INC,5,110,USD,1,",
    "2024-01-09,09:00,cash,,,,,,EUR,,deposit",
])

SELL = "\n".join([
    HEADER,
    "2024-06-03,15:00,stock,sell,US0378331005,APPLE INC,12,150,USD,1,",
])

OVERSELL = "\n".join([
    HEADER,
    "2024-06-03,15:00,stock,sell,US0378331005,APPLE INC,100,150,USD,1,",
])

DIVIDENDS = "\n".join([
    "date,kind,isin,product,amount,currency,sub_type",
    "2024-02-16,dividend,US0378331005,APPLE INC,2.40,USD,",
    "2024-02-16,dividend,US0378331005,APPLE INC,-0.36,USD,tax",
])

REVERSE_SPLIT = "\n".join([
    "date,time,kind,side,isin,product,quantity,price,currency,sub_type,ratio,ratio_base",
    "2024-01-05,10:00,stock,buy,US0378331005,APPLE INC,300,10,EUR,,,",
    "2024-03-01,09:00,corporate_action,,US0378331005,APPLE INC,,,EUR,split,1,3",
    "2024-06-03,15:00,stock,sell,US0378331005,APPLE INC,100,35,EUR,,,",
])

DEGIRO_ROUND_TRIP = "\n".join([
    "Data,Hora,Data Valor,Produto,ISIN,Descrição,Taxa de Câmbio,Variação,,Saldo,,ID da Ordem",
    '15-01-2024,09:30,15-01-2024,APPLE INC,US0378331005,"Venda 10 APPLE INC@155 EUR",,EUR,"1550,00",EUR,"1550,00",o-2',
    '15-01-2024,09:30,15-01-2024,APPLE INC,US0378331005,"Compra 10 APPLE INC@150 EUR",,EUR,"-1500,00",EUR,"0,00",o-1',
])


class CancelAfter:
    """Reports cancellation from the n-th check on."""

    def __init__(self, checks):
        self.checks = checks
        self.calls = 0

    def is_set(self):
        self.calls += 1
        return self.calls > self.checks


def stored_count(service, user_id):
    return service.store.run(lambda session: service.store.count(session, user_id))


class TestProcessUpload:
    """Happy path and idempotency."""

    def test_first_upload(self, upload_service):
        summary = upload_service.process_upload(1, BUYS, "buys.csv")
        assert summary.broker_format == BrokerFormat.TAXFOLIO_CSV
        assert summary.rows_parsed == 3
        assert summary.rows_stored == 3
        assert summary.duplicates_skipped == 0
        assert summary.result.transaction_count == 3
        assert len(summary.result.stock_holdings) == 2
        assert len(summary.result.cash_movements) == 1

    def test_amounts_converted_at_trade_date(self, upload_service):
        summary = upload_service.process_upload(1, BUYS)
        first_lot = summary.result.stock_holdings[0]
        assert first_lot.exchange_rate == Decimal("1.0956")
        # 1000 USD / 1.0956
        assert first_lot.open_amount_eur == Decimal("912.74")
        assert first_lot.commission_eur == Decimal("0.91")
        assert first_lot.country_code == "US"

    def test_reupload_is_idempotent(self, upload_service):
        first = upload_service.process_upload(1, BUYS)
        second = upload_service.process_upload(1, BUYS)
        assert second.rows_stored == 0
        assert second.duplicates_skipped == 3
        assert second.result.transaction_count == first.result.transaction_count
        assert stored_count(upload_service, 1) == 3

    def test_later_upload_matches_earlier_lots(self, upload_service):
        upload_service.process_upload(1, BUYS)
        summary = upload_service.process_upload(1, SELL)
        sales = summary.result.stock_sales
        assert [s.quantity for s in sales] == [Decimal("10"), Decimal("2")]
        # 1800 USD at 1.0000 apportioned 10/12 and 2/12
        assert sales[0].close_amount_eur == Decimal("1500.00")
        assert sales[1].close_amount_eur == Decimal("300.00")
        assert summary.result.stock_holdings[0].quantity == Decimal("3")

    def test_dividends_summarised(self, upload_service):
        summary = upload_service.process_upload(1, DIVIDENDS)
        assert summary.result.dividend_tax_summary[2024]["US"]["taxed_amt"] == Decimal("0.33")
        assert len(summary.result.dividend_events) == 1

    def test_reverse_split_survives_storage(self, upload_service):
        result = upload_service.process_upload(1, REVERSE_SPLIT).result
        assert len(result.stock_sales) == 1
        sale = result.stock_sales[0]
        assert sale.quantity == Decimal("100")
        assert sale.open_amount_eur == Decimal("3000.00")
        assert sale.delta == Decimal("500.00")
        assert result.stock_holdings == ()

    def test_degiro_same_minute_round_trip(self, upload_service):
        result = upload_service.process_upload(1, DEGIRO_ROUND_TRIP, "account.csv").result
        assert len(result.stock_sales) == 1
        assert result.stock_sales[0].delta == Decimal("50.00")
        assert result.stock_holdings == ()

    def test_users_are_isolated(self, upload_service):
        upload_service.process_upload(1, BUYS)
        with pytest.raises(NotFound):
            upload_service.get_latest_result(2)


class TestStoredAmountsAreFrozen:
    def test_new_rates_do_not_change_stored_records(self, upload_service, rate_table):
        before = upload_service.process_upload(1, BUYS).result.stock_holdings[0]
        rate_table.add_rate("USD", date(2024, 1, 4), Decimal("1.2000"))
        after = upload_service.process_upload(1, DIVIDENDS).result.stock_holdings[0]
        assert after.open_amount_eur == before.open_amount_eur
        assert after.exchange_rate == before.exchange_rate


class TestFailedUploads:
    """Nothing is stored and the previous report stays in place."""

    def test_oversell_rolls_back(self, upload_service):
        upload_service.process_upload(1, BUYS)
        with pytest.raises(InsufficientLot):
            upload_service.process_upload(1, OVERSELL)
        assert stored_count(upload_service, 1) == 3
        assert upload_service.get_latest_result(1).transaction_count == 3

    def test_missing_rate(self, upload_service):
        content = HEADER + "\n2019-01-05,10:00,stock,buy,US0378331005,APPLE INC,1,100,USD,,\n"
        with pytest.raises(RateUnavailable):
            upload_service.process_upload(1, content)
        assert stored_count(upload_service, 1) == 0

    def test_malformed_file(self, upload_service):
        with pytest.raises(ParsingFailed):
            upload_service.process_upload(1, HEADER + "\nnot-a-date,,stock,buy,X,X,1,1,EUR,,\n")

    def test_cancelled_before_commit(self, upload_service):
        upload_service.process_upload(1, BUYS)
        # Passes the check after parsing, trips the one before commit
        with pytest.raises(IngestionCancelled):
            upload_service.process_upload(1, SELL, cancel=CancelAfter(1))
        assert stored_count(upload_service, 1) == 3
        assert upload_service.get_stock_sales(1) == []

    def test_file_too_large(self, upload_service):
        upload_service.settings = replace(upload_service.settings, max_upload_size_bytes=10)
        with pytest.raises(FileTooLarge):
            upload_service.process_upload(1, BUYS)


class TestParseWorkers:
    """Parsing is bounded and a stuck parse does not hold up later uploads."""

    @pytest.fixture
    def single_worker(self, upload_service, settings):
        service = UploadService(
            store=upload_service.store,
            cache=upload_service.cache,
            converter=upload_service.converter,
            engine=upload_service.engine,
            settings=replace(settings, parse_workers=1, parse_timeout_seconds=0.2),
        )
        yield service
        service.shutdown()

    def test_busy_workers_reject_new_parses(self, single_worker, monkeypatch):
        started, release = threading.Event(), threading.Event()
        parse = ingestion_service.parse_file

        def slow_parse(content, filename=None, deadline=None):
            started.set()
            release.wait(5)
            return parse(content, filename)

        monkeypatch.setattr(ingestion_service, "parse_file", slow_parse)
        errors = []

        def first_upload():
            try:
                single_worker.process_upload(1, BUYS)
            except ProcessingTimeout as e:
                errors.append(e)

        thread = threading.Thread(target=first_upload)
        thread.start()
        assert started.wait(5)
        with pytest.raises(ProcessingTimeout, match="busy"):
            single_worker.process_upload(2, BUYS)
        release.set()
        thread.join()

    def test_timed_out_parse_is_abandoned(self, single_worker, monkeypatch):
        stopped = threading.Event()

        def stuck_parse(content, filename=None, deadline=None):
            try:
                while True:
                    deadline.check()
                    time.sleep(0.01)
            finally:
                stopped.set()

        monkeypatch.setattr(ingestion_service, "parse_file", stuck_parse)
        with pytest.raises(ProcessingTimeout):
            single_worker.process_upload(1, BUYS)
        assert stopped.wait(5)


class TestQueries:
    """Report accessors."""

    @pytest.fixture
    def loaded(self, upload_service):
        upload_service.process_upload(1, BUYS)
        upload_service.process_upload(1, SELL)
        upload_service.process_upload(1, DIVIDENDS)
        return upload_service

    def test_no_data(self, upload_service):
        with pytest.raises(NotFound):
            upload_service.get_stock_sales(1)

    def test_accessors(self, loaded):
        assert len(loaded.get_stock_sales(1)) == 2
        assert loaded.get_option_sales(1) == []
        assert len(loaded.get_stock_holdings(1)) == 1
        assert loaded.get_stock_positions(1)[0].quantity == Decimal("3")
        assert list(loaded.get_realized_by_year(1)["stocks"]) == [2024]
        assert len(loaded.get_dividend_transactions(1)) == 1
        assert len(loaded.get_cash_movements(1)) == 1
        assert len(loaded.get_fees(1)) == 3

    def test_recomputed_when_cache_lost(self, loaded):
        expected = loaded.get_latest_result(1)
        loaded.cache.invalidate(1)
        result = loaded.get_latest_result(1)
        assert result.transaction_count == expected.transaction_count
        assert result.stock_sales == expected.stock_sales

    def test_transactions_newest_first(self, loaded):
        transactions = loaded.get_transactions(1)
        assert len(transactions) == 6
        timestamps = [tx.timestamp for tx in transactions]
        assert timestamps == sorted(timestamps, reverse=True)
        assert all(tx.amount_eur is not None for tx in transactions)

    def test_transactions_empty(self, upload_service):
        assert upload_service.get_transactions(1) == []

    def test_has_data(self, loaded):
        assert loaded.has_data(1)
        assert not loaded.has_data(2)

    def test_delete_all(self, loaded):
        assert loaded.delete_all_transactions(1) == 6
        assert stored_count(loaded, 1) == 0
        with pytest.raises(NotFound):
            loaded.get_latest_result(1)


class TestTransactionStore:
    """Retry of transient storage errors."""

    @staticmethod
    def failing(times):
        calls = []

        def operation(session):
            calls.append(1)
            if len(calls) <= times:
                raise OperationalError("SELECT 1", {}, Exception("database is locked"))
            return "done"

        return operation, calls

    def test_retried_once(self, upload_service):
        operation, calls = self.failing(1)
        assert upload_service.store.run(operation) == "done"
        assert len(calls) == 2

    def test_gives_up_after_retry(self, upload_service):
        operation, calls = self.failing(2)
        with pytest.raises(StorageError):
            upload_service.store.run(operation)
        assert len(calls) == 2

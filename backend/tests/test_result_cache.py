"""
Tests for the per-user result cache and user locks.
"""
import threading
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from taxfolio.errors import NotFound, ProcessingTimeout
from taxfolio.parsers.base import Side
from taxfolio.services import (
    InMemoryResultCache,
    LotMatchingEngine,
    SQLResultCache,
    UploadResult,
    UserLockRegistry,
)
from taxfolio.services.result_cache import dump_result, load_result


@pytest.fixture
def sample_result(make_trade):
    txs = [
        make_trade(Side.BUY, 10, 100, datetime(2024, 1, 1), commission="1"),
        make_trade(Side.SELL, 4, 120, datetime(2024, 2, 1)),
    ]
    matched = LotMatchingEngine().match(txs)
    return UploadResult(
        stock_sales=tuple(matched.stock_sales),
        stock_holdings=tuple(matched.stock_holdings),
        dividend_tax_summary={2024: {"US": {"gross_amt": Decimal("1.00"), "taxed_amt": Decimal("0.15")}}},
        transaction_count=2,
    )


@pytest.fixture(params=["memory", "sql"])
def cache(request, session_factory):
    if request.param == "memory":
        return InMemoryResultCache()
    return SQLResultCache(session_factory)


class TestResultCache:
    """Both backends behave the same."""

    def test_missing_user(self, cache):
        with pytest.raises(NotFound):
            cache.get(1)

    def test_store_and_get(self, cache, sample_result):
        cache.store(1, sample_result)
        result = cache.get(1)
        assert result.transaction_count == 2
        assert result.stock_sales[0].delta == sample_result.stock_sales[0].delta
        assert result.stock_holdings[0].quantity == Decimal("6")
        assert result.dividend_tax_summary[2024]["US"]["taxed_amt"] == Decimal("0.15")

    def test_store_replaces(self, cache, sample_result):
        cache.store(1, sample_result)
        cache.store(1, UploadResult(transaction_count=7))
        assert cache.get(1).transaction_count == 7
        assert cache.get(1).stock_sales == ()

    def test_users_isolated(self, cache, sample_result):
        cache.store(1, sample_result)
        with pytest.raises(NotFound):
            cache.get(2)

    def test_invalidate(self, cache, sample_result):
        cache.store(1, sample_result)
        cache.invalidate(1)
        cache.invalidate(1)
        with pytest.raises(NotFound):
            cache.get(1)


class TestSerialization:
    def test_json_keeps_decimals_and_years(self, sample_result):
        restored = load_result(dump_result(sample_result))
        assert restored.stock_sales == sample_result.stock_sales
        assert list(restored.dividend_tax_summary) == [2024]
        assert isinstance(restored.stock_sales[0].delta, Decimal)


class TestTimestamps:
    def test_computed_at_is_naive_utc(self):
        before = datetime.now(timezone.utc).replace(tzinfo=None)
        computed_at = UploadResult().computed_at
        assert computed_at.tzinfo is None
        assert before <= computed_at <= datetime.now(timezone.utc).replace(tzinfo=None)


class TestConcurrentAccess:
    """Readers see a whole snapshot, old or new."""

    def test_reader_never_sees_partial_result(self, sample_result):
        cache = InMemoryResultCache()
        first = UploadResult(transaction_count=1)
        cache.store(1, first)
        seen = []
        done = threading.Event()

        def reader():
            while not done.is_set():
                seen.append(cache.get(1))

        thread = threading.Thread(target=reader)
        thread.start()
        for _ in range(200):
            cache.store(1, sample_result)
            cache.store(1, first)
        done.set()
        thread.join()

        assert all(result in (first, sample_result) for result in seen)


class TestUserLockRegistry:
    def test_same_user_times_out(self):
        locks = UserLockRegistry(timeout_seconds=0.05)
        with locks.hold(1):
            errors = []

            def contender():
                try:
                    with locks.hold(1):
                        pass
                except ProcessingTimeout as e:
                    errors.append(e)

            thread = threading.Thread(target=contender)
            thread.start()
            thread.join()
        assert len(errors) == 1

    def test_other_users_not_blocked(self):
        locks = UserLockRegistry(timeout_seconds=0.05)
        with locks.hold(1):
            with locks.hold(2):
                pass

    def test_released_after_error(self):
        locks = UserLockRegistry(timeout_seconds=0.05)
        with pytest.raises(RuntimeError):
            with locks.hold(1):
                raise RuntimeError("boom")
        with locks.hold(1):
            pass

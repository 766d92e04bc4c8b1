"""
Pytest configuration and fixtures.
"""
import os
import sys
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path

import pytest

# Keep the module-level engine off the real database file
os.environ.setdefault("DATABASE_URL", "sqlite://")

# Make the taxfolio package importable without installing it
sys.path.insert(0, str(Path(__file__).parent.parent))

from taxfolio.models import create_db_engine, create_session_factory, init_db
from taxfolio.parsers.base import RawTransaction, Side, TransactionKind
from taxfolio.services import (
    CurrencyConverter,
    InMemoryResultCache,
    LotMatchingEngine,
    RateTable,
    TransactionStore,
    UploadService,
)
from taxfolio.config import Settings

@pytest.fixture
def rate_table():
    """USD and GBP rates around the turn of 2023/2024 (units per EUR)."""
    rates = RateTable()
    rates.add_rate("USD", date(2023, 1, 2), Decimal("1.0683"))
    rates.add_rate("USD", date(2023, 6, 1), Decimal("1.0700"))
    rates.add_rate("USD", date(2024, 1, 2), Decimal("1.0956"))
    rates.add_rate("USD", date(2024, 6, 3), Decimal("1.0000"))
    rates.add_rate("GBP", date(2024, 1, 2), Decimal("0.8670"))
    return rates


@pytest.fixture
def make_trade():
    """Build an already converted trade. EUR amounts equal the original ones by default."""
    sequence = iter(range(1, 10_000))

    def _make(
        side,
        quantity,
        price,
        when,
        instrument="US0378331005",
        kind=TransactionKind.STOCK,
        commission="0",
        currency="EUR",
        rate="1",
        product_name="APPLE INC",
        order_id="",
        sub_type="",
    ):
        quantity = Decimal(str(quantity))
        price = Decimal(str(price))
        rate = Decimal(str(rate))
        gross = quantity * price
        amount = -gross if side == Side.BUY else gross
        commission = Decimal(str(commission))
        return RawTransaction(
            timestamp=when if isinstance(when, datetime) else datetime.combine(when, datetime.min.time()),
            source="test",
            kind=kind,
            instrument=instrument,
            product_name=product_name,
            row_number=next(sequence),
            side=side,
            sub_type=sub_type,
            quantity=quantity,
            unit_price=price,
            amount=amount,
            currency=currency,
            commission=commission,
            order_id=order_id,
            exchange_rate=rate,
            amount_eur=(amount / rate).quantize(Decimal("0.01")),
            commission_eur=(commission / rate).quantize(Decimal("0.01")),
            country_code=instrument[:2] if len(instrument) == 12 else "",
        ).with_hash()

    return _make


@pytest.fixture
def db_engine():
    """A fresh in-memory database per test."""
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest.fixture
def settings():
    return Settings(database_url="sqlite://", parse_timeout_seconds=10, storage_timeout_seconds=5)


@pytest.fixture
def upload_service(session_factory, rate_table, settings):
    service = UploadService(
        store=TransactionStore(session_factory),
        cache=InMemoryResultCache(),
        converter=CurrencyConverter(rate_table),
        engine=LotMatchingEngine(),
        settings=settings,
    )
    yield service
    service.shutdown()


@pytest.fixture
def client(upload_service, db_engine, settings):
    from fastapi.testclient import TestClient
    from taxfolio.main import create_app

    app = create_app(service=upload_service, db_engine=db_engine, settings=settings)
    with TestClient(app) as test_client:
        yield test_client

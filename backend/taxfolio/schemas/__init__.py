from pydantic import BaseModel
from datetime import datetime
from decimal import Decimal
from typing import Optional


class StockSaleResponse(BaseModel):
    open_date: datetime
    close_date: datetime
    product_name: str
    instrument: str
    quantity: Decimal
    open_price: Decimal
    close_price: Decimal
    open_amount: Decimal
    close_amount: Decimal
    open_amount_eur: Decimal
    close_amount_eur: Decimal
    open_exchange_rate: Decimal
    close_exchange_rate: Decimal
    commission: Decimal
    delta: Decimal
    currency: str
    country_code: str
    open_order_id: str
    close_order_id: str

    class Config:
        from_attributes = True


class OptionSaleResponse(StockSaleResponse):
    position: str  # "long" or "short"


class HoldingResponse(BaseModel):
    """One open lot. Short lots have a negative quantity."""
    instrument: str
    product_name: str
    open_date: datetime
    quantity: Decimal
    unit_price: Decimal
    open_amount: Decimal
    open_amount_eur: Decimal
    commission_eur: Decimal
    currency: str
    exchange_rate: Decimal
    order_id: str
    country_code: str

    class Config:
        from_attributes = True


class PositionResponse(BaseModel):
    instrument: str
    product_name: str
    quantity: Decimal
    open_amount_eur: Decimal
    commission_eur: Decimal
    currency: str
    lots: int

    class Config:
        from_attributes = True


class YearlyRealizedResponse(BaseModel):
    year: int
    sales: int
    close_amount_eur: Decimal
    open_amount_eur: Decimal
    commission: Decimal
    delta: Decimal

    class Config:
        from_attributes = True


class DividendEventResponse(BaseModel):
    date: datetime
    instrument: str
    product_name: str
    country: str
    country_code: str
    gross_amount_eur: Decimal
    withheld_tax_eur: Decimal
    amount: Decimal
    currency: str

    class Config:
        from_attributes = True


class CashMovementResponse(BaseModel):
    date: datetime
    type: str
    amount: Decimal
    currency: str
    amount_eur: Decimal
    order_id: str

    class Config:
        from_attributes = True


class FeeResponse(BaseModel):
    date: datetime
    description: str
    amount_eur: Decimal
    source: str
    category: str

    class Config:
        from_attributes = True


class ProcessedTransactionResponse(BaseModel):
    """A stored record with the EUR amounts fixed at ingestion."""
    timestamp: datetime
    source: str
    kind: str
    side: Optional[str] = None
    sub_type: str
    instrument: str
    product_name: str
    description: str
    order_id: str
    quantity: Decimal
    unit_price: Decimal
    amount: Decimal
    currency: str
    commission: Decimal
    commission_currency: str
    exchange_rate: Optional[Decimal] = None
    amount_eur: Optional[Decimal] = None
    commission_eur: Optional[Decimal] = None
    country_code: str
    hash_id: str

    @classmethod
    def from_record(cls, tx) -> "ProcessedTransactionResponse":
        return cls(
            **{name: getattr(tx, name) for name in cls.model_fields if name not in ("kind", "side")},
            kind=tx.kind.value,
            side=tx.side.value if tx.side else None,
        )


class HasDataResponse(BaseModel):
    has_data: bool


# {year: {country: {"gross_amt": ..., "taxed_amt": ...}}}
DividendTaxSummary = dict[int, dict[str, dict[str, Decimal]]]


class RealizedGainsResponse(BaseModel):
    stock_sales: list[StockSaleResponse]
    stock_holdings: list[HoldingResponse]
    option_sales: list[OptionSaleResponse]
    option_holdings: list[HoldingResponse]
    dividend_transactions: list[DividendEventResponse]
    dividend_tax_summary: DividendTaxSummary
    cash_movements: list[CashMovementResponse]
    fees: list[FeeResponse]
    computed_at: datetime
    transaction_count: int

    @classmethod
    def from_result(cls, result) -> "RealizedGainsResponse":
        return cls(
            stock_sales=[StockSaleResponse.model_validate(s) for s in result.stock_sales],
            stock_holdings=[HoldingResponse.model_validate(h) for h in result.stock_holdings],
            option_sales=[OptionSaleResponse.model_validate(s) for s in result.option_sales],
            option_holdings=[HoldingResponse.model_validate(h) for h in result.option_holdings],
            dividend_transactions=[DividendEventResponse.model_validate(e) for e in result.dividend_events],
            dividend_tax_summary=result.dividend_tax_summary,
            cash_movements=[CashMovementResponse.model_validate(m) for m in result.cash_movements],
            fees=[FeeResponse.model_validate(f) for f in result.fees],
            computed_at=result.computed_at,
            transaction_count=result.transaction_count,
        )


class UploadResponse(BaseModel):
    success: bool
    message: str
    upload_id: int
    broker_format: str
    rows_parsed: int
    rows_stored: int
    duplicates_skipped: int
    transaction_count: int


class DeleteResponse(BaseModel):
    success: bool
    transactions_deleted: int


class ErrorResponse(BaseModel):
    category: str
    detail: str
    issues: Optional[list[str]] = None

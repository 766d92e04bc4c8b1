"""Portfolio router: realized gains and open positions."""

from typing import Union

from fastapi import APIRouter, Depends, Query

from ..schemas import (
    HoldingResponse,
    OptionSaleResponse,
    PositionResponse,
    RealizedGainsResponse,
    StockSaleResponse,
    YearlyRealizedResponse,
)
from ..services.ingestion_service import UploadService
from .dependencies import get_upload_service, get_user_id

router = APIRouter(tags=["portfolio"])


@router.get("/realizedgains", response_model=RealizedGainsResponse)
def get_realized_gains(
    user_id: int = Depends(get_user_id),
    service: UploadService = Depends(get_upload_service),
):
    """Full report: sales, holdings, dividends, cash movements and fees."""
    return RealizedGainsResponse.from_result(service.get_latest_result(user_id))


@router.get("/realizedgains/yearly")
def get_realized_by_year(
    user_id: int = Depends(get_user_id),
    service: UploadService = Depends(get_upload_service),
) -> dict[str, list[YearlyRealizedResponse]]:
    """Realized results per tax year, for stocks and options."""
    by_product = service.get_realized_by_year(user_id)
    return {
        product: [YearlyRealizedResponse.model_validate(totals) for totals in years.values()]
        for product, years in by_product.items()
    }


@router.get("/stocks/sales", response_model=list[StockSaleResponse])
def get_stock_sales(
    user_id: int = Depends(get_user_id),
    service: UploadService = Depends(get_upload_service),
):
    return [StockSaleResponse.model_validate(s) for s in service.get_stock_sales(user_id)]


@router.get("/stocks/holdings", response_model=Union[list[HoldingResponse], list[PositionResponse]])
def get_stock_holdings(
    grouped: bool = Query(False, description="Summarize open lots per instrument"),
    user_id: int = Depends(get_user_id),
    service: UploadService = Depends(get_upload_service),
):
    """Open stock lots, oldest first, or one line per instrument with ``grouped``."""
    if grouped:
        return [PositionResponse.model_validate(p) for p in service.get_stock_positions(user_id)]
    return [HoldingResponse.model_validate(h) for h in service.get_stock_holdings(user_id)]


@router.get("/options/sales", response_model=list[OptionSaleResponse])
def get_option_sales(
    user_id: int = Depends(get_user_id),
    service: UploadService = Depends(get_upload_service),
):
    return [OptionSaleResponse.model_validate(s) for s in service.get_option_sales(user_id)]


@router.get("/options/holdings", response_model=list[HoldingResponse])
def get_option_holdings(
    user_id: int = Depends(get_user_id),
    service: UploadService = Depends(get_upload_service),
):
    """Open option positions; short positions have a negative quantity."""
    return [HoldingResponse.model_validate(h) for h in service.get_option_holdings(user_id)]

"""Dividend router."""

from fastapi import APIRouter, Depends

from ..schemas import DividendEventResponse, DividendTaxSummary
from ..services.ingestion_service import UploadService
from .dependencies import get_upload_service, get_user_id

router = APIRouter(prefix="/dividends", tags=["dividends"])


@router.get("/tax-summary", response_model=DividendTaxSummary)
def get_dividend_tax_summary(
    user_id: int = Depends(get_user_id),
    service: UploadService = Depends(get_upload_service),
):
    """Gross dividends and withheld tax in EUR, per year and source country."""
    return service.get_dividend_tax_summary(user_id)


@router.get("/transactions", response_model=list[DividendEventResponse])
def get_dividend_transactions(
    user_id: int = Depends(get_user_id),
    service: UploadService = Depends(get_upload_service),
):
    return [DividendEventResponse.model_validate(e) for e in service.get_dividend_transactions(user_id)]

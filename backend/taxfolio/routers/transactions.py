"""Stored transactions, fees, cash movements and purging."""

from fastapi import APIRouter, Depends

from ..schemas import (
    CashMovementResponse,
    DeleteResponse,
    FeeResponse,
    HasDataResponse,
    ProcessedTransactionResponse,
)
from ..services.ingestion_service import UploadService
from .dependencies import get_upload_service, get_user_id

router = APIRouter(tags=["transactions"])


@router.get("/fees", response_model=list[FeeResponse])
def get_fees(
    user_id: int = Depends(get_user_id),
    service: UploadService = Depends(get_upload_service),
):
    """Stand-alone brokerage fees and trade commissions, as negative EUR amounts."""
    return [FeeResponse.model_validate(f) for f in service.get_fees(user_id)]


@router.get("/cash-movements", response_model=list[CashMovementResponse])
def get_cash_movements(
    user_id: int = Depends(get_user_id),
    service: UploadService = Depends(get_upload_service),
):
    return [CashMovementResponse.model_validate(m) for m in service.get_cash_movements(user_id)]


@router.get("/transactions/processed", response_model=list[ProcessedTransactionResponse])
def get_processed_transactions(
    user_id: int = Depends(get_user_id),
    service: UploadService = Depends(get_upload_service),
):
    """Stored transactions with their EUR amounts, newest first."""
    return [ProcessedTransactionResponse.from_record(tx) for tx in service.get_transactions(user_id)]


@router.get("/user/has-data", response_model=HasDataResponse)
def has_data(
    user_id: int = Depends(get_user_id),
    service: UploadService = Depends(get_upload_service),
):
    return HasDataResponse(has_data=service.has_data(user_id))


@router.delete("/transactions", response_model=DeleteResponse)
def delete_transactions(
    user_id: int = Depends(get_user_id),
    service: UploadService = Depends(get_upload_service),
):
    """Delete every stored transaction of the user and drop the cached report."""
    deleted = service.delete_all_transactions(user_id)
    return DeleteResponse(success=True, transactions_deleted=deleted)

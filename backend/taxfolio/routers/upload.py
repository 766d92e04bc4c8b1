"""Upload router for broker transaction exports."""

from fastapi import APIRouter, Depends, File, UploadFile
from starlette.concurrency import run_in_threadpool

from ..schemas import UploadResponse
from ..services.ingestion_service import UploadService
from .dependencies import get_upload_service, get_user_id

router = APIRouter(tags=["upload"])


@router.post("/upload", response_model=UploadResponse)
async def upload_transactions(
    file: UploadFile = File(...),
    user_id: int = Depends(get_user_id),
    service: UploadService = Depends(get_upload_service),
):
    """
    Upload a DeGiro account CSV, an IBKR Flex Query XML or a normalized CSV.

    The format is detected from the file content. Rows already stored for the
    user are skipped, and the report is recomputed over all stored rows.
    """
    # One byte over the limit is enough to reject the file
    content = await file.read(service.settings.max_upload_size_bytes + 1)

    summary = await run_in_threadpool(service.process_upload, user_id, content, file.filename)

    return UploadResponse(
        success=True,
        message=f"Imported {summary.rows_stored} new transactions from {file.filename}",
        upload_id=summary.upload_id,
        broker_format=summary.broker_format.value,
        rows_parsed=summary.rows_parsed,
        rows_stored=summary.rows_stored,
        duplicates_skipped=summary.duplicates_skipped,
        transaction_count=summary.result.transaction_count,
    )

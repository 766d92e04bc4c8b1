"""Shared request dependencies."""

from fastapi import Header, HTTPException, Request

from ..services.ingestion_service import UploadService


def get_upload_service(request: Request) -> UploadService:
    return request.app.state.upload_service


def get_user_id(x_user_id: str = Header(...)) -> int:
    """
    The caller's user id, set by the authenticating proxy in front of the API.
    """
    try:
        user_id = int(x_user_id)
    except ValueError:
        raise HTTPException(status_code=400, detail="X-User-Id must be an integer")
    if user_id <= 0:
        raise HTTPException(status_code=400, detail="X-User-Id must be positive")
    return user_id

"""
Taxfolio

A FastAPI application computing realized capital gains, option results and
dividend withholding-tax summaries from broker transaction exports.

Supports:
- DeGiro account statement CSV
- Interactive Brokers Flex Query XML
- A normalized CSV for manual entries and corporate actions

All amounts are reported in EUR at the historical ECB rate of each trade date.
"""

from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine

from .config import Settings, get_settings
from .errors import ParsingFailed, TaxfolioError
from .logging_config import setup_logger
from .models import SessionLocal, engine, init_db
from .routers import dividends_router, portfolio_router, transactions_router, upload_router
from .services import SQLResultCache, UploadService

logger = setup_logger(__name__)

# Error category -> HTTP status
STATUS_BY_CATEGORY = {
    "user": 400,
    "empty": 404,
    "processing": 422,
    "retry": 503,
}


def create_app(
    service: Optional[UploadService] = None,
    db_engine: Optional[Engine] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """Build the application. Tests pass their own service and engine."""
    settings = settings or get_settings()
    db_engine = db_engine or engine
    if service is None:
        service = UploadService.from_settings(settings, SessionLocal, SQLResultCache(SessionLocal))

    app = FastAPI(
        title="Taxfolio",
        description="Capital gains and dividend tax reporting from broker exports",
        version="0.1.0",
    )
    app.state.upload_service = service

    app.include_router(upload_router)
    app.include_router(portfolio_router)
    app.include_router(dividends_router)
    app.include_router(transactions_router)

    @app.exception_handler(TaxfolioError)
    async def taxfolio_error_handler(request: Request, exc: TaxfolioError):
        status = STATUS_BY_CATEGORY.get(exc.category, 500)
        if status == 500:
            logger.error(f"Unexpected engine error on {request.url.path}: {exc}")
            return JSONResponse(
                status_code=500,
                content={"category": "internal", "detail": "Internal error, we have a bug"},
            )

        content = {"category": exc.category, "detail": str(exc)}
        if isinstance(exc, ParsingFailed) and exc.issues:
            content["issues"] = [str(issue) for issue in exc.issues]
        logger.info(f"{request.url.path} failed ({exc.category}): {exc}")
        return JSONResponse(status_code=status, content=content)

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.url.path}")
        return JSONResponse(
            status_code=500,
            content={"category": "internal", "detail": "Internal error, we have a bug"},
        )

    @app.on_event("startup")
    async def startup():
        """Initialize database on startup."""
        init_db(db_engine)

    @app.on_event("shutdown")
    async def shutdown():
        service.shutdown()

    @app.get("/")
    async def root():
        """Root endpoint with API info."""
        return {
            "name": "Taxfolio",
            "version": "0.1.0",
            "endpoints": {
                "upload": "/upload",
                "realized_gains": "/realizedgains",
                "stocks": ["/stocks/sales", "/stocks/holdings"],
                "options": ["/options/sales", "/options/holdings"],
                "dividends": ["/dividends/tax-summary", "/dividends/transactions"],
                "fees": "/fees",
                "cash_movements": "/cash-movements",
                "delete": "/transactions",
            },
            "documentation": "/docs",
        }

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)

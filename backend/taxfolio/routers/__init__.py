from .upload import router as upload_router
from .portfolio import router as portfolio_router
from .dividends import router as dividends_router
from .transactions import router as transactions_router

__all__ = ["upload_router", "portfolio_router", "dividends_router", "transactions_router"]

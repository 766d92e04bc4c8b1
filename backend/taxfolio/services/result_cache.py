"""
Latest computed report per user.

A result is one immutable snapshot. ``store`` replaces it whole and ``get``
returns either the old or the new snapshot, never a mix. Two backends share
the ``ResultCache`` interface: a process-local dict and a SQL table holding
one JSON document per user.
"""

import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import TypeAdapter
from sqlalchemy.orm import sessionmaker

from ..errors import NotFound, ProcessingTimeout
from ..logging_config import setup_logger
from ..models.entities import CachedResult, utc_now
from .aggregator import CashMovement, DividendEvent, FeeDetail
from .lot_matching import OptionSale, PurchaseLot, StockSale

logger = setup_logger(__name__)


@dataclass(frozen=True)
class UploadResult:
    """Everything reported to a user, computed from all stored transactions."""
    stock_sales: tuple[StockSale, ...] = ()
    stock_holdings: tuple[PurchaseLot, ...] = ()
    option_sales: tuple[OptionSale, ...] = ()
    option_holdings: tuple[PurchaseLot, ...] = ()
    dividend_events: tuple[DividendEvent, ...] = ()
    dividend_tax_summary: dict[int, dict[str, dict[str, Decimal]]] = field(default_factory=dict)
    cash_movements: tuple[CashMovement, ...] = ()
    fees: tuple[FeeDetail, ...] = ()
    computed_at: datetime = field(default_factory=utc_now)
    transaction_count: int = 0


_result_adapter = TypeAdapter(UploadResult)


def dump_result(result: UploadResult) -> str:
    return _result_adapter.dump_json(result).decode("utf-8")


def load_result(payload: str) -> UploadResult:
    return _result_adapter.validate_json(payload)


class ResultCache(ABC):
    """Keyed store of the current result of each user."""

    @abstractmethod
    def store(self, user_id: int, result: UploadResult) -> None:
        """Replace the user's result."""

    @abstractmethod
    def get(self, user_id: int) -> UploadResult:
        """
        Raises:
            NotFound: no result stored for the user
        """

    @abstractmethod
    def invalidate(self, user_id: int) -> None:
        """Drop the user's result, if any."""


class InMemoryResultCache(ResultCache):
    """Process-local cache. Snapshots are swapped under a lock."""

    def __init__(self):
        self._results: dict[int, UploadResult] = {}
        self._lock = threading.Lock()

    def store(self, user_id: int, result: UploadResult) -> None:
        with self._lock:
            self._results[user_id] = result

    def get(self, user_id: int) -> UploadResult:
        with self._lock:
            result = self._results.get(user_id)
        if result is None:
            raise NotFound(user_id)
        return result

    def invalidate(self, user_id: int) -> None:
        with self._lock:
            self._results.pop(user_id, None)


class SQLResultCache(ResultCache):
    """One JSON row per user in ``cached_results``."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def store(self, user_id: int, result: UploadResult) -> None:
        session = self.session_factory()
        try:
            session.merge(CachedResult(
                user_id=user_id,
                payload=dump_result(result),
                transaction_count=result.transaction_count,
                computed_at=result.computed_at,
            ))
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
        logger.debug(f"Stored result for user {user_id}")

    def get(self, user_id: int) -> UploadResult:
        session = self.session_factory()
        try:
            row = session.get(CachedResult, user_id)
            if row is None:
                raise NotFound(user_id)
            return load_result(row.payload)
        finally:
            session.close()

    def invalidate(self, user_id: int) -> None:
        session = self.session_factory()
        try:
            session.query(CachedResult).filter(CachedResult.user_id == user_id).delete()
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


class UserLockRegistry:
    """
    One lock per user, so ingestion, recompute and purge of the same user
    never interleave. Different users proceed in parallel.
    """

    def __init__(self, timeout_seconds: Optional[float] = None):
        self.timeout_seconds = timeout_seconds
        self._locks: dict[int, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, user_id: int) -> threading.Lock:
        with self._registry_lock:
            return self._locks.setdefault(user_id, threading.Lock())

    @contextmanager
    def hold(self, user_id: int):
        """
        Raises:
            ProcessingTimeout: the lock was not acquired within the timeout
        """
        lock = self._lock_for(user_id)
        timeout = -1 if self.timeout_seconds is None else self.timeout_seconds
        if not lock.acquire(timeout=timeout):
            raise ProcessingTimeout(f"User {user_id} is busy with another upload, try again later")
        try:
            yield
        finally:
            lock.release()

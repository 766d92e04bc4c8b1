"""
Persistent store of normalized transactions.

Records are stored per user with a unique (user_id, hash_id) pair, so the
same export line is never stored twice however often it is uploaded. All
writes of one upload happen in a single database transaction.
"""

from contextlib import contextmanager
from decimal import Decimal
from typing import Callable, Iterable, Optional, TypeVar

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

from ..errors import StorageError
from ..logging_config import setup_logger
from ..models.entities import CachedResult, Transaction, Upload
from ..parsers.base import BrokerFormat, RawTransaction, Side, TransactionKind

logger = setup_logger(__name__)

T = TypeVar("T")

# Transient errors are retried this many times before giving up
MAX_RETRIES = 1


class TransactionStore:
    """SQLAlchemy-backed storage of a user's transactions."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    @contextmanager
    def session_scope(self):
        """Session committed on success and rolled back on any error."""
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def run(self, operation: Callable[[Session], T], description: str = "storage operation") -> T:
        """
        Run ``operation`` in one database transaction.

        A transient OperationalError (locked database, dropped connection)
        is retried once with a fresh session.

        Raises:
            StorageError: the operation still failed after retrying
        """
        attempt = 0
        while True:
            try:
                with self.session_scope() as session:
                    return operation(session)
            except OperationalError as e:
                if attempt >= MAX_RETRIES:
                    logger.error(f"{description} failed after {attempt + 1} attempts: {e}")
                    raise StorageError(f"{description} failed: {e.orig}") from e
                attempt += 1
                logger.warning(f"{description} hit a transient error, retrying: {e.orig}")

    def create_upload(
        self,
        session: Session,
        user_id: int,
        broker_format: BrokerFormat,
        filename: Optional[str],
        rows_parsed: int,
    ) -> Upload:
        upload = Upload(
            user_id=user_id,
            filename=filename,
            broker_format=broker_format.value,
            rows_parsed=rows_parsed,
        )
        session.add(upload)
        session.flush()
        return upload

    def existing_hashes(self, session: Session, user_id: int) -> set[str]:
        rows = session.query(Transaction.hash_id).filter(Transaction.user_id == user_id).all()
        return {row.hash_id for row in rows}

    def add_transactions(
        self,
        session: Session,
        user_id: int,
        upload: Upload,
        transactions: Iterable[RawTransaction],
    ) -> list[RawTransaction]:
        """
        Stage records not already stored for the user.

        Returns the newly stored records, tagged with the upload sequence.
        """
        known = self.existing_hashes(session, user_id)
        stored = []
        for tx in transactions:
            if tx.hash_id in known:
                continue
            known.add(tx.hash_id)
            session.add(_to_entity(user_id, upload.id, tx))
            stored.append(tx)

        upload.rows_stored = len(stored)
        session.flush()
        logger.info(f"Staged {len(stored)} new transactions for user {user_id} (upload {upload.id})")
        return stored

    def list_transactions(self, session: Session, user_id: int) -> list[RawTransaction]:
        """All of a user's records in replay order."""
        rows = (
            session.query(Transaction)
            .filter(Transaction.user_id == user_id)
            .order_by(
                Transaction.timestamp,
                Transaction.upload_id,
                Transaction.row_number,
                Transaction.order_id,
            )
            .all()
        )
        return [_to_raw(row) for row in rows]

    def count(self, session: Session, user_id: int) -> int:
        return session.query(Transaction).filter(Transaction.user_id == user_id).count()

    def delete_user(self, session: Session, user_id: int) -> int:
        """Remove every stored record, upload and cached result of a user."""
        deleted = session.query(Transaction).filter(Transaction.user_id == user_id).delete(
            synchronize_session=False
        )
        session.query(Upload).filter(Upload.user_id == user_id).delete(synchronize_session=False)
        session.query(CachedResult).filter(CachedResult.user_id == user_id).delete(synchronize_session=False)
        logger.info(f"Deleted {deleted} transactions for user {user_id}")
        return deleted


def _to_entity(user_id: int, upload_id: int, tx: RawTransaction) -> Transaction:
    return Transaction(
        user_id=user_id,
        upload_id=upload_id,
        hash_id=tx.hash_id,
        row_number=tx.row_number,
        source=tx.source,
        kind=tx.kind.value,
        side=tx.side.value if tx.side else None,
        sub_type=tx.sub_type,
        timestamp=tx.timestamp,
        instrument=tx.instrument,
        product_name=tx.product_name,
        description=tx.description,
        order_id=tx.order_id,
        quantity=tx.quantity,
        unit_price=tx.unit_price,
        amount=tx.amount,
        currency=tx.currency,
        commission=tx.commission,
        commission_currency=tx.commission_currency,
        ratio=tx.ratio,
        ratio_base=tx.ratio_base,
        target_instrument=tx.target_instrument,
        exchange_rate=tx.exchange_rate,
        amount_eur=tx.amount_eur,
        commission_eur=tx.commission_eur or Decimal("0"),
        country_code=tx.country_code,
    )


def _to_raw(row: Transaction) -> RawTransaction:
    return RawTransaction(
        timestamp=row.timestamp,
        source=row.source,
        kind=TransactionKind(row.kind),
        instrument=row.instrument or "",
        product_name=row.product_name or "",
        row_number=row.row_number,
        side=Side(row.side) if row.side else None,
        sub_type=row.sub_type or "",
        quantity=_dec(row.quantity),
        unit_price=_dec(row.unit_price),
        amount=_dec(row.amount),
        currency=row.currency,
        commission=_dec(row.commission),
        commission_currency=row.commission_currency or "",
        description=row.description or "",
        order_id=row.order_id or "",
        ratio=_dec(row.ratio) if row.ratio is not None else None,
        ratio_base=_dec(row.ratio_base) if row.ratio_base is not None else None,
        target_instrument=row.target_instrument or "",
        exchange_rate=_dec(row.exchange_rate),
        amount_eur=_dec(row.amount_eur),
        commission_eur=_dec(row.commission_eur),
        country_code=row.country_code or "",
        hash_id=row.hash_id,
        upload_sequence=row.upload_id,
    )


def _dec(value) -> Decimal:
    if value is None:
        return Decimal("0")
    return value if isinstance(value, Decimal) else Decimal(str(value))

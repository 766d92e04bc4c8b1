"""
FIFO Lot Matching Engine

Replays a user's converted transactions in chronological order and matches
every closing trade against the oldest open lots of the same instrument:

- A sell first closes long lots (oldest first), a buy first closes short lots.
- What is left over opens a new lot on the other side, if the product's
  ShortPolicy allows it. Stocks reject shorts by default, options allow them.
- Each contributing lot produces one realized sale.
- Commissions are apportioned by matched quantity, on both legs.

    delta (long)  = close EUR - open EUR - commission EUR
    delta (short) = open EUR - close EUR - commission EUR

Splits and mergers are applied to open lots in place, in replay order.
"""

from collections import defaultdict
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Iterable

from ..errors import InsufficientLot, UnsupportedCorporateAction
from ..logging_config import setup_logger
from ..parsers.base import (
    RawTransaction,
    Side,
    TransactionKind,
    SUB_TYPE_MERGER,
    SUB_TYPE_SPLIT,
)
from .currency_converter import to_cents

logger = setup_logger(__name__)

ZERO = Decimal("0")
# Fractional shares are stored with 8 decimals
QUANTITY_PRECISION = Decimal("0.00000001")

POSITION_LONG = "long"
POSITION_SHORT = "short"


class ShortPolicy(str, Enum):
    """What happens when a closing trade exceeds the open quantity."""
    REJECT = "reject"  # raise InsufficientLot
    ALLOW = "allow"    # the excess opens a short lot


def chronological_key(tx: RawTransaction) -> tuple:
    """
    Replay order: timestamp, then upload order, then file row, then order id.

    Same-timestamp rows from one file keep their file order; rows from a
    later upload sort after an earlier upload's rows at the same instant.
    """
    return (tx.timestamp, tx.upload_sequence, tx.row_number, tx.order_id)


@dataclass
class PurchaseLot:
    """
    An open position opened by one trade.

    ``quantity`` is positive for long lots and negative for short lots. The
    amounts always match the remaining quantity.
    """
    instrument: str
    product_name: str
    open_date: datetime
    quantity: Decimal
    unit_price: Decimal
    open_amount: Decimal      # gross, original currency, positive
    open_amount_eur: Decimal  # gross, EUR, positive
    commission_eur: Decimal   # remaining share of the opening commission
    currency: str
    exchange_rate: Decimal = Decimal("1")
    order_id: str = ""
    country_code: str = ""
    sequence: int = 0

    @property
    def is_short(self) -> bool:
        return self.quantity < 0


@dataclass
class RealizedSale:
    """One lot (or part of one) closed by one trade."""
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
    commission: Decimal  # EUR, opening share + closing share
    delta: Decimal
    currency: str
    open_exchange_rate: Decimal = Decimal("1")
    close_exchange_rate: Decimal = Decimal("1")
    country_code: str = ""
    open_order_id: str = ""
    close_order_id: str = ""


@dataclass
class StockSale(RealizedSale):
    pass


@dataclass
class OptionSale(RealizedSale):
    position: str = POSITION_LONG


@dataclass
class MatchingResult:
    stock_sales: list[StockSale] = field(default_factory=list)
    stock_holdings: list[PurchaseLot] = field(default_factory=list)
    option_sales: list[OptionSale] = field(default_factory=list)
    option_holdings: list[PurchaseLot] = field(default_factory=list)


@dataclass
class _Ledger:
    """Open lots of one instrument, each side kept in FIFO order."""
    longs: list[PurchaseLot] = field(default_factory=list)
    shorts: list[PurchaseLot] = field(default_factory=list)

    def lots(self) -> list[PurchaseLot]:
        return self.longs + self.shorts


@dataclass
class _Closing:
    """The not-yet-matched remainder of a closing trade."""
    tx: RawTransaction
    quantity: Decimal
    amount: Decimal
    amount_eur: Decimal
    commission_eur: Decimal

    def take(self, matched: Decimal) -> tuple[Decimal, Decimal, Decimal]:
        """Share of (amount, amount EUR, commission EUR) for ``matched`` units."""
        if matched == self.quantity:
            shares = (self.amount, self.amount_eur, self.commission_eur)
        else:
            shares = (
                _slice(self.amount, matched, self.quantity),
                to_cents(self.amount_eur * matched / self.quantity),
                to_cents(self.commission_eur * matched / self.quantity),
            )
        self.quantity -= matched
        self.amount -= shares[0]
        self.amount_eur -= shares[1]
        self.commission_eur -= shares[2]
        return shares


class LotMatchingEngine:
    """
    FIFO matching of stock and option trades.

    The engine holds no state between calls; ``match`` replays the whole
    transaction history it is given.
    """

    def __init__(
        self,
        stock_short_policy: ShortPolicy = ShortPolicy.REJECT,
        option_short_policy: ShortPolicy = ShortPolicy.ALLOW,
    ):
        self.policies = {
            TransactionKind.STOCK: ShortPolicy(stock_short_policy),
            TransactionKind.OPTION: ShortPolicy(option_short_policy),
        }
        self._sequence = 0

    @classmethod
    def from_settings(cls, settings) -> "LotMatchingEngine":
        return cls(
            stock_short_policy=ShortPolicy(settings.stock_short_policy),
            option_short_policy=ShortPolicy(settings.option_short_policy),
        )

    def match(self, transactions: Iterable[RawTransaction]) -> MatchingResult:
        """
        Replay converted transactions and return realized sales and open lots.

        Raises:
            InsufficientLot: a closing trade exceeds the open quantity and
                the product's policy rejects short positions
            UnsupportedCorporateAction: an action other than split or merger
        """
        ordered = sorted(transactions, key=chronological_key)
        ledgers = {
            TransactionKind.STOCK: defaultdict(_Ledger),
            TransactionKind.OPTION: defaultdict(_Ledger),
        }
        result = MatchingResult()
        self._sequence = 0

        for tx in ordered:
            if tx.kind in (TransactionKind.STOCK, TransactionKind.OPTION):
                sales = self._apply_trade(ledgers[tx.kind][tx.instrument], tx)
                if tx.kind == TransactionKind.STOCK:
                    result.stock_sales.extend(sales)
                else:
                    result.option_sales.extend(sales)
            elif tx.kind == TransactionKind.CORPORATE_ACTION:
                self._apply_corporate_action(ledgers[TransactionKind.STOCK], tx)

        result.stock_holdings = _open_lots(ledgers[TransactionKind.STOCK])
        result.option_holdings = _open_lots(ledgers[TransactionKind.OPTION])

        logger.info(
            f"Matched {len(result.stock_sales)} stock sales and {len(result.option_sales)} "
            f"option sales; {len(result.stock_holdings)} stock and "
            f"{len(result.option_holdings)} option lots remain open"
        )
        return result

    def _apply_trade(self, ledger: _Ledger, tx: RawTransaction) -> list[RealizedSale]:
        if tx.side is None:
            raise ValueError(f"Trade without side: {tx.instrument} on {tx.trade_date}")

        # A buy closes shorts, a sell closes longs
        closing_side = ledger.shorts if tx.side == Side.BUY else ledger.longs
        available = sum((abs(lot.quantity) for lot in closing_side), ZERO)
        excess = tx.quantity - available

        if excess > 0 and tx.side == Side.SELL and self.policies[tx.kind] == ShortPolicy.REJECT:
            raise InsufficientLot(tx.instrument, tx.trade_date, excess)

        closing = _Closing(
            tx=tx,
            quantity=tx.quantity,
            amount=abs(tx.amount),
            amount_eur=abs(_eur(tx)),
            commission_eur=tx.commission_eur if tx.commission_eur is not None else ZERO,
        )

        sales = []
        while closing.quantity > 0 and closing_side:
            lot = closing_side[0]
            matched = min(closing.quantity, abs(lot.quantity))
            sales.append(self._realize(lot, closing, matched))
            if lot.quantity == 0:
                closing_side.pop(0)

        if closing.quantity > 0:
            # Whatever is left opens a new position
            lot = self._open_lot(closing)
            if lot.is_short:
                logger.debug(f"Opening short position of {lot.quantity} {tx.instrument} on {tx.trade_date}")
                ledger.shorts.append(lot)
            else:
                ledger.longs.append(lot)

        return sales

    def _open_lot(self, closing: _Closing) -> PurchaseLot:
        tx = closing.tx
        self._sequence += 1
        sign = Decimal("1") if tx.side == Side.BUY else Decimal("-1")
        return PurchaseLot(
            instrument=tx.instrument,
            product_name=tx.product_name,
            open_date=tx.timestamp,
            quantity=sign * closing.quantity,
            unit_price=tx.unit_price,
            open_amount=closing.amount,
            open_amount_eur=closing.amount_eur,
            commission_eur=closing.commission_eur,
            currency=tx.currency,
            exchange_rate=tx.exchange_rate or Decimal("1"),
            order_id=tx.order_id,
            country_code=tx.country_code,
            sequence=self._sequence,
        )

    def _realize(self, lot: PurchaseLot, closing: _Closing, matched: Decimal) -> RealizedSale:
        remaining = abs(lot.quantity)
        if matched == remaining:
            open_amount, open_eur, open_commission = lot.open_amount, lot.open_amount_eur, lot.commission_eur
        else:
            open_amount = _slice(lot.open_amount, matched, remaining)
            open_eur = to_cents(lot.open_amount_eur * matched / remaining)
            open_commission = to_cents(lot.commission_eur * matched / remaining)

        lot.quantity += matched if lot.is_short else -matched
        lot.open_amount -= open_amount
        lot.open_amount_eur -= open_eur
        lot.commission_eur -= open_commission

        close_amount, close_eur, close_commission = closing.take(matched)
        commission = open_commission + close_commission
        is_short = closing.tx.side == Side.BUY

        if is_short:
            delta = open_eur - close_eur - commission
        else:
            delta = close_eur - open_eur - commission

        tx = closing.tx
        fields = dict(
            open_date=lot.open_date,
            close_date=tx.timestamp,
            product_name=lot.product_name,
            instrument=lot.instrument,
            quantity=matched,
            open_price=lot.unit_price,
            close_price=tx.unit_price,
            open_amount=open_amount,
            close_amount=close_amount,
            open_amount_eur=open_eur,
            close_amount_eur=close_eur,
            commission=commission,
            delta=delta,
            currency=tx.currency,
            open_exchange_rate=lot.exchange_rate,
            close_exchange_rate=tx.exchange_rate or Decimal("1"),
            country_code=lot.country_code or tx.country_code,
            open_order_id=lot.order_id,
            close_order_id=tx.order_id,
        )
        if tx.kind == TransactionKind.OPTION:
            return OptionSale(position=POSITION_SHORT if is_short else POSITION_LONG, **fields)
        return StockSale(**fields)

    def _apply_corporate_action(self, ledgers: dict[str, _Ledger], tx: RawTransaction) -> None:
        action = tx.sub_type
        if action not in (SUB_TYPE_SPLIT, SUB_TYPE_MERGER):
            raise UnsupportedCorporateAction(action or "unknown", tx.instrument, tx.trade_date)
        if tx.ratio is None or tx.ratio <= 0 or (tx.ratio_base is not None and tx.ratio_base <= 0):
            raise UnsupportedCorporateAction(f"{action} without ratio", tx.instrument, tx.trade_date)
        new_shares, old_shares = tx.ratio, tx.ratio_base or Decimal("1")
        if action == SUB_TYPE_MERGER and tx.target_instrument and tx.target_instrument == tx.instrument:
            raise UnsupportedCorporateAction("merger into itself", tx.instrument, tx.trade_date)

        ledger = ledgers.get(tx.instrument)
        if ledger is None or not ledger.lots():
            logger.info(f"{action} of {tx.instrument} on {tx.trade_date} affects no open lots")
            return

        if action == SUB_TYPE_SPLIT:
            for lot in ledger.lots():
                _rescale(lot, new_shares, old_shares)
            logger.info(f"Applied {new_shares} for {old_shares} split to {tx.instrument} on {tx.trade_date}")
            return

        if not tx.target_instrument:
            raise UnsupportedCorporateAction("merger without target", tx.instrument, tx.trade_date)

        target = ledgers[tx.target_instrument]
        moved = ledgers.pop(tx.instrument)
        for lot in moved.lots():
            _rescale(lot, new_shares, old_shares)
            lot.instrument = tx.target_instrument
        target.longs = sorted(target.longs + moved.longs, key=_lot_order)
        target.shorts = sorted(target.shorts + moved.shorts, key=_lot_order)
        logger.info(
            f"Merged {len(moved.lots())} lots of {tx.instrument} into "
            f"{tx.target_instrument} at {new_shares} for {old_shares} on {tx.trade_date}"
        )


def _rescale(lot: PurchaseLot, new_shares: Decimal, old_shares: Decimal) -> None:
    """
    Rescale a lot by new_shares for old_shares at unchanged total cost.

    Multiplying before dividing keeps divisible results exact, so 300
    shares after a 1 for 3 split are 100, not 99.99...
    """
    lot.quantity = _quantity(lot.quantity * new_shares / old_shares)
    lot.unit_price = lot.unit_price * old_shares / new_shares


def _quantity(value: Decimal) -> Decimal:
    """Whole results stay whole, fractions are kept at stored precision."""
    if value == value.to_integral_value():
        return value.to_integral_value()
    return value.quantize(QUANTITY_PRECISION)


def _lot_order(lot: PurchaseLot) -> tuple:
    return (lot.open_date, lot.sequence)


def _open_lots(ledgers: dict[str, _Ledger]) -> list[PurchaseLot]:
    lots = [replace(lot) for ledger in ledgers.values() for lot in ledger.lots() if lot.quantity != 0]
    return sorted(lots, key=lambda lot: (lot.instrument, lot.open_date, lot.sequence))


def _eur(tx: RawTransaction) -> Decimal:
    if tx.amount_eur is None:
        raise ValueError(f"Transaction {tx.instrument} on {tx.trade_date} has not been converted to EUR")
    return tx.amount_eur


def _slice(total: Decimal, part: Decimal, whole: Decimal) -> Decimal:
    """Proportional share in the original currency, kept at the total's precision."""
    share = total * part / whole
    exponent = total.as_tuple().exponent
    if isinstance(exponent, int) and exponent < 0:
        return share.quantize(Decimal(1).scaleb(exponent))
    return share



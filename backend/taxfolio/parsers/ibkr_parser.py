"""
Interactive Brokers Flex Query XML Parser

Reads the activity Flex Query report:

    <FlexQueryResponse>
      <FlexStatements>
        <FlexStatement accountId="U1234567">
          <Trades><Trade assetCategory="STK" buySell="BUY" .../></Trades>
          <CashTransactions><CashTransaction type="Dividends" .../></CashTransactions>
          <CorporateActions><CorporateAction type="FS" .../></CorporateActions>
        </FlexStatement>
      </FlexStatements>
    </FlexQueryResponse>

ElementTree keeps no line numbers, so issues are reported by the element's
position in document order.
"""

import re
import xml.etree.ElementTree as ET
from datetime import datetime
from decimal import Decimal
from typing import Optional

from ..errors import ParseIssue, ParsingFailed
from ..logging_config import setup_logger
from .base import (
    BrokerFormat,
    BrokerParser,
    RawTransaction,
    Side,
    TransactionKind,
    SUB_TYPE_CALL,
    SUB_TYPE_DEPOSIT,
    SUB_TYPE_PUT,
    SUB_TYPE_SPLIT,
    SUB_TYPE_TAX,
    SUB_TYPE_WITHDRAWAL,
)

logger = setup_logger(__name__)

SOURCE = "ibkr"
ROOT_TAG = "FlexQueryResponse"

# Internal currency conversions, not investments
IGNORED_EXCHANGES = {"IDEALFX"}

CASH_DIVIDENDS = "Dividends"
CASH_WITHHOLDING = "Withholding Tax"
CASH_TRANSFERS = "Deposits/Withdrawals"

SPLIT_ACTIONS = {"FS", "RS"}
SPLIT_PATTERN = re.compile(r"SPLIT\s+(\d+(?:\.\d+)?)\s+FOR\s+(\d+(?:\.\d+)?)", re.IGNORECASE)


class IBKRParser(BrokerParser):
    """Parser for IBKR Flex Query XML reports."""

    format = BrokerFormat.IBKR_FLEX_XML

    def parse(self, content: str) -> list[RawTransaction]:
        try:
            root = ET.fromstring(content)
        except ET.ParseError as e:
            line = e.position[0] if e.position else 0
            raise ParsingFailed("Flex Query XML could not be read", [ParseIssue(line, str(e))])

        if root.tag != ROOT_TAG:
            raise ParsingFailed(f"Unexpected root element <{root.tag}>, expected <{ROOT_TAG}>")

        # Position of every element in document order, used as row number
        positions = {id(element): index + 1 for index, element in enumerate(root.iter())}

        transactions = []
        issues = []
        seen_actions: set[tuple] = set()

        for statement in root.iter("FlexStatement"):
            for trade in statement.iterfind("Trades/Trade"):
                self._collect(transactions, issues, positions[id(trade)], self._parse_trade, trade)

            for cash in statement.iterfind("CashTransactions/CashTransaction"):
                # Summary rows repeat the detail rows
                if cash.get("levelOfDetail", "DETAIL").upper() != "DETAIL":
                    continue
                self._collect(transactions, issues, positions[id(cash)], self._parse_cash, cash)

            for action in statement.iterfind("CorporateActions/CorporateAction"):
                key = (action.get("type"), action.get("isin") or action.get("symbol"), action.get("dateTime"))
                # One action is reported once per affected leg
                if key in seen_actions:
                    continue
                seen_actions.add(key)
                self._collect(transactions, issues, positions[id(action)], self._parse_corporate_action, action)

        if issues:
            raise ParsingFailed("Malformed Flex Query XML", issues)

        logger.info(f"Parsed {len(transactions)} IBKR transactions")
        return transactions

    def _collect(self, transactions, issues, position, handler, element):
        self.check_deadline()
        try:
            tx = handler(position, element)
        except ValueError as e:
            issues.append(ParseIssue(position, f"<{element.tag}> {e}"))
            return
        if tx is not None:
            transactions.append(tx)

    def _parse_trade(self, position: int, trade: ET.Element) -> Optional[RawTransaction]:
        if trade.get("exchange", "") in IGNORED_EXCHANGES:
            return None

        category = trade.get("assetCategory", "")
        if category == "STK":
            kind, sub_type = TransactionKind.STOCK, ""
        elif category == "OPT":
            kind = TransactionKind.OPTION
            sub_type = SUB_TYPE_PUT if trade.get("putCall") == "P" else SUB_TYPE_CALL
        else:
            logger.warning(f"Skipping IBKR trade with asset category '{category}' at element {position}")
            return None

        buy_sell = trade.get("buySell", "").upper()
        if buy_sell not in ("BUY", "SELL"):
            raise ValueError(f"unknown buySell '{buy_sell}'")
        side = Side.BUY if buy_sell == "BUY" else Side.SELL

        quantity = abs(_decimal(trade, "quantity"))
        if quantity == 0:
            raise ValueError("zero quantity")
        unit_price = _decimal(trade, "tradePrice")

        # tradeMoney includes the contract multiplier
        if trade.get("tradeMoney"):
            gross = abs(_decimal(trade, "tradeMoney"))
        else:
            multiplier = _decimal(trade, "multiplier", default=Decimal("1"))
            gross = quantity * unit_price * multiplier

        symbol = trade.get("symbol", "")
        isin = trade.get("isin", "")
        # Option contracts rarely carry an ISIN, the symbol names the series
        instrument = symbol if kind == TransactionKind.OPTION else (isin or symbol)

        currency = trade.get("currency", "EUR")
        commission_currency = trade.get("ibCommissionCurrency", "")

        return RawTransaction(
            timestamp=parse_ibkr_datetime(trade.get("dateTime") or trade.get("tradeDate", "")),
            source=SOURCE,
            kind=kind,
            instrument=instrument,
            product_name=trade.get("description", "") or symbol,
            row_number=position,
            side=side,
            sub_type=sub_type,
            quantity=quantity,
            unit_price=unit_price,
            amount=-gross if side == Side.BUY else gross,
            currency=currency,
            commission=abs(_decimal(trade, "ibCommission")),
            commission_currency="" if commission_currency == currency else commission_currency,
            description=f"{buy_sell} {quantity} {symbol} @ {unit_price}",
            order_id=trade.get("ibOrderID", ""),
        )

    def _parse_cash(self, position: int, cash: ET.Element) -> Optional[RawTransaction]:
        cash_type = cash.get("type", "")
        amount = _decimal(cash, "amount")
        base = dict(
            timestamp=parse_ibkr_datetime(cash.get("dateTime", "")),
            source=SOURCE,
            row_number=position,
            amount=amount,
            currency=cash.get("currency", "EUR"),
            description=cash.get("description", ""),
        )
        instrument = cash.get("isin", "") or cash.get("symbol", "")

        if cash_type == CASH_DIVIDENDS:
            return RawTransaction(
                kind=TransactionKind.DIVIDEND,
                instrument=instrument,
                product_name=cash.get("symbol", ""),
                **base,
            )

        if cash_type == CASH_WITHHOLDING:
            # Negative when withheld, positive for refunds
            return RawTransaction(
                kind=TransactionKind.DIVIDEND,
                sub_type=SUB_TYPE_TAX,
                instrument=instrument,
                product_name=cash.get("symbol", ""),
                **base,
            )

        if cash_type == CASH_TRANSFERS:
            return RawTransaction(
                kind=TransactionKind.CASH,
                sub_type=SUB_TYPE_DEPOSIT if amount > 0 else SUB_TYPE_WITHDRAWAL,
                instrument="",
                product_name="Cash Transfer",
                **base,
            )

        logger.debug(f"Ignoring IBKR cash transaction '{cash_type}' at element {position}")
        return None

    def _parse_corporate_action(self, position: int, action: ET.Element) -> RawTransaction:
        code = action.get("type", "").upper()
        description = action.get("description", "") or action.get("actionDescription", "")
        instrument = action.get("isin", "") or action.get("symbol", "")

        sub_type = code.lower()
        ratio = ratio_base = None
        if code in SPLIT_ACTIONS:
            match = SPLIT_PATTERN.search(description)
            if not match:
                raise ValueError(f"split ratio not found in '{description}'")
            new_shares, old_shares = Decimal(match.group(1)), Decimal(match.group(2))
            if new_shares <= 0 or old_shares <= 0:
                raise ValueError(f"invalid split ratio in '{description}'")
            sub_type = SUB_TYPE_SPLIT
            ratio, ratio_base = new_shares, old_shares

        return RawTransaction(
            timestamp=parse_ibkr_datetime(action.get("dateTime") or action.get("reportDate", "")),
            source=SOURCE,
            kind=TransactionKind.CORPORATE_ACTION,
            instrument=instrument,
            product_name=action.get("symbol", "") or instrument,
            row_number=position,
            sub_type=sub_type,
            currency=action.get("currency", "EUR"),
            description=description,
            ratio=ratio,
            ratio_base=ratio_base,
        )


def parse_ibkr_datetime(text: str) -> datetime:
    """Parse IBKR's 'YYYYMMDD;HHMMSS' (time optional, ISO dashes accepted)."""
    value = (text or "").strip()
    if not value:
        raise ValueError("missing dateTime")
    for fmt in ("%Y%m%d;%H%M%S", "%Y%m%d", "%Y-%m-%d;%H:%M:%S", "%Y-%m-%d"):
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    raise ValueError(f"invalid dateTime '{text}'")


def _decimal(element: ET.Element, attribute: str, default: Decimal = Decimal("0")) -> Decimal:
    value = element.get(attribute, "")
    if not value:
        return default
    try:
        return Decimal(value.strip())
    except ArithmeticError:
        raise ValueError(f"invalid {attribute} '{value}'")

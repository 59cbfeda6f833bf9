"""
Portfolio reconciliation.

Applies one cycle's parsed buy/sell instructions to the ledger using the
cycle's price snapshot. reconcile() is pure: it takes the current rows and
returns new ones, and the caller decides whether to persist them.

Conventions:
- Buy amounts are always in quote-asset units.
- Sell amounts follow SellConvention: QUOTE means quote-asset units (token
  quantity = amount / price), TOKEN means a token quantity
  (proceeds = quantity * price). The same convention drives both the quote
  row credit and the position debit.
- Position rows store the unit price in quote units in `value`. The quote
  row stores the capital balance in both `value` and `amount`.
"""
import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Mapping, Optional, Union

from exceptions import MalformedInstruction, MissingQuoteAsset, UnresolvedPriceError
from instructions import ParsedInstruction
from portfolio import PortfolioEntry, find_entry, now_ms
from prices import PriceSnapshot

logger = logging.getLogger(__name__)

# Relative tolerance when comparing a requested quantity against holdings.
TOLERANCE = 1e-9


class SellConvention(str, Enum):
    QUOTE = "quote"
    TOKEN = "token"


class OverdraftPolicy(str, Enum):
    CLAMP = "clamp"
    REJECT = "reject"


@dataclass(frozen=True)
class Trade:
    action: str
    asset: str
    address: Optional[str]
    quantity: float
    quote_amount: float
    price: float
    clamped: bool = False


@dataclass(frozen=True)
class Rejection:
    instruction: ParsedInstruction
    reason: str


@dataclass
class ReconcileResult:
    entries: List[PortfolioEntry]
    trades: List[Trade] = field(default_factory=list)
    rejections: List[Rejection] = field(default_factory=list)
    errors: List[UnresolvedPriceError] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.trades)

    @property
    def total_buy(self) -> float:
        return sum(t.quote_amount for t in self.trades if t.action == "buy")

    @property
    def total_sell(self) -> float:
        return sum(t.quote_amount for t in self.trades if t.action == "sell")


@dataclass(frozen=True)
class _Order:
    instruction: ParsedInstruction
    address: Optional[str]
    amount: float

    @property
    def key(self) -> Optional[str]:
        return self.address.lower() if self.address else None


Resolver = Union[Mapping[str, str], Callable[[str], Optional[str]]]


def _resolver(name_to_address: Resolver) -> Callable[[str], Optional[str]]:
    resolve = getattr(name_to_address, "resolve", None)
    if resolve is not None:
        return resolve
    if callable(name_to_address):
        return name_to_address
    return name_to_address.get


def instruction_amount(instruction: ParsedInstruction) -> float:
    """Numeric amount of an instruction; MalformedInstruction if missing, non-numeric or negative."""
    try:
        amount = float(instruction.amount)
    except (TypeError, ValueError):
        raise MalformedInstruction(
            f"Invalid amount {instruction.amount!r} for {instruction.subject} {instruction.action}"
        )
    if not math.isfinite(amount) or amount < 0:
        raise MalformedInstruction(
            f"Invalid amount {instruction.amount!r} for {instruction.subject} {instruction.action}"
        )
    return amount


def partition(instructions: List[ParsedInstruction], name_to_address: Resolver):
    """
    Split instructions into buy and sell books keyed by subject.
    Zero amounts are dropped; the last instruction per subject and side wins.
    """
    resolve = _resolver(name_to_address)
    buys: Dict[str, _Order] = {}
    sells: Dict[str, _Order] = {}

    for instruction in instructions:
        if instruction.action not in ("buy", "sell"):
            raise MalformedInstruction(f"Unknown action {instruction.action!r}")

        amount = instruction_amount(instruction)
        if amount == 0:
            logger.debug(f"Ignoring zero-amount {instruction.action} of {instruction.subject}")
            continue

        book = buys if instruction.action == "buy" else sells
        if instruction.subject in book:
            logger.info(f"Duplicate {instruction.action} for {instruction.subject}, keeping the last one")
        book[instruction.subject] = _Order(instruction, resolve(instruction.subject), amount)

    return buys, sells


def _by_address(book: Dict[str, _Order], rejections: List[Rejection]) -> Dict[str, _Order]:
    """Index orders by resolved address; the last one per address wins, earlier ones are rejected."""
    indexed: Dict[str, _Order] = {}
    for order in book.values():
        if not order.key:
            continue
        if order.key in indexed:
            rejections.append(Rejection(indexed[order.key].instruction, "duplicate for address"))
        indexed[order.key] = order
    return indexed


def _exceeds(requested: float, available: float) -> bool:
    return requested > available and not math.isclose(requested, available, rel_tol=TOLERANCE, abs_tol=1e-12)


def reconcile(entries: List[PortfolioEntry],
              instructions: List[ParsedInstruction],
              snapshot: PriceSnapshot,
              name_to_address: Resolver,
              quote_asset: Optional[str] = None,
              sell_convention: SellConvention = SellConvention.QUOTE,
              overdraft: OverdraftPolicy = OverdraftPolicy.CLAMP,
              prune_empty: bool = False,
              timestamp: Optional[int] = None) -> ReconcileResult:
    """
    Apply instructions to the portfolio rows and return the reconciled rows.

    Sells are applied before buys so sale proceeds can fund purchases in the
    same cycle. A row whose address has no price in the snapshot is left
    untouched. A buy for an asset not yet held needs a price to size the new
    position; without one it is reported in `errors` and the rest of the
    batch still applies.

    Raises:
        MalformedInstruction: an instruction has an unknown action or bad amount.
        MissingQuoteAsset: the rows contain no quote-asset row.
    """
    quote_asset = quote_asset or snapshot.quote_asset
    timestamp = now_ms() if timestamp is None else timestamp

    quote_row = find_entry(entries, quote_asset)
    if quote_row is None:
        raise MissingQuoteAsset(f"Portfolio has no {quote_asset} row")

    buys, sells = partition(instructions, name_to_address)
    result = ReconcileResult(entries=[])

    rows = list(entries)
    held = {row.address.lower(): i for i, row in enumerate(rows)
            if row.asset != quote_asset and row.address}
    capital = quote_row.value

    # Sells
    for key, order in _by_address(sells, result.rejections).items():
        if key not in held:
            result.rejections.append(Rejection(order.instruction, "asset not held"))
            continue

        index = held[key]
        row = rows[index]
        price = snapshot.price_in_quote(row.address)
        if price is None:
            result.rejections.append(Rejection(order.instruction, "no current price"))
            continue

        quantity = order.amount / price if sell_convention == SellConvention.QUOTE else order.amount
        clamped = False
        if _exceeds(quantity, row.amount):
            if overdraft == OverdraftPolicy.REJECT:
                logger.warning(f"Rejecting sell of {quantity} {row.asset}, only {row.amount} held")
                result.rejections.append(Rejection(order.instruction, "sell exceeds holdings"))
                continue
            logger.warning(f"Clamping sell of {quantity} {row.asset} to held {row.amount}")
            clamped = True
        quantity = min(quantity, row.amount)
        if quantity <= 0:
            result.rejections.append(Rejection(order.instruction, "nothing held"))
            continue

        proceeds = quantity * price
        capital += proceeds
        rows[index] = row.restamp(timestamp, value=price, amount=max(row.amount - quantity, 0.0))
        result.trades.append(Trade("sell", row.asset, row.address, quantity, proceeds, price, clamped))

    for order in sells.values():
        if order.key is None:
            result.rejections.append(Rejection(order.instruction, "unknown token"))

    # Buys
    buys_by_address = _by_address(buys, result.rejections)
    unresolved = [order for order in buys.values() if order.key is None]
    new_orders = {key: order for key, order in buys_by_address.items() if key not in held}

    def spendable(order: _Order, asset: str) -> Optional[float]:
        spend = order.amount
        if _exceeds(spend, capital):
            if overdraft == OverdraftPolicy.REJECT or capital <= 0:
                logger.warning(f"Rejecting buy of {spend} {quote_asset} of {asset}, only {capital} available")
                result.rejections.append(Rejection(order.instruction, "insufficient capital"))
                return None
            logger.warning(f"Clamping buy of {asset} from {spend} to available {capital} {quote_asset}")
            return capital
        return min(spend, capital)

    for key, order in buys_by_address.items():
        if key not in held:
            continue

        index = held[key]
        row = rows[index]
        price = snapshot.price_in_quote(row.address)
        if price is None:
            result.rejections.append(Rejection(order.instruction, "no current price"))
            continue

        spend = spendable(order, row.asset)
        if spend is None:
            continue
        quantity = spend / price
        capital -= spend
        rows[index] = row.restamp(timestamp, value=price, amount=row.amount + quantity)
        result.trades.append(Trade("buy", row.asset, row.address, quantity, spend, price, spend != order.amount))

    for order in unresolved + list(new_orders.values()):
        subject = order.instruction.subject
        price = snapshot.price_in_quote(order.address)
        if price is None:
            error = UnresolvedPriceError(subject, order.address)
            logger.warning(str(error))
            result.errors.append(error)
            continue

        if find_entry(rows, subject) is not None:
            result.rejections.append(Rejection(order.instruction, "asset already held under another address"))
            continue

        spend = spendable(order, subject)
        if spend is None:
            continue
        quantity = spend / price
        capital -= spend
        rows.append(PortfolioEntry(asset=subject, address=order.address, value=price,
                                   amount=quantity, purchased=timestamp))
        result.trades.append(Trade("buy", subject, order.address, quantity, spend, price, spend != order.amount))

    if result.trades:
        index = rows.index(quote_row)
        rows[index] = quote_row.restamp(timestamp, value=capital, amount=capital)

    if prune_empty:
        rows = [row for row in rows if row.asset == quote_asset or row.amount > 0]

    result.entries = rows
    return result

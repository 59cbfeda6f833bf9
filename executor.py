import asyncio
import itertools
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List

from reconcile import Trade

logger = logging.getLogger(__name__)


@dataclass
class TradeHandle:
    trade_id: str
    amount: float
    from_asset: str
    to_asset: str
    state: str = "pending"
    _done: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    async def wait(self) -> "TradeHandle":
        await self._done.wait()
        return self

    def status(self) -> str:
        return self.state

    def complete(self, state: str = "complete"):
        self.state = state
        self._done.set()


class TradeExecutor(ABC):
    """Submits trades for the instructions the ledger has accepted."""

    @abstractmethod
    async def submit(self, amount: float, from_asset: str, to_asset: str) -> TradeHandle:
        ...


class PaperTradeExecutor(TradeExecutor):
    """Records trades and completes them immediately; nothing leaves the process."""

    def __init__(self):
        self.submitted: List[TradeHandle] = []
        self._ids = itertools.count(1)

    async def submit(self, amount: float, from_asset: str, to_asset: str) -> TradeHandle:
        handle = TradeHandle(trade_id=f"paper-{next(self._ids)}", amount=amount,
                             from_asset=from_asset, to_asset=to_asset)
        self.submitted.append(handle)
        handle.complete()
        logger.info(f"Paper trade {handle.trade_id}: {amount} {from_asset} -> {to_asset}")
        return handle


async def execute_trades(executor: TradeExecutor, trades: List[Trade], quote_asset: str,
                         delay: float = 0.0) -> List[TradeHandle]:
    """
    Submit one trade per reconciled leg and wait for each to finish.
    Buys spend the quote asset, sells spend the token quantity.
    """
    handles = []
    for trade in trades:
        if trade.action == "buy":
            handle = await executor.submit(trade.quote_amount, quote_asset, trade.asset)
        else:
            handle = await executor.submit(trade.quantity, trade.asset, quote_asset)
        await handle.wait()
        logger.info(f"Trade {handle.trade_id} finished with status {handle.status()}")
        handles.append(handle)
        if delay:
            await asyncio.sleep(delay)
    return handles

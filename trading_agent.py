import asyncio
import logging
import os
import sys
from dataclasses import asdict
from typing import Any, Dict, List, Optional, Tuple

import httpx
from openai import AsyncOpenAI, OpenAIError

from config import Settings, validate_environment
from exceptions import (ConfigError, CycleInProgress, FeedUnavailable, MalformedInstruction,
                        MissingQuoteAsset, PersistenceError)
from executor import PaperTradeExecutor, TradeExecutor, execute_trades
from history import TradeHistory, cycle_record
from instructions import is_refraining, parse_reply
from portfolio import PortfolioEntry, PortfolioStore, total_value
from prices import PriceSnapshot, fetch_coins, fetch_token_prices, fetch_weth_price, prices_from_coins
from prompt import build_messages
from reconcile import reconcile
from registry import TokenRegistry, read_memecoins_file, registry_from_coins

# Configure logging
logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger(__name__)

CYCLE_ERRORS = (MalformedInstruction, FeedUnavailable, PersistenceError, MissingQuoteAsset)


class MarketWizard:
    """
    Runs trading cycles: fetch prices, read the ledger, ask the agent,
    parse its reply, reconcile and persist. One cycle at a time.
    """

    def __init__(self, settings: Settings, executor: Optional[TradeExecutor] = None,
                 history: Optional[TradeHistory] = None, llm_client: Optional[AsyncOpenAI] = None):
        self.settings = settings
        self.store = PortfolioStore(settings.portfolio_path)
        self.executor = executor
        self.history = history or TradeHistory(settings.mongo_uri)
        self.llm_client = llm_client
        self._cycle_lock = asyncio.Lock()
        self.last_snapshot: Optional[PriceSnapshot] = None
        self.last_registry: Optional[TokenRegistry] = None

    async def initialize(self):
        await self.history.initialize()
        if self.llm_client is None:
            self.llm_client = AsyncOpenAI(
                base_url=self.settings.llm_base_url,
                api_key=self.settings.llm_api_key,
                timeout=self.settings.llm_timeout,
            )

    async def load_market_data(self, entries: List[PortfolioEntry]) -> Tuple[PriceSnapshot, TokenRegistry]:
        """Fetch this cycle's prices and the name -> address table."""
        settings = self.settings
        quote_price = 1.0

        async with httpx.AsyncClient(timeout=settings.http_timeout) as client:
            if settings.price_source == "coinranking":
                coins = (await fetch_coins(settings.coinranking_api_key, client))[:settings.max_tokens]
                registry = registry_from_coins(coins)
                prices = prices_from_coins(coins)
                if settings.quote_asset != "USDC":
                    quote_price = await fetch_weth_price(settings.coinranking_api_key, client)
            else:
                registry = TokenRegistry(read_memecoins_file(settings.memecoins_path).coins[:settings.max_tokens])
                # Held positions are priced even when they drop out of the tracked list.
                addresses = list(registry.addresses)
                addresses += [e.address for e in entries if e.address and e.asset != settings.quote_asset]
                if settings.quote_asset != "USDC":
                    addresses.append(settings.quote_address)
                prices = await fetch_token_prices(dict.fromkeys(a.lower() for a in addresses), client)
                if settings.quote_asset != "USDC":
                    quote_info = prices.pop(settings.quote_address.lower(), None)
                    if quote_info is None:
                        raise FeedUnavailable(f"No USD price for quote asset {settings.quote_asset}")
                    quote_price = quote_info.usd

        for coin in registry.coins:
            logger.info(f"Price info for {coin.name}: {prices.get(coin.address.lower())}")

        return PriceSnapshot(prices, settings.quote_asset, quote_price), registry

    async def ask_agent(self, messages: List[dict]) -> str:
        """Send the prompt and return the agent's full reply text."""
        if self.llm_client is None:
            await self.initialize()

        try:
            completion = await asyncio.wait_for(
                self.llm_client.chat.completions.create(
                    model=self.settings.llm_model,
                    messages=messages,
                    temperature=0.1,
                ),
                timeout=self.settings.llm_timeout,
            )
        except asyncio.TimeoutError as e:
            raise FeedUnavailable(f"Agent did not answer within {self.settings.llm_timeout}s") from e
        except OpenAIError as e:
            raise FeedUnavailable(f"Agent call failed: {e}") from e

        content = completion.choices[0].message.content or ""
        logger.info(f"AI Response: {content}")
        return content

    async def run_cycle(self) -> Dict[str, Any]:
        """
        Run one trading cycle.

        Raises:
            CycleInProgress: another cycle is running in this process or holds the ledger.
            MalformedInstruction: the agent reply had a line that is not a trade.
            FeedUnavailable: the price feed or the agent could not be reached.
            PersistenceError: the ledger could not be read or written.
        """
        if self._cycle_lock.locked():
            raise CycleInProgress("A trading cycle is already running")

        async with self._cycle_lock:
            with self.store.cycle_lock():
                return await self._run_cycle()

    async def _run_cycle(self) -> Dict[str, Any]:
        settings = self.settings
        entries = self.store.load_or_initialize(settings.quote_asset, settings.initial_balance,
                                                settings.quote_address)

        snapshot, registry = await self.load_market_data(entries)
        self.last_snapshot, self.last_registry = snapshot, registry

        reply = await self.ask_agent(build_messages(entries, snapshot, registry, settings.sell_unit))

        if is_refraining(reply):
            logger.info("Agent is refraining, no trades this cycle")
            await self.history.record(cycle_record(reply, status="refraining"))
            return {"status": "refraining", "trades": [], "portfolio": [e.to_dict() for e in entries]}

        instructions = parse_reply(reply)
        logger.info(f"Parsed {len(instructions)} instructions")

        result = reconcile(
            entries,
            instructions,
            snapshot,
            registry,
            quote_asset=settings.quote_asset,
            sell_convention=settings.sell_convention,
            overdraft=settings.overdraft_policy,
            prune_empty=settings.prune_empty,
        )

        for rejection in result.rejections:
            logger.warning(f"Skipped {rejection.instruction.subject} {rejection.instruction.action}: {rejection.reason}")
        for error in result.errors:
            logger.error(f"Could not open position: {error}")

        if result.entries != entries:
            self.store.write(result.entries)

        if self.executor is not None and result.trades:
            await execute_trades(self.executor, result.trades, settings.quote_asset, settings.trade_delay)

        await self.history.record(cycle_record(reply, result))

        logger.info(
            f"Cycle done: bought {result.total_buy:.2f}, sold {result.total_sell:.2f} {settings.quote_asset}. "
            f"Portfolio value: {total_value(result.entries, settings.quote_asset):.2f} {settings.quote_asset}"
        )
        return {
            "status": "success",
            "trades": [asdict(trade) for trade in result.trades],
            "rejections": [{"subject": r.instruction.subject, "action": r.instruction.action, "reason": r.reason}
                           for r in result.rejections],
            "errors": [str(e) for e in result.errors],
            "portfolio": [e.to_dict() for e in result.entries],
        }

    async def run_autonomous_mode(self, interval: Optional[float] = None, max_cycles: Optional[int] = None):
        """
        Run cycles forever (or max_cycles times), sleeping `interval` seconds in between.
        Cycle errors are logged and the loop continues until too many fail in a row.
        """
        interval = self.settings.cycle_interval if interval is None else interval
        failures = 0
        cycles = 0
        logger.info("Starting autonomous mode...")

        while max_cycles is None or cycles < max_cycles:
            cycles += 1
            try:
                await self.run_cycle()
                failures = 0
            except CycleInProgress as e:
                logger.warning(str(e))
            except CYCLE_ERRORS as e:
                failures += 1
                logger.error(f"Cycle failed ({failures}/{self.settings.max_consecutive_failures}): {e}")
                await self.history.record(cycle_record("", status="failed", error=str(e)))
                if failures >= self.settings.max_consecutive_failures:
                    logger.error("Too many consecutive failures, stopping autonomous mode")
                    raise
            except Exception as e:
                failures += 1
                logger.exception(f"Error in trading cycle ({failures}/{self.settings.max_consecutive_failures})")
                await self.history.record(cycle_record("", status="failed", error=repr(e)))
                if failures >= self.settings.max_consecutive_failures:
                    logger.error("Too many consecutive failures, stopping autonomous mode")
                    raise

            await asyncio.sleep(interval)


_wizard: Optional[MarketWizard] = None


def get_wizard() -> MarketWizard:
    global _wizard
    if _wizard is None:
        _wizard = MarketWizard(Settings.from_env(), executor=PaperTradeExecutor())
    return _wizard


async def run_agent_cycle() -> Dict[str, Any]:
    """Run one cycle on the shared wizard and report errors instead of raising."""
    wizard = get_wizard()
    try:
        return await wizard.run_cycle()
    except CycleInProgress as e:
        return {"status": "busy", "message": str(e)}
    except CYCLE_ERRORS as e:
        logger.error(f"Error in trading cycle: {e}")
        await wizard.history.record(cycle_record("", status="failed", error=str(e)))
        return {"status": "error", "message": str(e)}
    except Exception as e:
        logger.exception("Error in trading cycle")
        await wizard.history.record(cycle_record("", status="failed", error=repr(e)))
        return {"status": "error", "message": str(e)}


async def main():
    settings = validate_environment()
    logging.getLogger().setLevel(settings.log_level)
    wizard = MarketWizard(settings, executor=PaperTradeExecutor())
    await wizard.initialize()
    await wizard.run_autonomous_mode()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except ConfigError as e:
        logger.error(str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Stopped")
    except Exception:
        logger.exception("Fatal error")
        sys.exit(1)

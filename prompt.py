from typing import List

from portfolio import PortfolioEntry
from prices import PriceSnapshot
from registry import TokenRegistry

SYSTEM_PROMPT = """
## ROLE & IDENTITY
You are Market Wizard, an autonomous AI trader specializing in memecoins on Base.
You analyze price data, market trends, and your current portfolio to make trading decisions.

Be precise, efficient, and solely focused on profitable trading decisions.
Refrain from unnecessary explanations unless explicitly requested.

---

## CAPITAL RULES (NON-NEGOTIABLE)
- Stay within the limits of your overall capital.
- Never invest all your capital into a single token. Diversify, or if there is only
  one token worth buying, only invest a portion of the total capital into it.
- Invest at most 5% of your capital into any single token.
- When you calculate how much to sell of a token at the latest price, make sure the
  portfolio amount never goes below zero.

---

## OUTPUT RULES
- One line per trade, nothing else.
- Buy:  <token name> buy <amount in {QUOTE_ASSET}>
- Sell: <token name> sell <amount in {SELL_UNIT}>
- If you are not trading anything, reply with the single word: refraining
"""

USER_PROMPT = """
## CURRENT PORTFOLIO
{PORTFOLIO}

## LATEST PRICE UPDATES FOR THE TRACKED MEMECOINS ON BASE
{PRICE_UPDATES}

## TASK
Act as an expert technical analyst and consider all provided metrics: the price,
the 24h price change, the market cap, and the 24h volume.
Decide whether any of the tokens are worth buying or selling, or refrain.
Answer only in the required line format.
"""


def format_portfolio(entries: List[PortfolioEntry], quote_asset: str) -> str:
    lines = []
    for entry in entries:
        if entry.asset == quote_asset:
            lines.append(f"{entry.value} {quote_asset}.")
        else:
            lines.append(f"{entry.amount} of {entry.asset} bought at the price level of {entry.value} {quote_asset}.")
    return "\n".join(lines) if lines else "empty"


def format_price_updates(snapshot: PriceSnapshot, registry: TokenRegistry) -> str:
    lines = []
    for address, info in snapshot.items():
        name = registry.name_for(address) or address
        lines.append(
            f"name: {name}, contractAddress: {address}, price: {info.usd} USD, "
            f"market cap: {info.usd_market_cap} USD, 24h volume: {info.usd_24h_vol}, "
            f"24h change: {info.usd_24h_change} %"
        )
    if snapshot.quote_asset not in ("USDC", "USD"):
        lines.append(f"{snapshot.quote_asset} price: {snapshot.quote_price_usd} USD")
    return "\n".join(lines) if lines else "no price data"


def build_messages(entries: List[PortfolioEntry], snapshot: PriceSnapshot, registry: TokenRegistry,
                   sell_unit: str) -> List[dict]:
    system = SYSTEM_PROMPT.format(QUOTE_ASSET=snapshot.quote_asset, SELL_UNIT=sell_unit)
    user = USER_PROMPT.format(
        PORTFOLIO=format_portfolio(entries, snapshot.quote_asset),
        PRICE_UPDATES=format_price_updates(snapshot, registry),
    )
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": user},
    ]

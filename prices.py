import logging
from dataclasses import dataclass
from types import MappingProxyType
from collections.abc import Mapping
from typing import Dict, Iterable, Iterator, List, Optional

import httpx

from exceptions import FeedUnavailable

logger = logging.getLogger(__name__)

COINGECKO_TOKEN_PRICE_URL = "https://api.coingecko.com/api/v3/simple/token_price/base"
COINRANKING_API_URL = "https://api.coinranking.com/v2"
WETH_UUID = "Mtfb0obXVh59u"
DEFAULT_TIMEOUT = 10.0


@dataclass(frozen=True)
class PriceInfo:
    usd: float
    usd_market_cap: Optional[float] = None
    usd_24h_vol: Optional[float] = None
    usd_24h_change: Optional[float] = None
    last_updated_at: Optional[int] = None


class PriceSnapshot(Mapping):
    """
    Read-only address -> PriceInfo mapping for one cycle.

    Addresses are matched case-insensitively. Prices are stored in USD;
    price_in_quote() converts them into units of the quote asset using
    quote_price_usd (1.0 for a USD stablecoin quote).
    """

    def __init__(self, prices: Mapping[str, PriceInfo], quote_asset: str = "USDC", quote_price_usd: float = 1.0):
        if quote_price_usd <= 0:
            raise ValueError(f"Quote price must be positive, got {quote_price_usd}")
        self._prices = MappingProxyType({address.lower(): info for address, info in prices.items()})
        self.quote_asset = quote_asset
        self.quote_price_usd = float(quote_price_usd)

    def __getitem__(self, address: str) -> PriceInfo:
        return self._prices[address.lower()]

    def __iter__(self) -> Iterator[str]:
        return iter(self._prices)

    def __len__(self) -> int:
        return len(self._prices)

    def price_in_quote(self, address: Optional[str]) -> Optional[float]:
        """Unit price in quote-asset units, or None when there is no usable price."""
        if not address:
            return None
        info = self.get(address)
        if info is None or not info.usd or info.usd <= 0:
            return None
        return info.usd / self.quote_price_usd


def _to_float(value) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


async def _get_json(client: httpx.AsyncClient, url: str, **kwargs) -> dict:
    try:
        response = await client.get(url, **kwargs)
        response.raise_for_status()
        return response.json()
    except httpx.HTTPError as e:
        logger.error(f"Price feed request to {url} failed: {e}")
        raise FeedUnavailable(f"Price feed request failed: {e}") from e
    except ValueError as e:
        logger.error(f"Price feed at {url} returned a non-JSON body: {e}")
        raise FeedUnavailable(f"Price feed returned invalid JSON: {e}") from e


async def fetch_token_prices(addresses: Iterable[str], client: Optional[httpx.AsyncClient] = None,
                             timeout: float = DEFAULT_TIMEOUT) -> Dict[str, PriceInfo]:
    """
    Fetch USD price data for Base token contracts from CoinGecko.

    Returns a dict keyed by lower-cased contract address. Addresses CoinGecko
    does not know are simply absent from the result.
    """
    addresses = [a for a in addresses if a]
    if not addresses:
        return {}

    params = {
        "contract_addresses": ",".join(addresses),
        "vs_currencies": "usd",
        "include_market_cap": "true",
        "include_24hr_vol": "true",
        "include_24hr_change": "true",
        "include_last_updated_at": "true",
    }

    if client is None:
        async with httpx.AsyncClient(timeout=timeout) as own_client:
            data = await _get_json(own_client, COINGECKO_TOKEN_PRICE_URL, params=params)
    else:
        data = await _get_json(client, COINGECKO_TOKEN_PRICE_URL, params=params)

    if not isinstance(data, dict):
        raise FeedUnavailable(f"Unexpected token price response: {data!r}")

    prices = {}
    for address, entry in data.items():
        if not isinstance(entry, dict):
            logger.warning(f"Unexpected price entry for {address}: {entry!r}, skipping")
            continue
        usd = _to_float(entry.get("usd"))
        if usd is None:
            logger.warning(f"No USD price for {address}, skipping")
            continue
        prices[address.lower()] = PriceInfo(
            usd=usd,
            usd_market_cap=_to_float(entry.get("usd_market_cap")),
            usd_24h_vol=_to_float(entry.get("usd_24h_vol")),
            usd_24h_change=_to_float(entry.get("usd_24h_change")),
            last_updated_at=entry.get("last_updated_at"),
        )
    return prices


async def fetch_coins(api_key: str, client: Optional[httpx.AsyncClient] = None,
                      timeout: float = DEFAULT_TIMEOUT) -> List[dict]:
    """Fetch the Coinranking listing of meme coins on Base."""
    params = {"timePeriod": "1h", "blockchains[]": "base", "tags[]": "meme"}
    headers = {"x-access-token": api_key}
    url = f"{COINRANKING_API_URL}/coins"

    if client is None:
        async with httpx.AsyncClient(timeout=timeout) as own_client:
            data = await _get_json(own_client, url, params=params, headers=headers)
    else:
        data = await _get_json(client, url, params=params, headers=headers)

    return data.get("data", {}).get("coins", [])


async def fetch_weth_price(api_key: str, client: Optional[httpx.AsyncClient] = None,
                           timeout: float = DEFAULT_TIMEOUT) -> float:
    """Fetch the USD price of WETH from Coinranking."""
    headers = {"x-access-token": api_key}
    url = f"{COINRANKING_API_URL}/coin/{WETH_UUID}/price"

    if client is None:
        async with httpx.AsyncClient(timeout=timeout) as own_client:
            data = await _get_json(own_client, url, headers=headers)
    else:
        data = await _get_json(client, url, headers=headers)

    price = _to_float(data.get("data", {}).get("price"))
    if price is None or price <= 0:
        raise FeedUnavailable(f"Invalid WETH price in response: {data}")
    return price


def coin_address(coin: dict, chain: str = "base") -> Optional[str]:
    """
    Pick the contract address for `chain` out of a Coinranking coin.
    Coinranking formats them as '<chain>/<address>'.
    """
    for entry in coin.get("contractAddresses") or []:
        if "/" in entry:
            prefix, address = entry.split("/", 1)
            if prefix.lower() == chain:
                return address.lower()
        else:
            return entry.lower()
    return None


def prices_from_coins(coins: Iterable[dict]) -> Dict[str, PriceInfo]:
    """Convert Coinranking coins into address -> PriceInfo. Coins without a Base address are dropped."""
    prices = {}
    for coin in coins:
        address = coin_address(coin)
        usd = _to_float(coin.get("price"))
        if address is None or usd is None:
            continue
        prices[address] = PriceInfo(
            usd=usd,
            usd_market_cap=_to_float(coin.get("marketCap")),
            usd_24h_vol=_to_float(coin.get("24hVolume")),
            usd_24h_change=_to_float(coin.get("change")),
            last_updated_at=None,
        )
    return prices

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, List, Mapping, Optional

from prices import coin_address

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Memecoin:
    name: str
    symbol: str
    address: str


class TokenRegistry:
    """
    Immutable name <-> address lookup built once per cycle.

    Names resolve first, symbols act as aliases, and a case-insensitive
    match is tried last, since the agent does not always echo names exactly.
    """

    def __init__(self, coins: Iterable[Memecoin]):
        self.coins: List[Memecoin] = list(coins)

        by_name = {}
        for coin in self.coins:
            by_name.setdefault(coin.symbol, coin.address)
        for coin in self.coins:
            by_name[coin.name] = coin.address

        self.name_to_address: Mapping[str, str] = MappingProxyType(by_name)
        self._folded = {name.casefold(): address for name, address in by_name.items()}
        self.address_to_name: Mapping[str, str] = MappingProxyType(
            {coin.address.lower(): coin.name for coin in self.coins}
        )

    def __len__(self):
        return len(self.coins)

    def resolve(self, subject: str) -> Optional[str]:
        address = self.name_to_address.get(subject)
        if address is None:
            address = self._folded.get(subject.strip().casefold())
        return address

    def name_for(self, address: str) -> Optional[str]:
        return self.address_to_name.get(address.lower())

    @property
    def addresses(self) -> List[str]:
        return [coin.address for coin in self.coins]


def read_memecoins_file(path) -> TokenRegistry:
    """Load the tracked meme coins ([{name, symbol, address}, ...]) from a JSON file."""
    try:
        with open(Path(path), "r", encoding="utf-8") as f:
            items = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.error(f"Error reading or parsing memecoins file {path}: {e}")
        raise

    return TokenRegistry(
        Memecoin(name=item["name"], symbol=item.get("symbol", item["name"]), address=item["address"])
        for item in items
    )


def registry_from_coins(coins: Iterable[dict]) -> TokenRegistry:
    """Build the registry from a Coinranking listing, skipping coins without a Base address."""
    memecoins = []
    for coin in coins:
        address = coin_address(coin)
        if address is None:
            continue
        memecoins.append(Memecoin(name=coin["name"], symbol=coin.get("symbol", coin["name"]), address=address))
    return TokenRegistry(memecoins)

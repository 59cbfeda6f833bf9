import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from exceptions import ConfigError
from reconcile import OverdraftPolicy, SellConvention

logger = logging.getLogger(__name__)

QUOTE_ADDRESSES = {
    "USDC": "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913",
    "WETH": "0x4200000000000000000000000000000000000006",
}


def _bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    llm_api_key: Optional[str]
    llm_model: str = "openai/gpt-4o-mini"
    llm_base_url: str = "https://openrouter.ai/api/v1"
    llm_timeout: float = 120.0
    price_source: str = "coingecko"
    coinranking_api_key: Optional[str] = None
    quote_asset: str = "USDC"
    portfolio_path: str = "portfolio.json"
    memecoins_path: str = "base_top_memecoins.json"
    initial_balance: float = 1000.0
    cycle_interval: float = 120.0
    max_tokens: int = 5
    http_timeout: float = 10.0
    sell_convention: SellConvention = SellConvention.QUOTE
    overdraft_policy: OverdraftPolicy = OverdraftPolicy.CLAMP
    prune_empty: bool = False
    max_consecutive_failures: int = 5
    trade_delay: float = 0.0
    mongo_uri: Optional[str] = None
    log_level: str = "INFO"

    @property
    def quote_address(self) -> Optional[str]:
        return QUOTE_ADDRESSES.get(self.quote_asset)

    @property
    def sell_unit(self) -> str:
        """Unit the agent is told to use for sell amounts."""
        return self.quote_asset if self.sell_convention == SellConvention.QUOTE else "tokens"

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        env = os.getenv
        try:
            return cls(
                llm_api_key=env("OPENROUTER_API_KEY"),
                llm_model=env("LLM_MODEL", cls.llm_model),
                llm_base_url=env("LLM_BASE_URL", cls.llm_base_url),
                llm_timeout=float(env("LLM_TIMEOUT", cls.llm_timeout)),
                price_source=env("PRICE_SOURCE", cls.price_source).lower(),
                coinranking_api_key=env("COINRANKING_API_KEY"),
                quote_asset=env("QUOTE_ASSET", cls.quote_asset).upper(),
                portfolio_path=env("PORTFOLIO_PATH", cls.portfolio_path),
                memecoins_path=env("MEMECOINS_PATH", cls.memecoins_path),
                initial_balance=float(env("INITIAL_BALANCE", cls.initial_balance)),
                cycle_interval=float(env("CYCLE_INTERVAL", cls.cycle_interval)),
                max_tokens=int(env("MAX_TOKENS", cls.max_tokens)),
                http_timeout=float(env("HTTP_TIMEOUT", cls.http_timeout)),
                sell_convention=SellConvention(env("SELL_CONVENTION", cls.sell_convention.value).lower()),
                overdraft_policy=OverdraftPolicy(env("OVERDRAFT_POLICY", cls.overdraft_policy.value).lower()),
                prune_empty=_bool(env("PRUNE_EMPTY", "false")),
                max_consecutive_failures=int(env("MAX_CONSECUTIVE_FAILURES", cls.max_consecutive_failures)),
                trade_delay=float(env("TRADE_DELAY", cls.trade_delay)),
                mongo_uri=env("MONGO_URI"),
                log_level=env("LOG_LEVEL", cls.log_level).upper(),
            )
        except ValueError as e:
            raise ConfigError(f"Invalid configuration value: {e}") from e

    def validate(self):
        """Raise ConfigError listing every missing required variable."""
        missing = []
        if not self.llm_api_key:
            missing.append("OPENROUTER_API_KEY")
        if self.price_source not in ("coingecko", "coinranking"):
            raise ConfigError(f"Unknown PRICE_SOURCE {self.price_source!r}, expected coingecko or coinranking")
        if self.price_source == "coinranking" and not self.coinranking_api_key:
            missing.append("COINRANKING_API_KEY")
        if self.quote_asset not in QUOTE_ADDRESSES:
            raise ConfigError(f"Unsupported QUOTE_ASSET {self.quote_asset!r}")

        if missing:
            for name in missing:
                logger.error(f"Required environment variable not set: {name}=your_{name.lower()}_here")
            raise ConfigError(f"Required environment variables are not set: {', '.join(missing)}")

        if not self.mongo_uri:
            logger.warning("MONGO_URI not set, trade history will not be recorded")


def validate_environment() -> Settings:
    settings = Settings.from_env()
    settings.validate()
    return settings

import pytest

from portfolio import PortfolioEntry
from prices import PriceInfo, PriceSnapshot

PEPE = "0xaaa0000000000000000000000000000000000001"
DOGE = "0xbbb0000000000000000000000000000000000002"
GHOST = "0xccc0000000000000000000000000000000000003"


@pytest.fixture
def snapshot():
    return PriceSnapshot({
        PEPE: PriceInfo(usd=2.0, usd_market_cap=1e6, usd_24h_vol=5e4, usd_24h_change=3.5),
        DOGE: PriceInfo(usd=0.5),
    })


@pytest.fixture
def name_to_address():
    return {"PEPE": PEPE, "DOGE": DOGE, "GHOST": GHOST}


@pytest.fixture
def entries():
    return [
        PortfolioEntry(asset="USDC", value=1000.0, amount=1000.0, purchased=1),
        PortfolioEntry(asset="PEPE", address=PEPE, value=2.0, amount=100.0, purchased=1),
    ]

import pytest

from conftest import DOGE, GHOST, PEPE
from exceptions import MalformedInstruction, MissingQuoteAsset, UnresolvedPriceError
from instructions import ParsedInstruction, parse_reply
from portfolio import PortfolioEntry, find_entry, total_value
from prices import PriceInfo, PriceSnapshot
from reconcile import OverdraftPolicy, SellConvention, reconcile
from registry import Memecoin, TokenRegistry

NOW = 5000


def run(entries, reply, snapshot, name_to_address, **kwargs):
    kwargs.setdefault("timestamp", NOW)
    return reconcile(entries, parse_reply(reply), snapshot, name_to_address, **kwargs)


def test_new_asset_insertion(entries, snapshot, name_to_address):
    result = run(entries, "DOGE buy 10 USDC", snapshot, name_to_address)

    doge = find_entry(result.entries, "DOGE")
    assert doge.address == DOGE
    assert doge.amount == pytest.approx(10 / 0.5)
    assert doge.value == 0.5
    assert doge.purchased == NOW
    assert find_entry(result.entries, "USDC").value == pytest.approx(990.0)
    assert find_entry(result.entries, "USDC").amount == pytest.approx(990.0)


def test_buy_existing_position(entries, snapshot, name_to_address):
    result = run(entries, "PEPE buy 20", snapshot, name_to_address)

    pepe = find_entry(result.entries, "PEPE")
    assert pepe.amount == pytest.approx(110.0)
    assert pepe.value == 2.0
    assert len(result.entries) == 2
    assert find_entry(result.entries, "USDC").value == pytest.approx(980.0)
    assert result.total_buy == pytest.approx(20.0)


def test_sell_in_quote_units_conserves_value(entries, snapshot, name_to_address):
    result = run(entries, "PEPE sell 50 USDC", snapshot, name_to_address)

    before_quote = find_entry(entries, "USDC").value
    after_quote = find_entry(result.entries, "USDC").value
    assert find_entry(result.entries, "PEPE").amount == pytest.approx(75.0)
    assert after_quote - before_quote == pytest.approx(result.total_sell)
    assert result.total_sell == pytest.approx(50.0)
    assert total_value(result.entries, "USDC") == pytest.approx(total_value(entries, "USDC"))


def test_sell_in_token_units(entries, snapshot, name_to_address):
    result = run(entries, "PEPE sell 50", snapshot, name_to_address, sell_convention=SellConvention.TOKEN)

    assert find_entry(result.entries, "PEPE").amount == pytest.approx(50.0)
    assert find_entry(result.entries, "USDC").value == pytest.approx(1100.0)


def test_sell_restamps_price(snapshot, name_to_address):
    entries = [
        PortfolioEntry(asset="USDC", value=0.0, amount=0.0, purchased=1),
        PortfolioEntry(asset="PEPE", address=PEPE, value=1.0, amount=10.0, purchased=1),
    ]
    result = run(entries, "PEPE sell 4", snapshot, name_to_address)

    pepe = find_entry(result.entries, "PEPE")
    assert pepe.value == 2.0
    assert pepe.amount == pytest.approx(8.0)
    assert pepe.purchased == NOW


def test_oversell_is_clamped(entries, snapshot, name_to_address):
    result = run(entries, "PEPE sell 1000", snapshot, name_to_address, overdraft=OverdraftPolicy.CLAMP)

    assert find_entry(result.entries, "PEPE").amount == 0.0
    assert find_entry(result.entries, "USDC").value == pytest.approx(1200.0)
    assert result.trades[0].clamped


def test_oversell_is_rejected(entries, snapshot, name_to_address):
    result = run(entries, "PEPE sell 1000", snapshot, name_to_address, overdraft=OverdraftPolicy.REJECT)

    assert result.entries == entries
    assert not result.changed
    assert [r.reason for r in result.rejections] == ["sell exceeds holdings"]


@pytest.mark.parametrize("policy", list(OverdraftPolicy))
@pytest.mark.parametrize("reply", [
    "PEPE sell 199.99",
    "PEPE sell 200",
    "PEPE sell 200.01",
    "PEPE sell 5000\nDOGE sell 1",
    "PEPE sell 100\nPEPE sell 300",
])
def test_amounts_never_go_negative(entries, snapshot, name_to_address, policy, reply):
    result = run(entries, reply, snapshot, name_to_address, overdraft=policy)

    assert all(entry.amount >= 0 for entry in result.entries)
    assert find_entry(result.entries, "USDC").value <= 1200.0 + 1e-9


def test_buy_beyond_capital(entries, snapshot, name_to_address):
    clamped = run(entries, "DOGE buy 5000", snapshot, name_to_address, overdraft=OverdraftPolicy.CLAMP)
    assert find_entry(clamped.entries, "USDC").value == pytest.approx(0.0)
    assert find_entry(clamped.entries, "DOGE").amount == pytest.approx(2000.0)

    rejected = run(entries, "DOGE buy 5000", snapshot, name_to_address, overdraft=OverdraftPolicy.REJECT)
    assert rejected.entries == entries
    assert rejected.rejections[0].reason == "insufficient capital"


def test_sale_proceeds_fund_buys(entries, snapshot, name_to_address):
    drained = [
        PortfolioEntry(asset="USDC", value=0.0, amount=0.0, purchased=1),
        entries[1],
    ]
    result = run(drained, "DOGE buy 50\nPEPE sell 60", snapshot, name_to_address,
                 overdraft=OverdraftPolicy.REJECT)

    assert find_entry(result.entries, "DOGE").amount == pytest.approx(100.0)
    assert find_entry(result.entries, "USDC").value == pytest.approx(10.0)


def test_last_instruction_per_side_wins(entries, snapshot, name_to_address):
    result = run(entries, "PEPE buy 10\nPEPE buy 30", snapshot, name_to_address)

    assert find_entry(result.entries, "PEPE").amount == pytest.approx(115.0)
    assert find_entry(result.entries, "USDC").value == pytest.approx(970.0)
    assert len(result.trades) == 1


def test_zero_amounts_are_ignored(entries, snapshot, name_to_address):
    result = run(entries, "PEPE buy 0\nDOGE sell 0.0", snapshot, name_to_address)

    assert result.entries == entries
    assert not result.trades
    assert not result.rejections


def test_missing_price_for_new_buy_does_not_block_batch(entries, snapshot, name_to_address):
    result = run(entries, "GHOST buy 10\nPEPE buy 10", snapshot, name_to_address)

    assert len(result.errors) == 1
    assert isinstance(result.errors[0], UnresolvedPriceError)
    assert result.errors[0].address == GHOST
    assert find_entry(result.entries, "GHOST") is None
    assert find_entry(result.entries, "PEPE").amount == pytest.approx(105.0)


def test_unknown_subject_carries_no_address(entries, snapshot, name_to_address):
    result = run(entries, "Mystery Coin buy 10", snapshot, name_to_address)

    assert result.errors[0].subject == "Mystery Coin"
    assert result.errors[0].address is None
    assert result.entries == entries


def test_row_without_price_is_untouched(snapshot):
    entries = [
        PortfolioEntry(asset="USDC", value=1000.0, amount=1000.0, purchased=1),
        PortfolioEntry(asset="OLD", address="0xddd", value=3.0, amount=7.0, purchased=1),
    ]
    result = run(entries, "OLD sell 5", snapshot, {"OLD": "0xddd"})

    assert result.entries == entries
    assert result.rejections[0].reason == "no current price"


def test_untouched_rows_keep_timestamp(entries, snapshot, name_to_address):
    result = run(entries, "DOGE buy 10", snapshot, name_to_address)

    assert find_entry(result.entries, "PEPE").purchased == 1
    assert find_entry(result.entries, "USDC").purchased == NOW


def test_sold_out_rows_are_kept_unless_pruned(entries, snapshot, name_to_address):
    kept = run(entries, "PEPE sell 200", snapshot, name_to_address)
    assert find_entry(kept.entries, "PEPE").amount == 0.0

    pruned = run(entries, "PEPE sell 200", snapshot, name_to_address, prune_empty=True)
    assert find_entry(pruned.entries, "PEPE") is None
    assert find_entry(pruned.entries, "USDC").value == pytest.approx(1200.0)


def test_address_match_is_case_insensitive(snapshot):
    entries = [
        PortfolioEntry(asset="USDC", value=100.0, amount=100.0, purchased=1),
        PortfolioEntry(asset="PEPE", address=PEPE.upper().replace("0X", "0x"), value=2.0, amount=10.0, purchased=1),
    ]
    result = run(entries, "PEPE buy 10", snapshot, {"PEPE": PEPE})

    assert len(result.entries) == 2
    assert find_entry(result.entries, "PEPE").amount == pytest.approx(15.0)


def test_volatile_quote_asset():
    snapshot = PriceSnapshot({PEPE: PriceInfo(usd=2.0)}, quote_asset="WETH", quote_price_usd=2000.0)
    entries = [PortfolioEntry(asset="WETH", value=1.0, amount=1.0, purchased=1)]

    result = run(entries, "PEPE buy 0.01 WETH", snapshot, {"PEPE": PEPE})

    pepe = find_entry(result.entries, "PEPE")
    assert pepe.value == pytest.approx(0.001)
    assert pepe.amount == pytest.approx(10.0)
    assert find_entry(result.entries, "WETH").value == pytest.approx(0.99)


def test_registry_resolves_symbols_and_case(entries, snapshot):
    registry = TokenRegistry([Memecoin(name="Doge Coin", symbol="DOGE", address=DOGE)])

    result = run(entries, "doge coin buy 5", snapshot, registry)

    assert find_entry(result.entries, "doge coin").address == DOGE


@pytest.mark.parametrize("amount", ["ten", "-5", "nan", None])
def test_bad_amount_is_malformed(entries, snapshot, name_to_address, amount):
    instruction = ParsedInstruction("PEPE", "buy", amount)
    with pytest.raises(MalformedInstruction):
        reconcile(entries, [instruction], snapshot, name_to_address)


def test_missing_quote_row(snapshot, name_to_address):
    entries = [PortfolioEntry(asset="PEPE", address=PEPE, value=2.0, amount=1.0, purchased=1)]
    with pytest.raises(MissingQuoteAsset):
        run(entries, "PEPE sell 1", snapshot, name_to_address)


def test_input_rows_are_not_mutated(entries, snapshot, name_to_address):
    original = list(entries)
    run(entries, "PEPE sell 10\nDOGE buy 10", snapshot, name_to_address)
    assert entries == original


def test_duplicate_sells_for_one_address(entries, snapshot):
    aliases = {"PEPE": PEPE, "pepe": PEPE}
    result = run(entries, "PEPE sell 10\npepe sell 20", snapshot, aliases)

    assert [t.quote_amount for t in result.trades] == [pytest.approx(20.0)]
    assert find_entry(result.entries, "PEPE").amount == pytest.approx(90.0)
    assert [(r.instruction.subject, r.reason) for r in result.rejections] == [("PEPE", "duplicate for address")]


def test_duplicate_buys_for_one_address(entries, snapshot):
    aliases = {"DOGE": DOGE, "Doge": DOGE}
    result = run(entries, "DOGE buy 10\nDoge buy 4", snapshot, aliases)

    assert len(result.trades) == 1
    assert find_entry(result.entries, "Doge").amount == pytest.approx(8.0)
    assert find_entry(result.entries, "DOGE") is None
    assert find_entry(result.entries, "USDC").value == pytest.approx(996.0)
    assert [(r.instruction.subject, r.reason) for r in result.rejections] == [("DOGE", "duplicate for address")]

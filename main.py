from dataclasses import asdict
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv
from exceptions import PersistenceError
from portfolio import total_value
from trading_agent import get_wizard, run_agent_cycle

load_dotenv()

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("startup")
async def startup_event():
    await get_wizard().initialize()

@app.post("/trade_decision")
async def trade_decision():
    """
    Trigger the AI Agent to analyze the latest prices and trade.
    """
    result = await run_agent_cycle()
    return result

@app.get("/portfolio")
def get_portfolio():
    wizard = get_wizard()
    settings = wizard.settings
    if not wizard.store.exists():
        return {"portfolio": [], "total_value": settings.initial_balance, "quote_asset": settings.quote_asset}
    try:
        entries = wizard.store.read()
    except PersistenceError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return {
        "portfolio": [e.to_dict() for e in entries],
        "total_value": total_value(entries, settings.quote_asset),
        "quote_asset": settings.quote_asset,
    }

@app.get("/prices")
def get_prices():
    """
    Prices used by the most recent cycle.
    """
    wizard = get_wizard()
    snapshot = wizard.last_snapshot
    if snapshot is None:
        return {"prices": {}, "quote_asset": wizard.settings.quote_asset}
    registry = wizard.last_registry
    return {
        "prices": {
            address: {"name": registry.name_for(address) if registry else None, **asdict(info)}
            for address, info in snapshot.items()
        },
        "quote_asset": snapshot.quote_asset,
        "quote_price_usd": snapshot.quote_price_usd,
    }

@app.get("/history")
async def get_history(limit: int = 50):
    return {"history": await get_wizard().history.recent(limit)}

@app.get("/")
def read_root():
    return {"message": "Market Wizard Backend"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)

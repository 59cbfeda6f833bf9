import logging
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import certifi
from motor.motor_asyncio import AsyncIOMotorClient

from reconcile import ReconcileResult

logger = logging.getLogger(__name__)


def cycle_record(reply: str, result: Optional[ReconcileResult] = None, status: str = "applied",
                 error: Optional[str] = None) -> Dict[str, Any]:
    record = {
        "time": datetime.now(timezone.utc).isoformat(),
        "status": status,
        "reply": reply,
        "trades": [],
        "rejections": [],
        "errors": [],
    }
    if result is not None:
        record["trades"] = [asdict(trade) for trade in result.trades]
        record["rejections"] = [
            {"line": asdict(r.instruction), "reason": r.reason} for r in result.rejections
        ]
        record["errors"] = [str(e) for e in result.errors]
    if error is not None:
        record["errors"].append(error)
    return record


class TradeHistory:
    """Append-only journal of cycle outcomes in MongoDB. A no-op without MONGO_URI."""

    def __init__(self, mongo_uri: Optional[str] = None, database: str = "trading_bot"):
        self.mongo_uri = mongo_uri
        self.database = database
        self.db_client = None
        self.collection = None

    async def initialize(self):
        if not self.mongo_uri:
            logger.info("MONGO_URI not set, trade history disabled")
            return

        try:
            self.db_client = AsyncIOMotorClient(self.mongo_uri, tlsCAFile=certifi.where())
            db = self.db_client.get_database(self.database)
            self.collection = db.get_collection("trade_history")
            logger.info("Connected to MongoDB")
        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            self.collection = None

    async def record(self, record: Dict[str, Any]):
        if self.collection is None:
            return

        try:
            await self.collection.insert_one(dict(record))
        except Exception as e:
            logger.error(f"Failed to record trade history: {e}")

    async def recent(self, limit: int = 50) -> List[Dict[str, Any]]:
        if self.collection is None:
            return []

        cursor = self.collection.find({}, {"_id": 0}).sort("time", -1).limit(limit)
        return await cursor.to_list(length=limit)

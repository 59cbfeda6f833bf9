import json
import logging
import os
import tempfile
import time
from contextlib import contextmanager
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

import filelock

from exceptions import CycleInProgress, PersistenceError

logger = logging.getLogger(__name__)

INITIAL_BALANCE = 1000.0


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class PortfolioEntry:
    asset: str
    value: float
    amount: float
    purchased: int
    address: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"asset": self.asset}
        if self.address is not None:
            data["address"] = self.address
        data.update({"value": self.value, "amount": self.amount, "purchased": self.purchased})
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PortfolioEntry":
        return cls(
            asset=data["asset"],
            address=data.get("address"),
            value=float(data.get("value", 0.0)),
            amount=float(data.get("amount", 0.0)),
            purchased=int(data.get("purchased", 0)),
        )

    def restamp(self, timestamp: int, **changes) -> "PortfolioEntry":
        return replace(self, purchased=timestamp, **changes)


def find_entry(entries: List[PortfolioEntry], asset: str) -> Optional[PortfolioEntry]:
    for entry in entries:
        if entry.asset == asset:
            return entry
    return None


def total_value(entries: List[PortfolioEntry], quote_asset: str) -> float:
    """Portfolio worth in quote units: the quote row's balance plus amount * unit price of every position."""
    total = 0.0
    for entry in entries:
        if entry.asset == quote_asset:
            total += entry.value
        else:
            total += entry.amount * entry.value
    return total


def _check_unique(entries: List[PortfolioEntry]):
    seen = set()
    for entry in entries:
        if entry.asset in seen:
            raise PersistenceError(f"Duplicate portfolio row for {entry.asset}")
        seen.add(entry.asset)


class PortfolioStore:
    """
    JSON file holding the portfolio ledger.

    Reads return the full row list, writes replace the whole file through a
    temporary file and os.replace so a crash never leaves a half-written
    ledger. cycle_lock() gives one trading cycle exclusive use of the file.
    """

    def __init__(self, path):
        self.path = Path(path)
        self._lock = filelock.FileLock(str(self.path) + ".lock")

    def exists(self) -> bool:
        return self.path.exists()

    def read(self) -> List[PortfolioEntry]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                items = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Error parsing portfolio {self.path}: {e}")
            raise PersistenceError(f"Failed to read portfolio: {e}") from e

        try:
            entries = [PortfolioEntry.from_dict(item) for item in items]
        except (KeyError, TypeError, ValueError) as e:
            raise PersistenceError(f"Invalid portfolio row in {self.path}: {e}") from e

        _check_unique(entries)
        return entries

    def write(self, entries: List[PortfolioEntry]):
        _check_unique(entries)
        payload = [entry.to_dict() for entry in entries]
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            temp_fd, temp_path = tempfile.mkstemp(dir=self.path.parent, suffix=".json.tmp")
            try:
                with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                    json.dump(payload, f, indent=2)
                os.replace(temp_path, self.path)
            except Exception:
                if os.path.exists(temp_path):
                    os.unlink(temp_path)
                raise
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Failed to save portfolio to {self.path}: {e}")
            raise PersistenceError(f"Failed to save portfolio: {e}") from e

        logger.info(f"Portfolio saved ({len(entries)} rows)")

    def load_or_initialize(self, quote_asset: str, initial_balance: float = INITIAL_BALANCE,
                           quote_address: Optional[str] = None) -> List[PortfolioEntry]:
        """Read the ledger, or start a fresh one holding only the quote asset."""
        if self.exists():
            return self.read()

        logger.info(f"No existing portfolio found, starting fresh with {initial_balance} {quote_asset}")
        entries = [PortfolioEntry(asset=quote_asset, address=quote_address, value=initial_balance,
                                  amount=initial_balance, purchased=now_ms())]
        self.write(entries)
        return entries

    @contextmanager
    def cycle_lock(self):
        """Hold the portfolio exclusively for one cycle; fail fast if another cycle has it."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._lock.acquire(timeout=0)
        except filelock.Timeout as e:
            raise CycleInProgress(f"Another cycle is already using {self.path}") from e
        try:
            yield self
        finally:
            self._lock.release()

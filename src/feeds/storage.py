"""
BTC Signal Desk - Key-value persistence

Holds last-known-good derivatives snapshots, open interest history and
user positions. Values are JSON-serializable; an entry that cannot be
decoded reads as a miss.
"""

import json
import sqlite3
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

from analyzers.positions import OpenPosition, parse_position

logger = structlog.get_logger()


class KeyValueStore(ABC):
    """String-keyed store of JSON values."""

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        """Decoded value, or None when missing or corrupt."""

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        """Store a JSON-serializable value."""

    @abstractmethod
    def remove(self, key: str) -> None:
        """Delete a key; missing keys are ignored."""


class MemoryStore(KeyValueStore):
    """In-process store. Values are kept encoded so they behave like the SQLite store."""

    def __init__(self):
        self._data: Dict[str, str] = {}

    def get(self, key: str) -> Optional[Any]:
        raw = self._data.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning("Corrupt store entry", key=key, error=str(e))
            return None

    def set(self, key: str, value: Any) -> None:
        self._data[key] = json.dumps(value)

    def remove(self, key: str) -> None:
        self._data.pop(key, None)


class SQLiteStore(KeyValueStore):
    """Key-value store in a single SQLite table."""

    def __init__(self, db_path: str = "data/desk.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self):
        """Create the kv table."""
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS kv (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at REAL NOT NULL
                )
            """)
            conn.commit()

    def get(self, key: str) -> Optional[Any]:
        with sqlite3.connect(self.db_path) as conn:
            row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()

        if row is None:
            return None
        try:
            return json.loads(row[0])
        except json.JSONDecodeError as e:
            logger.warning("Corrupt store entry", key=key, db_path=str(self.db_path), error=str(e))
            return None

    def set(self, key: str, value: Any) -> None:
        encoded = json.dumps(value)
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                "INSERT OR REPLACE INTO kv (key, value, updated_at) VALUES (?, ?, ?)",
                (key, encoded, time.time()),
            )
            conn.commit()

    def remove(self, key: str) -> None:
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("DELETE FROM kv WHERE key = ?", (key,))
            conn.commit()


class PositionBook:
    """
    User positions per asset, stored under 'positions:<asset>'.

    Positions are stored as declared (entry, size, leverage, closed/added
    size); live values are derived on every analysis.
    """

    KEY_PREFIX = "positions:"

    def __init__(self, store: KeyValueStore):
        self.store = store

    def _key(self, asset: str) -> str:
        return f"{self.KEY_PREFIX}{asset.upper()}"

    def list(self, asset: str) -> List[OpenPosition]:
        """
        Positions of an asset. Invalid stored entries are skipped with a warning.
        """
        raw = self.store.get(self._key(asset))
        if not isinstance(raw, list):
            return []

        positions = []
        for item in raw:
            try:
                positions.append(parse_position(item))
            except ValueError as e:
                logger.warning("Skipping invalid stored position", asset=asset, error=str(e))
        return positions

    def save(self, asset: str, positions: List[OpenPosition]) -> None:
        self.store.set(self._key(asset), [p.to_dict() for p in positions])

    def add(self, raw: Dict[str, Any]) -> OpenPosition:
        """
        Validate and store a new position.

        Raises:
            ValueError: If the input is invalid
        """
        position = parse_position(raw)
        positions = self.list(position.asset)
        positions.append(position)
        self.save(position.asset, positions)
        logger.info(
            "Position added",
            asset=position.asset,
            direction=position.direction,
            entry_price=position.entry_price,
            size=position.size,
            leverage=position.leverage,
        )
        return position

    def _update(self, asset: str, index: int, closed: float = 0.0, added: float = 0.0) -> Optional[OpenPosition]:
        positions = self.list(asset)
        if not 0 <= index < len(positions):
            raise ValueError(f"No {asset} position at index {index}")

        raw = positions[index].to_dict()
        raw["closed_size"] += closed
        raw["added_size"] += added
        if raw["size"] - raw["closed_size"] + raw["added_size"] <= 0:
            del positions[index]
            self.save(asset, positions)
            logger.info("Position fully closed", asset=asset, index=index)
            return None

        positions[index] = parse_position(raw)
        self.save(asset, positions)
        return positions[index]

    def record_partial_close(self, asset: str, index: int, amount: float) -> Optional[OpenPosition]:
        """
        Record an explicit partial close. Closing the whole remaining size
        removes the position and returns None.

        Raises:
            ValueError: Unknown index or non-positive amount
        """
        if amount <= 0:
            raise ValueError(f"Close amount must be positive, got {amount}")
        return self._update(asset, index, closed=amount)

    def record_dca(self, asset: str, index: int, amount: float) -> OpenPosition:
        """
        Record a DCA fill that adds to the position.

        Raises:
            ValueError: Unknown index or non-positive amount
        """
        if amount <= 0:
            raise ValueError(f"DCA amount must be positive, got {amount}")
        return self._update(asset, index, added=amount)

    def clear(self, asset: str) -> None:
        self.store.remove(self._key(asset))

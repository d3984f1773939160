"""SQLite position store.

Positions are kept as JSON documents with the queried fields (status,
health factor, tx hash, owner) mirrored into indexed columns. The
connection runs in WAL mode so read-heavy job handlers do not block the
executor's writes.
"""
from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import asdict, fields
from datetime import datetime
from pathlib import Path
from typing import Any

import aiosqlite

from ..errors import (
    DuplicatePositionError,
    InvalidTransitionError,
    PositionNotFoundError,
    TransientError,
)
from ..models import (
    AT_RISK_BELOW,
    LIQUIDATABLE_BELOW,
    FeeConfig,
    FeeType,
    PlatformStats,
    Position,
    PositionStatus,
)

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS positions (
    id TEXT PRIMARY KEY,
    tx_hash TEXT NOT NULL UNIQUE,
    user_address TEXT NOT NULL,
    protocol TEXT NOT NULL,
    status TEXT NOT NULL,
    health_factor REAL NOT NULL,
    created_at TEXT NOT NULL,
    doc TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_positions_status_hf ON positions (status, health_factor);
CREATE INDEX IF NOT EXISTS idx_positions_user ON positions (user_address, created_at);

CREATE TABLE IF NOT EXISTS fee_configs (
    fee_type TEXT PRIMARY KEY,
    active INTEGER NOT NULL,
    doc TEXT NOT NULL
);
"""

_DATETIME_FIELDS = frozenset(
    f.name for f in fields(Position) if "datetime" in str(f.type)
)


def position_to_doc(position: Position) -> dict[str, Any]:
    doc = asdict(position)
    doc["status"] = position.status.value
    for name in _DATETIME_FIELDS:
        value = doc.get(name)
        doc[name] = value.isoformat() if value is not None else None
    return doc


def position_from_doc(doc: dict[str, Any]) -> Position:
    data = dict(doc)
    data["status"] = PositionStatus(data["status"])
    for name in _DATETIME_FIELDS:
        value = data.get(name)
        data[name] = datetime.fromisoformat(value) if value else None
    return Position(**data)


class SqlitePositionStore:
    """aiosqlite-backed implementation of the position and fee stores."""

    def __init__(self, path: str | Path) -> None:
        self.db_path = Path(path)
        self._conn: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        if self._conn is not None:
            return
        logger.info("Initializing SQLite store: %s", self.db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._conn = await aiosqlite.connect(str(self.db_path))
            self._conn.row_factory = aiosqlite.Row
            await self._conn.execute("PRAGMA journal_mode=WAL")
            await self._conn.execute("PRAGMA busy_timeout=5000")
            await self._conn.executescript(SCHEMA_SQL)
            await self._conn.commit()
        except sqlite3.Error as e:
            raise TransientError(f"SQLite store unavailable: {e}") from e

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None
            logger.info("SQLite store closed")

    @property
    def _db(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise TransientError("SQLite store is not initialized")
        return self._conn

    async def _fetch(self, sql: str, params: tuple[Any, ...] = ()) -> list[Position]:
        try:
            async with self._db.execute(sql, params) as cursor:
                rows = await cursor.fetchall()
        except sqlite3.Error as e:
            raise TransientError(f"Position query failed: {e}") from e
        return [position_from_doc(json.loads(row["doc"])) for row in rows]

    async def find_active(self) -> list[Position]:
        return await self._fetch(
            "SELECT doc FROM positions WHERE status = ? ORDER BY health_factor ASC",
            (PositionStatus.ACTIVE.value,),
        )

    async def find_by_risk_below(self, threshold: float) -> list[Position]:
        return await self._fetch(
            "SELECT doc FROM positions WHERE status = ? AND health_factor < ? "
            "ORDER BY health_factor ASC",
            (PositionStatus.ACTIVE.value, threshold),
        )

    async def find_by_id(self, position_id: str) -> Position:
        found = await self._fetch("SELECT doc FROM positions WHERE id = ?", (position_id,))
        if not found:
            raise PositionNotFoundError(position_id)
        return found[0]

    async def find_by_tx_hash(self, tx_hash: str) -> Position | None:
        found = await self._fetch(
            "SELECT doc FROM positions WHERE tx_hash = ?", (tx_hash.lower(),)
        )
        return found[0] if found else None

    async def find_by_user(
        self,
        user_address: str,
        status: PositionStatus | None = None,
        protocol: str | None = None,
    ) -> list[Position]:
        sql = "SELECT doc FROM positions WHERE user_address = ?"
        params: list[Any] = [user_address.lower()]
        if status is not None:
            sql += " AND status = ?"
            params.append(status.value)
        if protocol is not None:
            sql += " AND protocol = ?"
            params.append(protocol)
        sql += " ORDER BY created_at DESC"
        return await self._fetch(sql, tuple(params))

    def _row(self, position: Position) -> tuple[Any, ...]:
        return (
            position.id,
            position.tx_hash,
            position.user_address,
            position.protocol,
            position.status.value,
            position.health_factor,
            position.created_at.isoformat(),
            json.dumps(position_to_doc(position)),
        )

    async def insert(self, position: Position) -> Position:
        try:
            await self._db.execute(
                "INSERT INTO positions (id, tx_hash, user_address, protocol, status, "
                "health_factor, created_at, doc) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                self._row(position),
            )
            await self._db.commit()
        except sqlite3.IntegrityError as e:
            raise DuplicatePositionError(position.tx_hash) from e
        except sqlite3.Error as e:
            raise TransientError(f"Position insert failed: {e}") from e
        return position

    async def save(self, position: Position) -> Position:
        """Overwrite a position; a terminal row only accepts its own status."""
        try:
            cursor = await self._db.execute(
                "UPDATE positions SET status = ?, health_factor = ?, doc = ? "
                "WHERE id = ? AND (status IN (?, ?) OR status = ?)",
                (
                    position.status.value,
                    position.health_factor,
                    json.dumps(position_to_doc(position)),
                    position.id,
                    PositionStatus.PENDING.value,
                    PositionStatus.ACTIVE.value,
                    position.status.value,
                ),
            )
            await self._db.commit()
        except sqlite3.Error as e:
            raise TransientError(f"Position save failed: {e}") from e
        if cursor.rowcount == 0:
            stored = await self.find_by_id(position.id)
            raise InvalidTransitionError(
                f"Position {position.id} is {stored.status.value}; "
                f"refusing to save it as {position.status.value}"
            )
        return position

    async def stats(self) -> PlatformStats:
        active = PositionStatus.ACTIVE.value
        try:
            async with self._db.execute(
                "SELECT COUNT(*) AS total, "
                "SUM(CASE WHEN status = ? THEN 1 ELSE 0 END) AS active, "
                "SUM(CASE WHEN status = ? AND health_factor < ? THEN 1 ELSE 0 END) AS at_risk, "
                "SUM(CASE WHEN status = ? AND health_factor < ? THEN 1 ELSE 0 END) AS liquidatable "
                "FROM positions",
                (active, active, AT_RISK_BELOW, active, LIQUIDATABLE_BELOW),
            ) as cursor:
                row = await cursor.fetchone()
        except sqlite3.Error as e:
            raise TransientError(f"Stats query failed: {e}") from e

        # Money totals live in the documents.
        positions = await self._fetch("SELECT doc FROM positions")
        return PlatformStats(
            total_positions=row["total"] or 0,
            active_positions=row["active"] or 0,
            total_borrowed=sum(p.borrowed_amount for p in positions),
            total_repaid=sum(
                p.repayment_amount
                for p in positions
                if p.status is PositionStatus.REPAID
            ),
            at_risk_count=row["at_risk"] or 0,
            liquidatable_count=row["liquidatable"] or 0,
        )

    async def get_active_fee(self, fee_type: FeeType) -> FeeConfig | None:
        try:
            async with self._db.execute(
                "SELECT doc FROM fee_configs WHERE fee_type = ? AND active = 1",
                (fee_type.value,),
            ) as cursor:
                row = await cursor.fetchone()
        except sqlite3.Error as e:
            raise TransientError(f"Fee query failed: {e}") from e
        if row is None:
            return None
        doc = json.loads(row["doc"])
        doc["fee_type"] = FeeType(doc["fee_type"])
        return FeeConfig(**doc)

    async def save_fee(self, fee: FeeConfig) -> FeeConfig:
        doc = asdict(fee)
        doc["fee_type"] = fee.fee_type.value
        try:
            await self._db.execute(
                "INSERT OR REPLACE INTO fee_configs (fee_type, active, doc) VALUES (?, ?, ?)",
                (fee.fee_type.value, int(fee.active), json.dumps(doc)),
            )
            await self._db.commit()
        except sqlite3.Error as e:
            raise TransientError(f"Fee save failed: {e}") from e
        return fee

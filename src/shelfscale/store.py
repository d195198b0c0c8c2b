from __future__ import annotations

import json
import logging
import math
import sqlite3
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol

from .calibration import Calibration
from .errors import StoreError, UnknownLoadCellError

logger = logging.getLogger(__name__)


def _number(load_cell_id: int, field_name: str, value: float) -> float:
    """Coerce to float, rejecting NaN (SQLite would store it as NULL)."""
    value = float(value)
    if math.isnan(value):
        raise StoreError(f"Refusing to store NaN {field_name} for load cell {load_cell_id}")
    return value


@dataclass
class LoadCell:
    id: int
    offset: float
    multiplier: float
    weight: float = 0.0

    @property
    def calibration(self) -> Calibration:
        return Calibration(offset=self.offset, multiplier=self.multiplier)


class CalibrationStore(Protocol):
    """
    Per-cell key-value contract used by the acquisition loop.

    Operations are independent per cell; there is no cross-cell transaction,
    so readers may see a mix of old and new values across cells.
    """

    def get(self, load_cell_id: int) -> Optional[LoadCell]: ...

    def set_offset(self, load_cell_id: int, offset: float) -> None: ...

    def set_weight(self, load_cell_id: int, weight: float) -> None: ...

    def upsert(self, load_cell_id: int, offset: float, multiplier: float, weight: float = 0.0) -> None: ...

    def list_cells(self, ids: Optional[Iterable[int]] = None) -> List[LoadCell]: ...

    def close(self) -> None: ...


class MemoryCalibrationStore:
    """Dictionary-backed store, used for tests and `store.backend=memory`."""

    def __init__(self, cells: Optional[Iterable[LoadCell]] = None):
        self._lock = threading.Lock()
        self._cells: Dict[int, LoadCell] = {}
        for cell in cells or []:
            self._cells[cell.id] = LoadCell(cell.id, cell.offset, cell.multiplier, cell.weight)

    def get(self, load_cell_id: int) -> Optional[LoadCell]:
        with self._lock:
            cell = self._cells.get(load_cell_id)
            if cell is None:
                return None
            return LoadCell(cell.id, cell.offset, cell.multiplier, cell.weight)

    def set_offset(self, load_cell_id: int, offset: float) -> None:
        with self._lock:
            cell = self._require(load_cell_id)
            cell.offset = _number(load_cell_id, "offset", offset)

    def set_weight(self, load_cell_id: int, weight: float) -> None:
        with self._lock:
            cell = self._require(load_cell_id)
            cell.weight = _number(load_cell_id, "weight", weight)

    def upsert(self, load_cell_id: int, offset: float, multiplier: float, weight: float = 0.0) -> None:
        cell = LoadCell(
            load_cell_id,
            _number(load_cell_id, "offset", offset),
            _number(load_cell_id, "multiplier", multiplier),
            _number(load_cell_id, "weight", weight),
        )
        with self._lock:
            self._cells[load_cell_id] = cell

    def list_cells(self, ids: Optional[Iterable[int]] = None) -> List[LoadCell]:
        with self._lock:
            wanted = sorted(self._cells) if ids is None else list(ids)
            return [
                LoadCell(cell.id, cell.offset, cell.multiplier, cell.weight)
                for cell in (self._cells.get(cell_id) for cell_id in wanted)
                if cell is not None
            ]

    def close(self) -> None:
        pass

    def _require(self, load_cell_id: int) -> LoadCell:
        cell = self._cells.get(load_cell_id)
        if cell is None:
            raise UnknownLoadCellError(load_cell_id)
        return cell


class SqliteCalibrationStore:
    """
    SQLite-backed store holding one row per load cell.

    A single connection is shared between the acquisition thread and HTTP
    handlers; statements are serialized through a lock.
    """

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS loadcells (
            id INTEGER PRIMARY KEY,
            offset REAL NOT NULL,
            multiplier REAL NOT NULL,
            weight REAL NOT NULL DEFAULT 0
        )
    """

    def __init__(self, path: Path | str):
        self.path = Path(path)
        self._lock = threading.Lock()
        try:
            if str(self.path) != ":memory:":
                self.path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self.path), check_same_thread=False)
            with self._conn:
                self._conn.execute(self.SCHEMA)
        except (sqlite3.Error, OSError) as exc:
            raise StoreError(f"Cannot open calibration store {self.path}: {exc}") from exc
        logger.info("Calibration store opened: %s", self.path)

    def get(self, load_cell_id: int) -> Optional[LoadCell]:
        row = self._fetchone(
            "SELECT id, offset, multiplier, weight FROM loadcells WHERE id = ?", (load_cell_id,)
        )
        if row is None:
            return None
        return LoadCell(int(row[0]), float(row[1]), float(row[2]), float(row[3]))

    def set_offset(self, load_cell_id: int, offset: float) -> None:
        value = _number(load_cell_id, "offset", offset)
        self._update("UPDATE loadcells SET offset = ? WHERE id = ?", (value, load_cell_id), load_cell_id)

    def set_weight(self, load_cell_id: int, weight: float) -> None:
        value = _number(load_cell_id, "weight", weight)
        self._update("UPDATE loadcells SET weight = ? WHERE id = ?", (value, load_cell_id), load_cell_id)

    def upsert(self, load_cell_id: int, offset: float, multiplier: float, weight: float = 0.0) -> None:
        self._execute(
            """
            INSERT INTO loadcells (id, offset, multiplier, weight) VALUES (?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                offset = excluded.offset,
                multiplier = excluded.multiplier,
                weight = excluded.weight
            """,
            (
                load_cell_id,
                _number(load_cell_id, "offset", offset),
                _number(load_cell_id, "multiplier", multiplier),
                _number(load_cell_id, "weight", weight),
            ),
        )

    def list_cells(self, ids: Optional[Iterable[int]] = None) -> List[LoadCell]:
        try:
            with self._lock:
                rows = self._conn.execute(
                    "SELECT id, offset, multiplier, weight FROM loadcells ORDER BY id"
                ).fetchall()
        except sqlite3.Error as exc:
            raise StoreError(f"Failed to list load cells: {exc}") from exc
        cells = [LoadCell(int(r[0]), float(r[1]), float(r[2]), float(r[3])) for r in rows]
        if ids is None:
            return cells
        wanted = set(ids)
        return [cell for cell in cells if cell.id in wanted]

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _fetchone(self, sql: str, params: tuple) -> Optional[Any]:
        try:
            with self._lock:
                return self._conn.execute(sql, params).fetchone()
        except sqlite3.Error as exc:
            raise StoreError(f"Store read failed: {exc}") from exc

    def _execute(self, sql: str, params: tuple) -> int:
        try:
            with self._lock, self._conn:
                return self._conn.execute(sql, params).rowcount
        except sqlite3.Error as exc:
            raise StoreError(f"Store write failed: {exc}") from exc

    def _update(self, sql: str, params: tuple, load_cell_id: int) -> None:
        if self._execute(sql, params) == 0:
            raise UnknownLoadCellError(load_cell_id)


def open_store(backend: str, path: Path | str) -> CalibrationStore:
    if backend == "memory":
        return MemoryCalibrationStore()
    if backend == "sqlite":
        return SqliteCalibrationStore(path)
    raise ValueError(f"Unsupported store backend '{backend}'")


def seed_defaults(store: CalibrationStore, count: int, *, overwrite: bool = False) -> int:
    """Create cells 1..count with offset 0 and multiplier 1. Returns the number written."""
    written = 0
    for load_cell_id in range(1, count + 1):
        if not overwrite and store.get(load_cell_id) is not None:
            continue
        store.upsert(load_cell_id, 0.0, 1.0, 0.0)
        written += 1
    logger.info("Seeded %d of %d load cells with default calibration", written, count)
    return written


def seed_from_json(store: CalibrationStore, path: Path) -> int:
    """
    Load calibration records exported from the commissioning database.

    Each document carries `data_order` (the load cell id), `offset` and
    `multiplier`; a missing offset defaults to 0 and a missing or zero
    multiplier to 1. Documents without a positive id are skipped.
    """
    try:
        documents = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ValueError(f"Failed to read calibration export {path}: {exc}") from exc
    if not isinstance(documents, list):
        raise ValueError(f"Calibration export {path} must contain a JSON list")
    written = 0
    for doc in documents:
        load_cell_id = int(doc.get("data_order") or 0)
        if load_cell_id < 1:
            logger.warning("Skipping calibration record without data_order: %s", doc)
            continue
        offset = float(doc.get("offset") or 0.0)
        multiplier = float(doc.get("multiplier") or 1.0)
        logger.info("Inserting load cell id=%d offset=%s multiplier=%s", load_cell_id, offset, multiplier)
        store.upsert(load_cell_id, offset, multiplier, 0.0)
        written += 1
    return written

from __future__ import annotations

import json
from pathlib import Path

import pytest

from shelfscale.errors import StoreError, UnknownLoadCellError
from shelfscale.store import (
    LoadCell,
    MemoryCalibrationStore,
    SqliteCalibrationStore,
    open_store,
    seed_defaults,
    seed_from_json,
)


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path: Path):
    if request.param == "memory":
        instance = MemoryCalibrationStore()
    else:
        instance = SqliteCalibrationStore(tmp_path / "data" / "app.db")
    yield instance
    instance.close()


def test_upsert_and_get(store) -> None:
    assert store.get(1) is None
    store.upsert(1, 10.0, 0.5)
    cell = store.get(1)
    assert cell == LoadCell(id=1, offset=10.0, multiplier=0.5, weight=0.0)
    store.upsert(1, 12.0, 0.25, 3.0)
    assert store.get(1) == LoadCell(id=1, offset=12.0, multiplier=0.25, weight=3.0)


def test_set_offset_and_weight_are_independent(store) -> None:
    store.upsert(1, 10.0, 0.5)
    store.set_weight(1, 42.0)
    store.set_offset(1, 11.5)
    cell = store.get(1)
    assert cell.offset == 11.5
    assert cell.multiplier == 0.5
    assert cell.weight == 42.0


def test_unknown_cell_write_raises(store) -> None:
    with pytest.raises(UnknownLoadCellError) as excinfo:
        store.set_weight(7, 1.0)
    assert excinfo.value.load_cell_id == 7
    with pytest.raises(UnknownLoadCellError):
        store.set_offset(7, 1.0)


def test_nan_is_rejected_and_infinity_round_trips(store) -> None:
    store.upsert(1, 10.0, 0.0, 5.0)
    with pytest.raises(StoreError):
        store.set_weight(1, float("nan"))
    with pytest.raises(StoreError):
        store.set_offset(1, float("nan"))
    with pytest.raises(StoreError):
        store.upsert(2, 0.0, float("nan"))
    assert store.get(1) == LoadCell(id=1, offset=10.0, multiplier=0.0, weight=5.0)
    assert store.get(2) is None
    store.set_weight(1, float("inf"))
    assert store.get(1).weight == float("inf")


def test_list_cells_filters_and_orders(store) -> None:
    for load_cell_id in (3, 1, 2):
        store.upsert(load_cell_id, 0.0, 1.0)
    assert [cell.id for cell in store.list_cells()] == [1, 2, 3]
    assert [cell.id for cell in store.list_cells([1, 3, 9])] == [1, 3]


def test_get_returns_a_copy() -> None:
    store = MemoryCalibrationStore([LoadCell(1, 0.0, 1.0)])
    cell = store.get(1)
    cell.weight = 99.0
    assert store.get(1).weight == 0.0


def test_sqlite_persists_between_connections(tmp_path: Path) -> None:
    path = tmp_path / "app.db"
    first = SqliteCalibrationStore(path)
    first.upsert(5, 1.5, 2.0)
    first.set_weight(5, 7.0)
    first.close()
    second = SqliteCalibrationStore(path)
    assert second.get(5) == LoadCell(5, 1.5, 2.0, 7.0)
    second.close()


def test_seed_defaults_keeps_existing_cells(store) -> None:
    store.upsert(2, 50.0, 0.5)
    written = seed_defaults(store, 4)
    assert written == 3
    assert store.get(2).offset == 50.0
    assert store.get(4) == LoadCell(4, 0.0, 1.0, 0.0)
    assert seed_defaults(store, 4, overwrite=True) == 4
    assert store.get(2).offset == 0.0


def test_seed_from_json(tmp_path: Path) -> None:
    export = tmp_path / "loadcells.json"
    export.write_text(
        json.dumps(
            [
                {"data_order": 1, "offset": 10, "multiplier": 0.5},
                {"data_order": 2},
                {"offset": 3, "multiplier": 2},
            ]
        ),
        encoding="utf-8",
    )
    store = MemoryCalibrationStore()
    assert seed_from_json(store, export) == 2
    assert store.get(1) == LoadCell(1, 10.0, 0.5, 0.0)
    assert store.get(2) == LoadCell(2, 0.0, 1.0, 0.0)


def test_seed_from_json_rejects_non_list(tmp_path: Path) -> None:
    export = tmp_path / "loadcells.json"
    export.write_text('{"data_order": 1}', encoding="utf-8")
    with pytest.raises(ValueError):
        seed_from_json(MemoryCalibrationStore(), export)


def test_open_store_backends(tmp_path: Path) -> None:
    assert isinstance(open_store("memory", tmp_path / "unused.db"), MemoryCalibrationStore)
    sqlite_store = open_store("sqlite", tmp_path / "app.db")
    assert isinstance(sqlite_store, SqliteCalibrationStore)
    sqlite_store.close()
    with pytest.raises(ValueError):
        open_store("redis", tmp_path / "app.db")

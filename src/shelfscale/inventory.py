"""Derive per-product stock counts from live load cell weights."""
from __future__ import annotations

import enum
import math
from dataclasses import dataclass
from typing import Iterable, List

from .config import ProductConfig
from .store import LoadCell


class StockStatus(int, enum.Enum):
    OK = 0
    WARNING = 1
    ALARM = 2
    OUT_OF_STOCK = 3

    @property
    def label(self) -> str:
        return {0: "OK", 1: "Warning", 2: "Alarm", 3: "Out of Stock"}[self.value]


@dataclass
class ProductStock:
    name: str
    live_weight: float
    count: int
    status: StockStatus


def compute_live_weight(product: ProductConfig, cells: Iterable[LoadCell]) -> float:
    """
    Sum of weights over the product's inclusive cell range.

    Negative and non-finite weights (a cell with a zero multiplier) count as 0.
    """
    return sum(
        cell.weight
        for cell in cells
        if product.from_cell <= cell.id <= product.to_cell
        and math.isfinite(cell.weight)
        and cell.weight > 0
    )


def compute_count(live_weight: float, unit_weight: float) -> int:
    if unit_weight <= 0:
        return 0
    units = live_weight / unit_weight
    if not math.isfinite(units):
        return 0
    return int(math.floor(units))


def compute_status(count: int, warning: int = 0, alarm: int = 0) -> StockStatus:
    if count <= 0:
        return StockStatus.OUT_OF_STOCK
    if count <= alarm:
        return StockStatus.ALARM
    if count <= warning:
        return StockStatus.WARNING
    return StockStatus.OK


def compute_stock(products: Iterable[ProductConfig], cells: Iterable[LoadCell]) -> List[ProductStock]:
    snapshot = list(cells)
    stock: List[ProductStock] = []
    for product in products:
        live_weight = compute_live_weight(product, snapshot)
        count = compute_count(live_weight, product.unit_weight)
        stock.append(
            ProductStock(
                name=product.name,
                live_weight=round(live_weight, 2),
                count=count,
                status=compute_status(count, product.warning, product.alarm),
            )
        )
    return stock

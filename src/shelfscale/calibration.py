from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional

import numpy as np


class CalibrationMode(str, enum.Enum):
    APPLY = "apply"
    CAPTURE_OFFSET = "capture-offset"


class CalibrationOperator(str, enum.Enum):
    """How the multiplier scales the zeroed reading."""

    DIVIDE = "divide"  # (raw - offset) / multiplier
    MULTIPLY = "multiply"  # (raw - offset) * multiplier


@dataclass(frozen=True)
class Calibration:
    offset: float
    multiplier: float


@dataclass(frozen=True)
class CalibratedReading:
    load_cell_id: int
    weight: float


CalibrationLookup = Callable[[int], Optional[Calibration]]


def apply_calibration(
    amplitudes: Iterable[float],
    lookup: CalibrationLookup,
    operator: CalibrationOperator = CalibrationOperator.DIVIDE,
) -> List[CalibratedReading]:
    """
    Convert raw amplitudes into weights.

    Reading `i` belongs to load cell `i + 1`. Cells for which `lookup` returns
    None get a weight of 0. A zero multiplier is not guarded against and
    produces a non-finite weight with the divide operator.
    """
    raw = np.asarray(list(amplitudes), dtype=float)
    if raw.size == 0:
        return []
    ids = np.arange(1, raw.size + 1)
    calibrations = [lookup(int(cell_id)) for cell_id in ids]
    present = np.array([cal is not None for cal in calibrations], dtype=bool)
    offsets = np.array([cal.offset if cal is not None else 0.0 for cal in calibrations], dtype=float)
    multipliers = np.array([cal.multiplier if cal is not None else 1.0 for cal in calibrations], dtype=float)
    zeroed = raw - offsets
    with np.errstate(divide="ignore", invalid="ignore"):
        if operator is CalibrationOperator.MULTIPLY:
            scaled = zeroed * multipliers
        else:
            scaled = zeroed / multipliers
    weights = np.where(present, scaled, 0.0)
    return [CalibratedReading(int(cell_id), float(weight)) for cell_id, weight in zip(ids, weights)]


def capture_offsets(amplitudes: Iterable[float]) -> Dict[int, float]:
    """Zero-point capture: each raw reading becomes its cell's new offset."""
    return {index + 1: float(value) for index, value in enumerate(amplitudes)}

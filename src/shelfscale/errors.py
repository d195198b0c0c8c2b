from __future__ import annotations

from typing import Dict, Optional


class ShelfscaleError(Exception):
    """Base class for errors raised by the acquisition service."""


class TransportError(ShelfscaleError):
    """Serial device unreachable or an I/O failure during an exchange."""


class TransportBusyError(TransportError):
    """Raised when an exchange is requested while another is still in flight."""


class StoreError(ShelfscaleError):
    """Persistence failure while reading or writing load cell state."""


class UnknownLoadCellError(StoreError):
    def __init__(self, load_cell_id: int):
        super().__init__(f"No calibration record for load cell {load_cell_id}")
        self.load_cell_id = load_cell_id


class CalibrationOrchestrationError(ShelfscaleError):
    """
    Aggregate failure of a re-zero run.

    `failed_cells` maps load cell ids to the reason their offset was not
    written; `offsets` holds the offsets that were persisted before the failure.
    """

    def __init__(
        self,
        message: str,
        *,
        failed_cells: Optional[Dict[int, str]] = None,
        offsets: Optional[Dict[int, float]] = None,
    ):
        super().__init__(message)
        self.failed_cells: Dict[int, str] = dict(failed_cells or {})
        self.offsets: Dict[int, float] = dict(offsets or {})


class CalibrationInProgressError(CalibrationOrchestrationError):
    pass

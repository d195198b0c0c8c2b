from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List

from .acquisition import AcquisitionLoop
from .calibration import CalibrationMode
from .errors import (
    CalibrationInProgressError,
    CalibrationOrchestrationError,
    TransportError,
)

logger = logging.getLogger(__name__)


@dataclass
class CalibrationReport:
    offsets: Dict[int, float] = field(default_factory=dict)
    skipped: List[int] = field(default_factory=list)
    resumed: bool = False


class CalibrationOrchestrator:
    """
    Re-zero every load cell without racing the polling loop.

    The loop is stopped and drained, a single capture exchange records the
    current raw readings as offsets, and polling is resumed whatever the
    outcome. Offsets already written are kept when later cells fail.
    """

    def __init__(self, loop: AcquisitionLoop):
        self.loop = loop
        self._lock = threading.Lock()

    @property
    def in_progress(self) -> bool:
        return self._lock.locked()

    def recalibrate(self, resume: bool = True) -> CalibrationReport:
        if not self._lock.acquire(blocking=False):
            raise CalibrationInProgressError("Calibration already in progress")
        try:
            logger.info("Zero calibration requested (loop %s)", self.loop.state.value)
            self.loop.stop(wait=True)
            try:
                report = self._capture()
            finally:
                if resume:
                    self.loop.start()
            report.resumed = resume
            return report
        finally:
            self._lock.release()

    def _capture(self) -> CalibrationReport:
        try:
            result = self.loop.run_one_shot(CalibrationMode.CAPTURE_OFFSET)
        except (TimeoutError, TransportError) as exc:
            logger.error("Calibration exchange failed: %s", exc)
            raise CalibrationOrchestrationError(f"Calibration exchange failed: {exc}") from exc
        if not result.has_data:
            logger.error("Calibration aborted: no valid amplitude data received")
            raise CalibrationOrchestrationError("No valid amplitude data received; offsets unchanged")
        if result.failed:
            logger.error(
                "Calibration incomplete: %d offsets written, %d failed (%s)",
                len(result.written),
                len(result.failed),
                ", ".join(str(cell_id) for cell_id in sorted(result.failed)),
            )
            raise CalibrationOrchestrationError(
                f"Failed to store offsets for load cells {sorted(result.failed)}",
                failed_cells=result.failed,
                offsets=result.written,
            )
        if result.skipped:
            logger.warning("No calibration record for load cells %s; offsets not stored", result.skipped)
        logger.info("Zero calibration stored offsets for %d load cells", len(result.written))
        return CalibrationReport(offsets=dict(result.written), skipped=list(result.skipped))

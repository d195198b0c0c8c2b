from __future__ import annotations

import enum
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol

from .calibration import (
    CalibratedReading,
    Calibration,
    CalibrationMode,
    CalibrationOperator,
    apply_calibration,
    capture_offsets,
)
from .errors import StoreError, TransportError, UnknownLoadCellError
from .frames import AmplitudeFrame, FrameParser
from .store import CalibrationStore

logger = logging.getLogger(__name__)


class Exchanger(Protocol):
    def send_and_await(self, command: str, timeout: Optional[float] = None) -> str: ...


class LoopState(str, enum.Enum):
    STOPPED = "stopped"
    RUNNING = "running"


@dataclass
class CycleResult:
    """Outcome of one polling cycle or one-shot exchange."""

    mode: CalibrationMode
    amplitudes: AmplitudeFrame = field(default_factory=AmplitudeFrame)
    written: Dict[int, float] = field(default_factory=dict)
    failed: Dict[int, str] = field(default_factory=dict)
    skipped: List[int] = field(default_factory=list)

    @property
    def has_data(self) -> bool:
        return bool(self.amplitudes)


class AcquisitionLoop:
    """
    Continuously samples the load cell array and persists calibrated weights.

    The loop owns the transport: every exchange, whether from the polling
    thread or `run_one_shot`, runs under the cycle lock, so at most one
    command is ever outstanding on the serial link.
    """

    def __init__(
        self,
        transport: Exchanger,
        store: CalibrationStore,
        *,
        poll_interval: float = 5.0,
        timeout: float = 3.0,
        command: str = "AMPLITUDES",
        operator: CalibrationOperator = CalibrationOperator.DIVIDE,
        parser: Optional[FrameParser] = None,
        stats_log_interval: float = 60.0,
    ):
        self.transport = transport
        self.store = store
        self.poll_interval = max(float(poll_interval), 0.0)
        self.timeout = timeout
        self.command = command
        self.operator = operator
        self.parser = parser or FrameParser()
        self.stats_log_interval = stats_log_interval
        self._state_lock = threading.Lock()
        self._cycle_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._counters: Dict[str, int] = {
            "cycles": 0,
            "skipped": 0,
            "timeouts": 0,
            "transport_errors": 0,
            "write_errors": 0,
        }
        self.last_cycle_at: Optional[float] = None

    @property
    def state(self) -> LoopState:
        thread = self._thread
        if thread is not None and thread.is_alive() and not self._stop_event.is_set():
            return LoopState.RUNNING
        return LoopState.STOPPED

    def start(self) -> bool:
        """Begin polling. Returns False when the loop is already running."""
        with self._state_lock:
            thread = self._thread
            if thread is not None and thread.is_alive():
                if not self._stop_event.is_set():
                    return False
                # A stopped loop is still finishing its last cycle.
                thread.join()
            self._stop_event.clear()
            self._thread = threading.Thread(target=self._run, name="acquisition-loop", daemon=True)
            self._thread.start()
        logger.info("Acquisition loop started (interval=%.1fs, timeout=%.1fs)", self.poll_interval, self.timeout)
        return True

    def stop(self, wait: bool = False, timeout: Optional[float] = None) -> None:
        """
        Ask the loop to stop after the in-flight cycle, if any.

        With `wait=True` block until the polling thread has exited.
        """
        with self._state_lock:
            already_stopped = self._stop_event.is_set()
            self._stop_event.set()
            thread = self._thread
        if not already_stopped and thread is not None:
            logger.info("Stopping acquisition loop")
        if wait and thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def run_one_shot(self, mode: CalibrationMode = CalibrationMode.APPLY) -> CycleResult:
        """
        Perform exactly one exchange outside the polling schedule.

        Transport failures propagate to the caller. The loop state is not
        touched; callers stop the loop first.
        """
        with self._cycle_lock:
            frame = self._fetch_amplitudes()
            return self._process(frame, mode)

    def stats(self) -> Dict[str, int]:
        stats = dict(self._counters)
        stats.update(self.parser.stats())
        return stats

    def _run(self) -> None:
        next_log = time.monotonic() + max(self.stats_log_interval, 5.0)
        while not self._stop_event.is_set():
            try:
                self._poll_once()
            except Exception:  # pragma: no cover
                logger.exception("Unexpected error in acquisition cycle")
            if time.monotonic() >= next_log:
                self._log_stats()
                next_log = time.monotonic() + max(self.stats_log_interval, 5.0)
            self._stop_event.wait(self.poll_interval)
        logger.info("Acquisition loop stopped")

    def _poll_once(self) -> None:
        with self._cycle_lock:
            self._counters["cycles"] += 1
            try:
                frame = self._fetch_amplitudes()
            except TimeoutError as exc:
                self._counters["timeouts"] += 1
                self._counters["skipped"] += 1
                logger.warning("Skipping cycle: %s", exc)
                return
            except TransportError as exc:
                self._counters["transport_errors"] += 1
                self._counters["skipped"] += 1
                logger.warning("Skipping cycle, serial error: %s", exc)
                return
            if not frame:
                self._counters["skipped"] += 1
                logger.info("No valid amplitude data received")
                return
            self._process(frame, CalibrationMode.APPLY)
            self.last_cycle_at = time.time()

    def _fetch_amplitudes(self) -> AmplitudeFrame:
        raw = self.transport.send_and_await(self.command, self.timeout)
        return self.parser.decode(raw)

    def _process(self, frame: AmplitudeFrame, mode: CalibrationMode) -> CycleResult:
        result = CycleResult(mode=mode, amplitudes=frame)
        if not frame:
            return result
        if mode is CalibrationMode.CAPTURE_OFFSET:
            for load_cell_id, offset in capture_offsets(frame).items():
                self._write(result, load_cell_id, offset, self.store.set_offset)
            return result
        readings: List[CalibratedReading] = apply_calibration(frame, self._lookup, self.operator)
        for reading in readings:
            self._write(result, reading.load_cell_id, reading.weight, self.store.set_weight)
        return result

    def _lookup(self, load_cell_id: int) -> Optional[Calibration]:
        try:
            cell = self.store.get(load_cell_id)
        except StoreError as exc:
            logger.warning("Calibration lookup failed for load cell %d: %s", load_cell_id, exc)
            return None
        if cell is None:
            logger.debug("No calibration data for load cell %d", load_cell_id)
            return None
        return cell.calibration

    def _write(self, result: CycleResult, load_cell_id: int, value: float, setter) -> None:
        try:
            setter(load_cell_id, value)
        except UnknownLoadCellError as exc:
            result.skipped.append(load_cell_id)
            logger.debug("%s", exc)
        except StoreError as exc:
            self._counters["write_errors"] += 1
            result.failed[load_cell_id] = str(exc)
            logger.warning("Failed to store %s for load cell %d: %s", result.mode.value, load_cell_id, exc)
        else:
            result.written[load_cell_id] = value

    def _log_stats(self) -> None:
        stats = self.stats()
        logger.info(
            "cycles=%d frames=%d decode_errors=%d skipped=%d timeouts=%d transport_errors=%d write_errors=%d",
            stats.get("cycles", 0),
            stats.get("frames", 0),
            stats.get("decode_errors", 0),
            stats.get("skipped", 0),
            stats.get("timeouts", 0),
            stats.get("transport_errors", 0),
            stats.get("write_errors", 0),
        )

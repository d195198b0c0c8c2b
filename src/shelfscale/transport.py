from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Optional

import serial

from .errors import TransportBusyError, TransportError

logger = logging.getLogger(__name__)


@dataclass
class SerialSettings:
    port: str
    baudrate: int = 115200
    timeout: float = 3.0
    command_terminator: str = "\r"
    frame_delimiter: str = "\n"
    read_timeout: float = 0.1


class SerialTransport:
    """
    Request/response framer over a single serial connection.

    The device protocol carries no correlation id, so the first frame received
    after a command is its response. Only one exchange may be in flight; a
    concurrent call fails with `TransportBusyError` instead of queueing.
    """

    def __init__(self, settings: SerialSettings):
        if not settings.frame_delimiter:
            raise ValueError("frame_delimiter may not be empty")
        self.settings = settings
        self._delimiter = settings.frame_delimiter.encode("ascii")
        self._serial = None
        self._exchange_lock = threading.Lock()
        self._exchanges = 0
        self._failures = 0

    def open(self) -> None:
        if self._serial is not None:
            return
        try:
            self._serial = serial.Serial(
                port=self.settings.port,
                baudrate=self.settings.baudrate,
                timeout=self.settings.read_timeout,
            )
        except (serial.SerialException, OSError) as exc:
            raise TransportError(f"Cannot open {self.settings.port}: {exc}") from exc
        logger.info("Connected to %s at %d baud", self.settings.port, self.settings.baudrate)

    def close(self) -> None:
        handle, self._serial = self._serial, None
        if handle is None:
            return
        try:
            handle.close()
        except (serial.SerialException, OSError) as exc:
            logger.debug("Error closing %s: %s", self.settings.port, exc)

    @property
    def is_open(self) -> bool:
        return self._serial is not None

    def send_and_await(self, command: str, timeout: Optional[float] = None) -> str:
        """
        Write `command` plus the terminator and return the first complete frame.

        Raises `TimeoutError` when no frame arrives within `timeout` seconds and
        `TransportError` on any I/O failure; the connection is then dropped and
        reopened by the next exchange.
        """
        if not self._exchange_lock.acquire(blocking=False):
            raise TransportBusyError(f"Exchange already in flight on {self.settings.port}")
        try:
            self._exchanges += 1
            return self._exchange(command, timeout if timeout is not None else self.settings.timeout)
        except TransportError:
            self._failures += 1
            self.close()
            raise
        finally:
            self._exchange_lock.release()

    def _exchange(self, command: str, timeout: float) -> str:
        self.open()
        assert self._serial is not None
        payload = (command.strip() + self.settings.command_terminator).encode("ascii", errors="ignore")
        deadline = time.monotonic() + timeout
        buffer = bytearray()
        try:
            self._serial.reset_input_buffer()
            self._serial.write(payload)
            self._serial.flush()
            while time.monotonic() < deadline:
                chunk = self._serial.read_until(self._delimiter)
                if not chunk:
                    continue
                buffer.extend(chunk)
                if not buffer.endswith(self._delimiter):
                    continue
                frame = buffer.decode("utf-8", errors="ignore").strip()
                buffer.clear()
                if not frame:
                    continue
                logger.debug("%s <- %r", self.settings.port, frame)
                return frame
        except (serial.SerialException, OSError) as exc:
            raise TransportError(f"I/O failure on {self.settings.port}: {exc}") from exc
        raise TimeoutError(f"Timeout waiting for '{command.strip()}' response after {timeout:.1f}s")

    def stats(self) -> dict[str, int]:
        return {"exchanges": self._exchanges, "transport_failures": self._failures}

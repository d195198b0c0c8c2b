from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Dict, Iterator, List


DEFAULT_START_MARKER = ">"
DEFAULT_END_TOKEN = "<END>"


@dataclass(frozen=True)
class AmplitudeFrame:
    """Raw readings from one response, index `i` belongs to load cell `i + 1`."""

    values: List[float] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.values)

    def __iter__(self) -> Iterator[float]:
        return iter(self.values)

    def __bool__(self) -> bool:
        return bool(self.values)


class FrameParser:
    """
    Decoder for the device's bracketed amplitude list, e.g. `>512,498,730<END>`.

    Anything that does not match decodes to an empty frame; the caller treats
    that as "no data this cycle" rather than an error.
    """

    def __init__(self, start_marker: str = DEFAULT_START_MARKER, end_token: str = DEFAULT_END_TOKEN):
        self.start_marker = start_marker
        self.end_token = end_token
        self._pattern = re.compile(
            re.escape(start_marker) + r"([^" + re.escape(end_token[:1]) + r"]*)" + re.escape(end_token)
        )
        self._stats: Dict[str, int] = {"frames": 0, "decode_errors": 0}
        self._log = logging.getLogger(__name__)

    def decode(self, raw: str) -> AmplitudeFrame:
        match = self._pattern.search(raw)
        if match is None:
            return self._reject(raw, "no delimited payload")
        payload = match.group(1).strip()
        if not payload:
            return self._reject(raw, "empty payload")
        values: List[float] = []
        for token in payload.split(","):
            try:
                value = float(token.strip())
            except ValueError:
                return self._reject(raw, f"non-numeric value {token.strip()!r}")
            if not math.isfinite(value):
                return self._reject(raw, f"non-finite value {token.strip()!r}")
            values.append(value)
        self._stats["frames"] += 1
        return AmplitudeFrame(values)

    def _reject(self, raw: str, reason: str) -> AmplitudeFrame:
        self._stats["decode_errors"] += 1
        self._log.debug("Discarding malformed frame (%s): %r", reason, raw)
        return AmplitudeFrame()

    def stats(self) -> Dict[str, int]:
        return dict(self._stats)

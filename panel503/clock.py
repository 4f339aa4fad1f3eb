"""
Panel 503 — Emulation Clock

Monotonic virtual-time counter shared by every register on one server.
Time only moves when someone calls advance()/inc(); it is never read from
the wall clock, so glow decay is deterministic for a given call sequence.
"""

from __future__ import annotations

import threading

from .config import CLOCK_PERIOD

EmulationTick = float


class EmulationClock:
    """Virtual-time accumulator. One writer at a time (internal lock)."""

    def __init__(self, start: EmulationTick = 0.0):
        self._lock = threading.Lock()
        self._ticks: EmulationTick = float(start)

    def inc(self) -> EmulationTick:
        """Advance by one clock period."""
        return self.advance(CLOCK_PERIOD)

    def advance(self, delta: EmulationTick) -> EmulationTick:
        """Advance by ``delta`` (must be >= 0) and return the new time."""
        with self._lock:
            self._ticks += delta
            return self._ticks

    def read(self) -> EmulationTick:
        with self._lock:
            return self._ticks

    def __repr__(self) -> str:
        return f"EmulationClock(t={self.read():.9f})"

"""
Panel 503 — Registers and Flip-Flops with Lamp Glow

Register model:
  value      — integer masked to the register width (value == value & mask)
  glow       — one float intensity per bit, always in [0, 1]
  mask       — (1 << bits) - 1
  power_mask — 1 << bits
  sign_mask  — 1 << (bits - 1)
  overflow   — sticky advisory flag set by add()/add_unsigned()

Glow update (exponential rise/decay toward the held bit):
  elapsed = max(now - last_tick, CLOCK_PERIOD)
  alpha   = min(elapsed / LAMP_PERSISTENCE + beta, 1.0)
  glow    = glow*(1-alpha) + alpha   if bit set
            glow*(1-alpha)           if bit clear

beta=1.0 snaps every lamp to exactly 0.0 / 1.0 (used on power transitions).

Widths are fixed at construction. Register16/32/64 are the concrete
containers; arithmetic wraps at the container width the same way the
hardware adder would before the register mask is applied.
"""

from __future__ import annotations

from typing import List

from .clock import EmulationClock, EmulationTick
from .config import CLOCK_PERIOD, LAMP_PERSISTENCE

MAX_BITS = 63


class Register:
    """Fixed-width register whose bits drive lamp glow values."""

    CONTAINER_BITS = 64

    def __init__(self, bits: int, clock: EmulationClock):
        if not 1 <= bits <= min(MAX_BITS, self.CONTAINER_BITS - 1):
            raise ValueError(
                f"{type(self).__name__} width must be 1..{min(MAX_BITS, self.CONTAINER_BITS - 1)}, "
                f"got {bits}")
        self.bits = bits
        self.clock = clock
        self.last_tick: EmulationTick = clock.read()
        self.mask = (1 << bits) - 1
        self.power_mask = 1 << bits
        self.sign_mask = 1 << (bits - 1)
        self._container_mask = (1 << self.CONTAINER_BITS) - 1
        self.overflow = False
        self.value = 0
        self.glow: List[float] = [0.0] * bits

    # --- glow ---

    def update_glow(self, beta: float = 0.0):
        now = self.clock.read()
        elapsed = max(now - self.last_tick, CLOCK_PERIOD)
        alpha = min(elapsed / LAMP_PERSISTENCE + beta, 1.0)
        alpha1 = 1.0 - alpha

        self.last_tick = now
        v = self.value
        glow = self.glow
        for i in range(self.bits):
            if v & 1:
                glow[i] = glow[i] * alpha1 + alpha
            else:
                glow[i] = glow[i] * alpha1
            v >>= 1

    def read_glow(self) -> List[float]:
        return list(self.glow)

    # --- value ---

    def read(self) -> int:
        return self.value

    def set(self, value: int):
        self.value = value & self.mask
        self.update_glow(0.0)

    def add(self, value: int):
        """Two's-complement add; flags overflow when the sign flips unexpectedly."""
        value &= self._container_mask
        augend = self.value
        result = (augend + value) & self._container_mask
        sign = self.sign_mask
        if (augend & sign) == (value & sign) and (value & sign) != (result & sign):
            self.overflow = True

        self.value = result & self.mask
        self.update_glow(0.0)

    def add_unsigned(self, value: int):
        """Unsigned add; flags overflow on a carry into the power-mask bit."""
        value &= self._container_mask
        result = (self.value + value) & self._container_mask
        if (value & self.power_mask) != (result & self.power_mask):
            self.overflow = True

        self.value = result & self.mask
        self.update_glow(0.0)

    def negate(self):
        self.value = (self.power_mask - self.value) & self.mask
        self.update_glow(0.0)

    def clear_overflow(self):
        self.overflow = False

    def __repr__(self) -> str:
        return (f"{type(self).__name__}(bits={self.bits}, value=0x{self.value:X}, "
                f"overflow={self.overflow})")


class Register16(Register):
    CONTAINER_BITS = 16


class Register32(Register):
    CONTAINER_BITS = 32


class Register64(Register):
    CONTAINER_BITS = 64


class FlipFlop(Register):
    """Single-bit register: bool value, one glow float."""

    CONTAINER_BITS = 8

    def __init__(self, clock: EmulationClock):
        super().__init__(1, clock)

    def set(self, value: bool):
        super().set(1 if value else 0)

    def read(self) -> bool:
        return bool(self.value)

    def read_glow(self) -> float:
        return self.glow[0]

    def __repr__(self) -> str:
        return f"FlipFlop(value={self.read()}, glow={self.glow[0]:.3f})"

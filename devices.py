"""
CHIP-8 Peripheral Layer
=======================
The small pieces of hardware that sit beside the CPU:

  CountdownTimer  -- 8-bit delay / sound counter, decremented at 60 Hz
  TimerTicker     -- turns elapsed wall-clock time into whole timer ticks
  Keypad          -- 16-key latch written by the host, read by Ex9E/ExA1

Timers are driven purely by elapsed time, never by instruction count.
"""

from __future__ import annotations
import time
from typing import Callable, Optional

TIMER_HZ  = 60
NUM_KEYS  = 16
MAX_CATCHUP_TICKS = 255   # enough to drain any 8-bit counter


# ---------------------------------------------------------------------------
#  Device base class
# ---------------------------------------------------------------------------

class Device:
    """Abstract peripheral."""

    def __init__(self, name: str):
        self.name = name

    def tick(self, n: int):
        """Advance the device by n timer ticks. Override for timers etc."""
        pass


# ---------------------------------------------------------------------------
#  Countdown timer
# ---------------------------------------------------------------------------
# Three-state lifecycle:
#   idle     value == 0, tick() does nothing
#   ticking  value > 0, each tick decrements by one
#   expired  the tick that reaches 0; on_change(False) fires, then idle

class CountdownTimer(Device):
    """8-bit down-counter that stops at zero."""

    def __init__(self, name: str):
        super().__init__(name)
        self.value: int = 0
        # Called with True when the counter leaves 0, False when it reaches 0
        self.on_change: Optional[Callable[[bool], None]] = None

    @property
    def active(self) -> bool:
        return self.value > 0

    def load(self, value: int):
        was_active = self.active
        self.value = value & 0xFF
        if self.active != was_active and self.on_change:
            self.on_change(self.active)

    def tick(self, n: int = 1):
        if n <= 0 or self.value == 0:
            return
        self.value = max(0, self.value - n)
        if self.value == 0 and self.on_change:
            self.on_change(False)


# ---------------------------------------------------------------------------
#  Timer ticker
# ---------------------------------------------------------------------------

class TimerTicker:
    """Accumulates elapsed time and ticks attached devices at a fixed rate.

    The clock is injectable so tests can drive it by hand.  A long stall
    (debugger, suspended laptop) is capped at MAX_CATCHUP_TICKS.
    """

    def __init__(self, devices: list[Device], hz: int = TIMER_HZ,
                 clock: Callable[[], float] = time.perf_counter):
        self.devices = devices
        self.period = 1.0 / hz
        self.clock = clock
        self.total_ticks: int = 0
        self._last = clock()
        self._acc = 0.0

    def restart(self):
        """Forget any time accumulated so far."""
        self._last = self.clock()
        self._acc = 0.0

    def advance(self) -> int:
        """Tick every device for each full period elapsed. Returns ticks."""
        now = self.clock()
        self._acc += max(0.0, now - self._last)
        self._last = now
        if self._acc < self.period:
            return 0
        ticks = int(self._acc / self.period)
        self._acc -= ticks * self.period
        if ticks > MAX_CATCHUP_TICKS:
            ticks = MAX_CATCHUP_TICKS
            self._acc = 0.0
        for dev in self.devices:
            dev.tick(ticks)
        self.total_ticks += ticks
        return ticks


# ---------------------------------------------------------------------------
#  Keypad
# ---------------------------------------------------------------------------
# Logical layout:
#   1 2 3 C
#   4 5 6 D
#   7 8 9 E
#   A 0 B F

class Keypad:
    """Current down/up state of the 16 hex keys."""

    def __init__(self):
        self.keys: list[bool] = [False] * NUM_KEYS

    def update(self, snapshot: list[bool]):
        """Replace the latch with a host snapshot."""
        self.keys = [bool(s) for s in snapshot[:NUM_KEYS]]

    def is_down(self, key: int) -> bool:
        return self.keys[key & 0xF]

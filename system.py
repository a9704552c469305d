"""
CHIP-8 System Driver
====================
Wires together:
  - a Chip8 machine (chip8.py)
  - the 60 Hz timer ticker (devices.py)
  - host ports injected at construction: display, keyboard, audio

Each cycle polls input, executes one instruction (or resolves a pending
Fx0A key wait), ticks the timers if enough wall-clock time has passed
and hands the framebuffer to the display when it changed.  run() paces
cycles so that `instructions_per_tick` instructions execute per timer
tick, and returns why it stopped instead of exiting the process.

Ports are duck-typed:
  display.render(framebuffer)
  keyboard.poll() -> list[bool]; keyboard.quit_requested;
  keyboard.next_key_pressed() -> int | None
  audio.set_active(bool)
"""

from __future__ import annotations
import time
from enum import Enum
from typing import Callable, NamedTuple, Optional

from chip8 import Chip8, FaultError, RomLoadError
from devices import TIMER_HZ, TimerTicker

DEFAULT_INSTRUCTIONS_PER_TICK = 10   # 600 instructions/s


class StopReason(Enum):
    QUIT  = "quit"    # input port asked to quit
    FAULT = "fault"   # machine raised a FaultError
    LIMIT = "limit"   # max_cycles reached


class RunResult(NamedTuple):
    reason: StopReason
    cycles: int
    fault: Optional[FaultError] = None


class Chip8System:
    """Driver loop around one Chip8 machine and its host ports."""

    def __init__(self, display=None, keyboard=None, audio=None,
                 instructions_per_tick: int = DEFAULT_INSTRUCTIONS_PER_TICK,
                 clock: Callable[[], float] = time.perf_counter,
                 sleep: Callable[[float], None] = time.sleep,
                 **machine_options):
        if instructions_per_tick < 1:
            raise ValueError("instructions_per_tick must be at least 1")
        self.display = display
        self.keyboard = keyboard
        self.audio = audio
        self.instructions_per_tick = instructions_per_tick
        self.clock = clock
        self.sleep = sleep
        self.period = 1.0 / TIMER_HZ
        self.machine_options = machine_options

        self.cpu: Chip8 = self._new_machine()
        self.ticker = self._new_ticker(self.cpu)

    # -- Machine lifecycle --

    def _new_machine(self) -> Chip8:
        cpu = Chip8(**self.machine_options)
        if self.audio is not None:
            cpu.sound_timer.on_change = self.audio.set_active
        return cpu

    def _new_ticker(self, cpu: Chip8) -> TimerTicker:
        return TimerTicker([cpu.delay_timer, cpu.sound_timer],
                           hz=TIMER_HZ, clock=self.clock)

    def load_program(self, data: bytes | bytearray):
        """Build a fresh machine holding `data` at 0x200.

        The current machine is kept if the image is rejected.
        """
        cpu = self._new_machine()
        cpu.load_program(data)
        old = self.cpu.sound_timer
        old.on_change = None
        if old.active:
            self._silence()
        self.cpu = cpu
        self.ticker = self._new_ticker(cpu)

    def load_rom(self, path: str) -> int:
        """Load a program image from disk. Returns its size in bytes."""
        try:
            with open(path, "rb") as f:
                data = f.read()
        except OSError as e:
            raise RomLoadError(f"Cannot read ROM '{path}': {e.strerror or e}") from e
        self.load_program(data)
        return len(data)

    # -- One cycle --

    def cycle(self) -> Optional[StopReason]:
        """Poll input, run one instruction, tick timers, present.

        Returns StopReason.QUIT when the keyboard asked to quit, else None.
        FaultError propagates to the caller.
        """
        cpu = self.cpu
        kb = self.keyboard
        if kb is not None:
            snapshot = kb.poll()
            if kb.quit_requested:
                return StopReason.QUIT
            cpu.keypad.update(snapshot)
            if cpu.waiting_for_key:
                key = kb.next_key_pressed()
                if key is not None:
                    cpu.press_key(key)

        if not cpu.waiting_for_key:
            cpu.step()

        self.ticker.advance()
        self.present()
        return None

    def present(self):
        """Hand the framebuffer to the display if CLS/DRW changed it."""
        if not self.cpu.fb_dirty:
            return
        self.cpu.fb_dirty = False
        if self.display is not None:
            self.display.render(self.cpu.gfx)

    # -- Run loop --

    def run(self, max_cycles: Optional[int] = None) -> RunResult:
        """Run until quit, fault or max_cycles; paced to real time."""
        self.ticker.restart()
        deadline = self.clock() + self.period
        in_slice = 0
        cycles = 0
        while max_cycles is None or cycles < max_cycles:
            try:
                reason = self.cycle()
            except FaultError as e:
                self._silence()
                return RunResult(StopReason.FAULT, cycles, e)
            if reason is not None:
                self._silence()
                return RunResult(reason, cycles)
            cycles += 1

            in_slice += 1
            if in_slice >= self.instructions_per_tick:
                in_slice = 0
                now = self.clock()
                if deadline > now:
                    self.sleep(deadline - now)
                elif now - deadline > self.period:
                    deadline = now   # fell behind: resync rather than burst
                deadline += self.period
        self._silence()
        return RunResult(StopReason.LIMIT, cycles)

    def _silence(self):
        if self.audio is not None:
            self.audio.set_active(False)

    def close(self):
        """Shut down any host ports that hold resources."""
        for port in (self.audio, self.keyboard, self.display):
            close = getattr(port, "close", None)
            if close is not None:
                close()

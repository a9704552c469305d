"""
CHIP-8 Host Front End
=====================
Host-side implementations of the ports the driver loop talks to.

pygame-backed:
  PygameDisplay  -- scaled 64x32 window, white pixels on black
  PygameInput    -- keyboard -> 16-key keypad, Escape / window close quits
  PygameBeeper   -- looping 440 Hz square wave while the sound timer runs

headless (tests, --headless runs):
  HeadlessDisplay -- records framebuffer snapshots, renders them as text
  ScriptedInput   -- replays a list of key frames

pygame is imported lazily so the headless path never needs it.

Host keyboard layout:          CHIP-8 keypad:
    1 2 3 4                        1 2 3 C
    Q W E R                        4 5 6 D
    A S D F                        7 8 9 E
    Z X C V                        A 0 B F
"""

from __future__ import annotations

from array import array
from collections import deque
from typing import Optional

from chip8 import SCREEN_W, SCREEN_H
from devices import NUM_KEYS

PIXEL_ON  = (255, 255, 255)
PIXEL_OFF = (0, 0, 0)
DEFAULT_SCALE = 10

# Host key name for each keypad index 0x0..0xF
HOST_KEYS = "x123qweasdzc4rfv"

BEEP_HZ = 440
MIXER_RATE = 44100


def default_keymap(pygame_module) -> dict[int, int]:
    """pygame key code -> keypad index."""
    return {getattr(pygame_module, "K_" + ch): idx
            for idx, ch in enumerate(HOST_KEYS)}


# ── pygame display ────────────────────────────────────────────────────


class PygameDisplay:
    """Window showing the CHIP-8 framebuffer, scaled up by `scale`."""

    def __init__(self, scale: int = DEFAULT_SCALE, title: str = "CHIP-8"):
        import pygame

        self._pg = pygame
        self.scale = max(1, scale)
        self.frames = 0

        pygame.display.init()
        pygame.display.set_caption(title)
        self.screen = pygame.display.set_mode(
            (SCREEN_W * self.scale, SCREEN_H * self.scale))
        self._fb_surface = pygame.Surface((SCREEN_W, SCREEN_H))
        self.screen.fill(PIXEL_OFF)
        pygame.display.flip()

    def render(self, framebuffer: bytes | bytearray):
        pygame = self._pg
        surface = self._fb_surface
        surface.fill(PIXEL_OFF)
        for idx, on in enumerate(framebuffer):
            if on:
                surface.set_at((idx % SCREEN_W, idx // SCREEN_W), PIXEL_ON)
        scaled = pygame.transform.scale(surface, self.screen.get_size())
        self.screen.blit(scaled, (0, 0))
        pygame.display.flip()
        self.frames += 1

    def close(self):
        if self._pg.display.get_init():
            self._pg.display.quit()


# ── pygame keyboard ───────────────────────────────────────────────────


class PygameInput:
    """Keyboard input port backed by the pygame event queue."""

    def __init__(self, keymap: Optional[dict[int, int]] = None):
        import pygame

        self._pg = pygame
        pygame.display.init()   # event queue lives in the video subsystem
        self.keymap = keymap if keymap is not None else default_keymap(pygame)
        self.keys: list[bool] = [False] * NUM_KEYS
        self.quit_requested = False
        self._presses: deque[int] = deque()

    def poll(self) -> list[bool]:
        """Drain pending events. Returns the current 16-key matrix."""
        pygame = self._pg
        self._presses.clear()
        for event in pygame.event.get():
            if event.type == pygame.QUIT:
                self.quit_requested = True
            elif event.type == pygame.KEYDOWN:
                if event.key == pygame.K_ESCAPE:
                    self.quit_requested = True
                    continue
                key = self.keymap.get(event.key)
                if key is not None:
                    self.keys[key] = True
                    self._presses.append(key)
            elif event.type == pygame.KEYUP:
                key = self.keymap.get(event.key)
                if key is not None:
                    self.keys[key] = False
        return list(self.keys)

    def next_key_pressed(self) -> Optional[int]:
        """A keypad key pressed during the last poll(), or None."""
        return self._presses.popleft() if self._presses else None

    def close(self):
        pass


# ── pygame audio ──────────────────────────────────────────────────────


def square_wave(rate: int, bits: int, freq: int = BEEP_HZ) -> array:
    """One period of a signed 16-bit square wave."""
    period = max(2, int(round(rate / freq)))
    amplitude = 2 ** (abs(bits) - 1) - 1
    half = period // 2
    return array("h", [amplitude] * half + [-amplitude] * (period - half))


class PygameBeeper:
    """Plays a tone while the sound timer is nonzero."""

    def __init__(self):
        import pygame

        self._pg = pygame
        pygame.mixer.pre_init(MIXER_RATE, -16, 1, 512)
        pygame.mixer.init()
        rate, bits, _channels = pygame.mixer.get_init()
        self._sound = pygame.mixer.Sound(buffer=square_wave(rate, bits))
        self.active = False

    def set_active(self, active: bool):
        if active == self.active:
            return
        self.active = active
        if active:
            self._sound.play(-1)
        else:
            self._sound.stop()

    def close(self):
        self.set_active(False)
        if self._pg.mixer.get_init():
            self._pg.mixer.quit()


# ── Headless ──────────────────────────────────────────────────────────


class HeadlessDisplay:
    """No-op display for testing -- records framebuffer snapshots."""

    def __init__(self, keep: int = 0):
        self.keep = keep          # 0 = keep every frame
        self.snapshots: list[bytes] = []
        self.frames = 0

    def render(self, framebuffer: bytes | bytearray):
        self.snapshots.append(bytes(framebuffer))
        if self.keep and len(self.snapshots) > self.keep:
            del self.snapshots[0]
        self.frames += 1

    @property
    def last(self) -> Optional[bytes]:
        return self.snapshots[-1] if self.snapshots else None

    def pixel(self, x: int, y: int) -> int:
        fb = self.last
        return fb[y * SCREEN_W + x] if fb else 0

    def ascii(self, on: str = "#", off: str = ".") -> str:
        fb = self.last or bytes(SCREEN_W * SCREEN_H)
        return "\n".join(
            "".join(on if fb[y * SCREEN_W + x] else off for x in range(SCREEN_W))
            for y in range(SCREEN_H))


class ScriptedInput:
    """Replays a fixed sequence of key frames, one per poll().

    Each frame is an iterable of keypad indices held down during that poll.
    After the script runs out the last frame is held, or quit is signalled
    when quit_at_end is set.
    """

    def __init__(self, frames: Optional[list] = None, quit_at_end: bool = False):
        self.frames = [frozenset(f) for f in (frames or [])]
        self.quit_at_end = quit_at_end
        self.quit_requested = False
        self.polls = 0
        self._held: frozenset = frozenset()
        self._presses: deque[int] = deque()

    def poll(self) -> list[bool]:
        self._presses.clear()
        if self.polls < len(self.frames):
            frame = self.frames[self.polls]
            self._presses.extend(sorted(frame - self._held))
            self._held = frame
        elif self.quit_at_end:
            self.quit_requested = True
        self.polls += 1
        return [k in self._held for k in range(NUM_KEYS)]

    def next_key_pressed(self) -> Optional[int]:
        return self._presses.popleft() if self._presses else None

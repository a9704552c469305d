#!/usr/bin/env python3
"""
CHIP-8 Emulator -- command line front end.

Usage:
    python cli.py ROM                        # pygame window
    python cli.py ROM --scale 12 --ipt 15    # bigger window, faster CPU
    python cli.py ROM --headless --cycles 5000

Keys: 1234 / QWER / ASDF / ZXCV map onto the hex keypad.  Escape quits.

Exit status is 1 when the ROM cannot be loaded, the window cannot be
opened, or the machine faults (unknown opcode, stack overflow, ...).
"""

from __future__ import annotations

import argparse
import random
import sys

from chip8 import RomLoadError
from display import DEFAULT_SCALE, HeadlessDisplay, ScriptedInput
from system import Chip8System, DEFAULT_INSTRUCTIONS_PER_TICK, StopReason


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="CHIP-8 virtual machine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Examples:\n"
               "  python cli.py pong.ch8\n"
               "  python cli.py pong.ch8 --ipt 20 --scale 8\n"
               "  python cli.py test.ch8 --headless --cycles 2000\n"
    )
    parser.add_argument("rom", type=str,
                        help="Program image to load at 0x200")
    parser.add_argument("--scale", type=int, default=DEFAULT_SCALE, metavar="N",
                        help=f"Pixel scale factor for the window (default: {DEFAULT_SCALE})")
    parser.add_argument("--ipt", type=int, default=DEFAULT_INSTRUCTIONS_PER_TICK,
                        metavar="N",
                        help="Instructions executed per 60 Hz timer tick "
                             f"(default: {DEFAULT_INSTRUCTIONS_PER_TICK})")
    parser.add_argument("--return-quirk", action="store_true",
                        help="00EE only decrements SP, leaving PC unchanged")
    parser.add_argument("--index-overflow-flag", action="store_true",
                        help="Fx1E sets VF when I + Vx passes 0xFFF")
    parser.add_argument("--seed", type=int, default=None,
                        help="Seed for the Cxnn random number generator")
    parser.add_argument("--mute", action="store_true",
                        help="Do not open an audio device")
    parser.add_argument("--headless", action="store_true",
                        help="Run without a window; print the final screen")
    parser.add_argument("--cycles", type=int, default=None, metavar="N",
                        help="Stop after N cycles (default: run until quit)")
    return parser


def _open_ports(args: argparse.Namespace):
    """Return (display, keyboard, audio) for the requested mode."""
    if args.headless:
        return HeadlessDisplay(keep=1), ScriptedInput(), None

    from display import PygameBeeper, PygameDisplay, PygameInput
    display = PygameDisplay(scale=args.scale)
    keyboard = PygameInput()
    print(f"[display] Window opened (scale={display.scale}x)")

    audio = None
    if not args.mute:
        try:
            audio = PygameBeeper()
        except Exception as e:   # no audio device is not fatal
            print(f"[audio] disabled: {e}", file=sys.stderr)
    return display, keyboard, audio


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.headless and args.cycles is None:
        parser.error("--headless needs --cycles N")

    try:
        display, keyboard, audio = _open_ports(args)
    except ImportError as e:
        print(f"[display] pygame not available: {e}", file=sys.stderr)
        print("[display] Install with: pip install pygame", file=sys.stderr)
        return 1
    except Exception as e:
        print(f"[display] Could not open window: {e}", file=sys.stderr)
        return 1

    rng = random.Random(args.seed) if args.seed is not None else None
    try:
        emu = Chip8System(
            display=display,
            keyboard=keyboard,
            audio=audio,
            instructions_per_tick=args.ipt,
            return_quirk=args.return_quirk,
            index_overflow_flag=args.index_overflow_flag,
            rng=rng,
        )
    except ValueError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    try:
        try:
            size = emu.load_rom(args.rom)
        except RomLoadError as e:
            print(f"[chip8] {e}", file=sys.stderr)
            return 1
        print(f"[chip8] Loaded {size} bytes from '{args.rom}' at 0x200")

        result = emu.run(max_cycles=args.cycles)
    except KeyboardInterrupt:
        print("\nInterrupted.")
        return 0
    finally:
        emu.close()

    if args.headless:
        print(display.ascii())
        print(emu.cpu.dump_regs())

    if result.reason is StopReason.FAULT:
        print(f"[chip8] Fatal: {result.fault}", file=sys.stderr)
        print(emu.cpu.dump_regs(), file=sys.stderr)
        return 1
    if result.reason is StopReason.LIMIT:
        print(f"[chip8] Stopped after {result.cycles} cycles")
    return 0


if __name__ == "__main__":
    sys.exit(main())

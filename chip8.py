"""
CHIP-8 Virtual Machine
======================
A fetch/decode/execute emulator for the classic CHIP-8 instruction set:
4 KiB of memory, sixteen 8-bit registers V0-VF, a 12-bit index register,
a 16-deep call stack, delay and sound timers, a 64x32 monochrome
framebuffer and a 16-key hex keypad.

Opcodes are 16 bits, fetched big-endian two bytes at a time.  decode()
turns a raw opcode into an Instruction (a closed set of Op variants);
Chip8.execute() applies exactly one of them to the machine state.
"""

from __future__ import annotations
import random
from enum import Enum
from typing import NamedTuple, Optional

from devices import CountdownTimer, Keypad

# ---------------------------------------------------------------------------
#  Constants
# ---------------------------------------------------------------------------

MEM_SIZE      = 4096
ADDR_MASK     = 0xFFF
PROGRAM_START = 0x200
MAX_PROGRAM   = MEM_SIZE - PROGRAM_START   # 3584 bytes

SCREEN_W = 64
SCREEN_H = 32

NUM_REGS    = 16
STACK_DEPTH = 16
VF          = 0xF

FONT_BASE        = 0x050
FONT_GLYPH_BYTES = 5

# Hex digits 0-F, 4 pixels wide, 5 rows tall (high nibble of each byte)
FONT = bytes([
    0xF0, 0x90, 0x90, 0x90, 0xF0,  # 0
    0x20, 0x60, 0x20, 0x20, 0x70,  # 1
    0xF0, 0x10, 0xF0, 0x80, 0xF0,  # 2
    0xF0, 0x10, 0xF0, 0x10, 0xF0,  # 3
    0x90, 0x90, 0xF0, 0x10, 0x10,  # 4
    0xF0, 0x80, 0xF0, 0x10, 0xF0,  # 5
    0xF0, 0x80, 0xF0, 0x90, 0xF0,  # 6
    0xF0, 0x10, 0x20, 0x40, 0x40,  # 7
    0xF0, 0x90, 0xF0, 0x90, 0xF0,  # 8
    0xF0, 0x90, 0xF0, 0x10, 0xF0,  # 9
    0xF0, 0x90, 0xF0, 0x90, 0x90,  # A
    0xE0, 0x90, 0xE0, 0x90, 0xE0,  # B
    0xF0, 0x80, 0x80, 0x80, 0xF0,  # C
    0xE0, 0x90, 0x90, 0x90, 0xE0,  # D
    0xF0, 0x80, 0xF0, 0x80, 0xF0,  # E
    0xF0, 0x80, 0xF0, 0x80, 0x80,  # F
])

# ---------------------------------------------------------------------------
#  Errors
# ---------------------------------------------------------------------------

class Chip8Error(Exception):
    """Base for all emulator errors."""
    pass

class RomLoadError(Chip8Error):
    """Program image could not be read or does not fit in memory."""
    pass

class FaultError(Chip8Error):
    """Fatal machine fault -- execution cannot continue."""

    def __init__(self, pc: int, message: str):
        self.pc = pc
        super().__init__(f"{message} @ {pc:#05x}")

class StackOverflowError(FaultError):
    def __init__(self, pc: int):
        super().__init__(pc, f"Stack overflow: more than {STACK_DEPTH} nested calls")

class StackUnderflowError(FaultError):
    def __init__(self, pc: int):
        super().__init__(pc, "Stack underflow: return with empty call stack")

class IllegalInstructionError(FaultError):
    def __init__(self, pc: int, opcode: int):
        self.opcode = opcode
        super().__init__(pc, f"Unknown opcode {opcode:#06x}")

class PCOutOfRangeError(FaultError):
    def __init__(self, pc: int):
        super().__init__(pc, "Program counter ran off the end of memory")

# ---------------------------------------------------------------------------
#  Decoder
# ---------------------------------------------------------------------------

class Op(Enum):
    CLS       = "00E0"
    RET       = "00EE"
    JP        = "1nnn"
    CALL      = "2nnn"
    SE_IMM    = "3xnn"
    SNE_IMM   = "4xnn"
    SE_REG    = "5xy0"
    LD_IMM    = "6xnn"
    ADD_IMM   = "7xnn"
    LD_REG    = "8xy0"
    OR        = "8xy1"
    AND       = "8xy2"
    XOR       = "8xy3"
    ADD_REG   = "8xy4"
    SUB       = "8xy5"
    SHR       = "8xy6"
    SUBN      = "8xy7"
    SHL       = "8xyE"
    SNE_REG   = "9xy0"
    LD_I      = "Annn"
    JP_V0     = "Bnnn"
    RND       = "Cxnn"
    DRW       = "Dxyn"
    SKP       = "Ex9E"
    SKNP      = "ExA1"
    LD_VX_DT  = "Fx07"
    LD_KEY    = "Fx0A"
    LD_DT     = "Fx15"
    LD_ST     = "Fx18"
    ADD_I     = "Fx1E"
    LD_FONT   = "Fx29"
    BCD       = "Fx33"
    STORE     = "Fx55"
    LOAD      = "Fx65"
    UNDEFINED = "----"   # unknown secondary selector: no-op
    ILLEGAL   = "????"   # unknown primary selector: fatal


class Instruction(NamedTuple):
    opcode: int
    op: Op
    x: int
    y: int
    n: int
    nn: int
    nnn: int


# Primary selectors that need no further decoding
_PRIMARY = {
    0x1: Op.JP,     0x2: Op.CALL,   0x3: Op.SE_IMM, 0x4: Op.SNE_IMM,
    0x5: Op.SE_REG, 0x6: Op.LD_IMM, 0x7: Op.ADD_IMM, 0x9: Op.SNE_REG,
    0xA: Op.LD_I,   0xB: Op.JP_V0,  0xC: Op.RND,    0xD: Op.DRW,
}

# Secondary tables: group 0 on the full opcode, 8 on n, E and F on nn
_SYS = {0x00E0: Op.CLS, 0x00EE: Op.RET}

_ALU = {
    0x0: Op.LD_REG, 0x1: Op.OR,   0x2: Op.AND,  0x3: Op.XOR,
    0x4: Op.ADD_REG, 0x5: Op.SUB, 0x6: Op.SHR,  0x7: Op.SUBN,
    0xE: Op.SHL,
}

_KEY = {0x9E: Op.SKP, 0xA1: Op.SKNP}

_MISC = {
    0x07: Op.LD_VX_DT, 0x0A: Op.LD_KEY, 0x15: Op.LD_DT, 0x18: Op.LD_ST,
    0x1E: Op.ADD_I,    0x29: Op.LD_FONT, 0x33: Op.BCD,  0x55: Op.STORE,
    0x65: Op.LOAD,
}


def decode(opcode: int) -> Instruction:
    """Split a 16-bit opcode into its fields and identify the variant.

    Total: every value decodes to *some* Instruction.  Unknown secondary
    selectors come back as Op.UNDEFINED, unknown primaries as Op.ILLEGAL.
    """
    opcode &= 0xFFFF
    f = (opcode >> 12) & 0xF

    if f == 0x0:
        op = _SYS.get(opcode, Op.UNDEFINED)
    elif f == 0x8:
        op = _ALU.get(opcode & 0xF, Op.UNDEFINED)
    elif f == 0xE:
        op = _KEY.get(opcode & 0xFF, Op.UNDEFINED)
    elif f == 0xF:
        op = _MISC.get(opcode & 0xFF, Op.UNDEFINED)
    else:
        op = _PRIMARY.get(f, Op.ILLEGAL)

    return Instruction(
        opcode=opcode,
        op=op,
        x=(opcode >> 8) & 0xF,
        y=(opcode >> 4) & 0xF,
        n=opcode & 0xF,
        nn=opcode & 0xFF,
        nnn=opcode & ADDR_MASK,
    )

# ---------------------------------------------------------------------------
#  Machine
# ---------------------------------------------------------------------------

class Chip8:
    """CHIP-8 machine state plus the instruction executor.

    Compatibility toggles:
      return_quirk        -- 00EE only decrements SP and leaves PC alone
      index_overflow_flag -- Fx1E sets VF when I + Vx passes 0xFFF
    """

    def __init__(self, return_quirk: bool = False,
                 index_overflow_flag: bool = False,
                 rng: Optional[random.Random] = None):
        self.return_quirk = return_quirk
        self.index_overflow_flag = index_overflow_flag
        self.rng = rng if rng is not None else random.Random()

        self.mem = bytearray(MEM_SIZE)
        self.mem[FONT_BASE:FONT_BASE + len(FONT)] = FONT

        self.v: list[int] = [0] * NUM_REGS
        self.i: int = 0
        self.pc: int = PROGRAM_START

        self.stack: list[int] = [0] * STACK_DEPTH
        self.sp: int = 0

        self.delay_timer = CountdownTimer("delay")
        self.sound_timer = CountdownTimer("sound")
        self.keypad = Keypad()

        self.gfx = bytearray(SCREEN_W * SCREEN_H)
        self.fb_dirty: bool = False

        # Register index waiting for Fx0A, or None when running
        self.key_wait: Optional[int] = None

        self._handlers = {}
        for op in Op:
            handler = getattr(self, "_op_" + op.name.lower(), None)
            if handler is None:
                raise TypeError(f"No executor for {op.name} ({op.value})")
            self._handlers[op] = handler

    # -- Program loading --

    def load_program(self, data: bytes | bytearray):
        """Copy a program image to 0x200.  Memory is untouched on failure."""
        if len(data) == 0:
            raise RomLoadError("Program image is empty")
        if len(data) > MAX_PROGRAM:
            raise RomLoadError(
                f"Program image is {len(data)} bytes; at most {MAX_PROGRAM} fit")
        self.mem[PROGRAM_START:PROGRAM_START + len(data)] = data

    # -- Fetch / step --

    def fetch(self) -> int:
        """Read the opcode at PC and advance PC by 2."""
        if self.pc + 1 >= MEM_SIZE:
            raise PCOutOfRangeError(self.pc)
        opcode = (self.mem[self.pc] << 8) | self.mem[self.pc + 1]
        self.pc += 2
        return opcode

    def step(self) -> Optional[Instruction]:
        """Execute one instruction.  Returns None while waiting for a key."""
        if self.key_wait is not None:
            return None
        instr = decode(self.fetch())
        self.execute(instr)
        return instr

    def execute(self, instr: Instruction):
        self._handlers[instr.op](instr)

    def press_key(self, key: int):
        """Deliver a key press to a pending Fx0A and resume dispatch."""
        if self.key_wait is None:
            return
        self.v[self.key_wait] = key & 0xF
        self.key_wait = None

    @property
    def waiting_for_key(self) -> bool:
        return self.key_wait is not None

    def _skip_if(self, cond: bool):
        if cond:
            self.pc += 2

    def _mem_addr(self, offset: int) -> int:
        return (self.i + offset) & ADDR_MASK

    # =====================================================================
    #  Instruction handlers
    # =====================================================================

    # -- 0x0: system --

    def _op_cls(self, ins: Instruction):
        self.gfx[:] = bytes(len(self.gfx))
        self.fb_dirty = True

    def _op_ret(self, ins: Instruction):
        if self.sp == 0:
            raise StackUnderflowError(self.pc - 2)
        self.sp -= 1
        if not self.return_quirk:
            self.pc = self.stack[self.sp]

    def _op_undefined(self, ins: Instruction):
        pass

    def _op_illegal(self, ins: Instruction):
        raise IllegalInstructionError(self.pc - 2, ins.opcode)

    # -- 0x1-0x7: flow, skips, immediates --

    def _op_jp(self, ins: Instruction):
        self.pc = ins.nnn

    def _op_call(self, ins: Instruction):
        if self.sp >= STACK_DEPTH:
            raise StackOverflowError(self.pc - 2)
        self.stack[self.sp] = self.pc
        self.sp += 1
        self.pc = ins.nnn

    def _op_se_imm(self, ins: Instruction):
        self._skip_if(self.v[ins.x] == ins.nn)

    def _op_sne_imm(self, ins: Instruction):
        self._skip_if(self.v[ins.x] != ins.nn)

    def _op_se_reg(self, ins: Instruction):
        self._skip_if(self.v[ins.x] == self.v[ins.y])

    def _op_sne_reg(self, ins: Instruction):
        self._skip_if(self.v[ins.x] != self.v[ins.y])

    def _op_ld_imm(self, ins: Instruction):
        self.v[ins.x] = ins.nn

    def _op_add_imm(self, ins: Instruction):
        # No carry flag for 7xnn
        self.v[ins.x] = (self.v[ins.x] + ins.nn) & 0xFF

    # -- 0x8: ALU --
    # Flag is written after the result so VF as destination holds the flag.

    def _op_ld_reg(self, ins: Instruction):
        self.v[ins.x] = self.v[ins.y]

    def _op_or(self, ins: Instruction):
        self.v[ins.x] |= self.v[ins.y]

    def _op_and(self, ins: Instruction):
        self.v[ins.x] &= self.v[ins.y]

    def _op_xor(self, ins: Instruction):
        self.v[ins.x] ^= self.v[ins.y]

    def _op_add_reg(self, ins: Instruction):
        total = self.v[ins.x] + self.v[ins.y]
        self.v[ins.x] = total & 0xFF
        self.v[VF] = 1 if total > 0xFF else 0

    def _op_sub(self, ins: Instruction):
        a, b = self.v[ins.x], self.v[ins.y]
        self.v[ins.x] = (a - b) & 0xFF
        self.v[VF] = 1 if a >= b else 0

    def _op_shr(self, ins: Instruction):
        a = self.v[ins.x]
        self.v[ins.x] = a >> 1
        self.v[VF] = a & 0x1

    def _op_subn(self, ins: Instruction):
        a, b = self.v[ins.x], self.v[ins.y]
        self.v[ins.x] = (b - a) & 0xFF
        self.v[VF] = 1 if b >= a else 0

    def _op_shl(self, ins: Instruction):
        a = self.v[ins.x]
        self.v[ins.x] = (a << 1) & 0xFF
        self.v[VF] = (a >> 7) & 0x1

    # -- 0xA-0xD: index, jump, random, draw --

    def _op_ld_i(self, ins: Instruction):
        self.i = ins.nnn

    def _op_jp_v0(self, ins: Instruction):
        self.pc = (ins.nnn + self.v[0]) & ADDR_MASK

    def _op_rnd(self, ins: Instruction):
        self.v[ins.x] = self.rng.randrange(256) & ins.nn

    def _op_drw(self, ins: Instruction):
        x0 = self.v[ins.x]
        y0 = self.v[ins.y]
        collided = 0
        drawn = False
        for row in range(ins.n):
            bits = self.mem[self._mem_addr(row)]
            if not bits:
                continue
            py = (y0 + row) % SCREEN_H
            for col in range(8):
                if bits & (0x80 >> col):
                    idx = py * SCREEN_W + (x0 + col) % SCREEN_W
                    if self.gfx[idx]:
                        collided = 1
                    self.gfx[idx] ^= 1
                    drawn = True
        self.v[VF] = collided
        if drawn:
            self.fb_dirty = True

    # -- 0xE: keypad skips --

    def _op_skp(self, ins: Instruction):
        self._skip_if(self.keypad.is_down(self.v[ins.x] & 0xF))

    def _op_sknp(self, ins: Instruction):
        self._skip_if(not self.keypad.is_down(self.v[ins.x] & 0xF))

    # -- 0xF: timers, index, memory --

    def _op_ld_vx_dt(self, ins: Instruction):
        self.v[ins.x] = self.delay_timer.value

    def _op_ld_key(self, ins: Instruction):
        self.key_wait = ins.x

    def _op_ld_dt(self, ins: Instruction):
        self.delay_timer.load(self.v[ins.x])

    def _op_ld_st(self, ins: Instruction):
        self.sound_timer.load(self.v[ins.x])

    def _op_add_i(self, ins: Instruction):
        total = self.i + self.v[ins.x]
        self.i = total & ADDR_MASK
        if self.index_overflow_flag:
            self.v[VF] = 1 if total > ADDR_MASK else 0

    def _op_ld_font(self, ins: Instruction):
        self.i = FONT_BASE + (self.v[ins.x] & 0xF) * FONT_GLYPH_BYTES

    def _op_bcd(self, ins: Instruction):
        val = self.v[ins.x]
        self.mem[self._mem_addr(0)] = val // 100
        self.mem[self._mem_addr(1)] = (val // 10) % 10
        self.mem[self._mem_addr(2)] = val % 10

    def _op_store(self, ins: Instruction):
        for r in range(ins.x + 1):
            self.mem[self._mem_addr(r)] = self.v[r]

    def _op_load(self, ins: Instruction):
        for r in range(ins.x + 1):
            self.v[r] = self.mem[self._mem_addr(r)]

    # -- Debug / introspection --

    def dump_regs(self) -> str:
        lines = []
        for row in range(0, NUM_REGS, 4):
            lines.append("  " + "  ".join(
                f"V{r:X} = {self.v[r]:#04x}" for r in range(row, row + 4)))
        lines.append(f"  PC = {self.pc:#05x}  I = {self.i:#05x}  SP = {self.sp}"
                     f"  DT = {self.delay_timer.value}  ST = {self.sound_timer.value}")
        return "\n".join(lines)

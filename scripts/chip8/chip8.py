# CHIP-8 INFO
# https://chip-8.github.io/extensions/#chip-8
# https://chip-8.github.io/links/
#
# COMPATIBILITY QUIRKS TABLE
# https://games.gulrak.net/cadmium/chip8-opcode-table.html#quirk6
#
# MASTERING CHIP-8
# https://github.com/mattmikolay/chip-8/wiki/Mastering-CHIP%E2%80%908


import os
import random
from collections import namedtuple
from enum import Enum
from functools import wraps


# ******************** STATIC SECTION
C8_FONTS = [0xF0, 0x90, 0x90, 0x90, 0xF0,  # 0
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
            0xF0, 0x80, 0xF0, 0x80, 0x80]  # F

MEMORY_SIZE = 4096
FONT_START_ADDRESS = 0x000
FONT_SPRITE_SIZE = 5
ROM_START_ADDRESS = 0x200
MAX_ROM_SIZE = MEMORY_SIZE - ROM_START_ADDRESS
STACK_SIZE = 16
NUM_REGISTERS = 16
NUM_KEYS = 16
SCREEN_HEIGHT = 32
SCREEN_WIDTH = 64
DEBUG = True if int(os.getenv('DEBUG', 0)) >= 1 else False


# ******************** ERRORS SECTION
class Chip8Error(Exception):
    pass

class RomTooLarge(Chip8Error):
    def __init__(self, size):
        super().__init__(f"ROM of {size} bytes does not fit in memory (max {MAX_ROM_SIZE} bytes)")
        self.size = size

class FatalError(Chip8Error):
    """a malformed program, emulation must stop"""

class UnknownOpcode(FatalError):
    def __init__(self, opcode):
        super().__init__(f"Unknown opcode 0x{opcode:04X}")
        self.opcode = opcode

class StackOverflow(FatalError):
    pass

class StackUnderflow(FatalError):
    pass


# ******************** UTILITIES SECTION
def asm(msg):
    """decorator to print out the ASM of the instruction being called"""
    def decorator(fn):
        @wraps(fn)
        def wrapper_fn(self, ins):
            mem_addr = self.pc      # read before the instruction moves the program counter
            fn(self, ins)
            if DEBUG: print(msg.format(mem_addr=mem_addr, **ins._asdict()))
        return wrapper_fn
    return decorator

def random_byte():
    return random.randint(0, 255)


# ******************** DECODER SECTION
class Op(Enum):
    CLS = "00E0"
    RET = "00EE"
    JP = "1NNN"
    CALL = "2NNN"
    SE_BYTE = "3XNN"
    SNE_BYTE = "4XNN"
    SE_REG = "5XY0"
    LD_BYTE = "6XNN"
    ADD_BYTE = "7XNN"
    LD_REG = "8XY0"
    OR = "8XY1"
    AND = "8XY2"
    XOR = "8XY3"
    ADD_REG = "8XY4"
    SUB = "8XY5"
    SHR = "8XY6"
    SUBN = "8XY7"
    SHL = "8XYE"
    SNE_REG = "9XY0"
    LD_I = "ANNN"
    JP_V0 = "BNNN"
    RND = "CXNN"
    DRW = "DXYN"
    SKP = "EX9E"
    SKNP = "EXA1"
    LD_VX_DT = "FX07"
    LD_VX_K = "FX0A"
    LD_DT_VX = "FX15"
    LD_ST_VX = "FX18"
    ADD_I = "FX1E"
    LD_F = "FX29"
    LD_B = "FX33"
    LD_MEM_VX = "FX55"
    LD_VX_MEM = "FX65"

Instruction = namedtuple("Instruction", ["op", "opcode", "x", "y", "n", "nn", "nnn"])

# families whose variant is fully identified by the leading nibble
# (5XYN and 9XYN ignore their trailing nibble)
PRIMARY_OPS = {
    0x1: Op.JP,
    0x2: Op.CALL,
    0x3: Op.SE_BYTE,
    0x4: Op.SNE_BYTE,
    0x5: Op.SE_REG,
    0x6: Op.LD_BYTE,
    0x7: Op.ADD_BYTE,
    0x9: Op.SNE_REG,
    0xA: Op.LD_I,
    0xB: Op.JP_V0,
    0xC: Op.RND,
    0xD: Op.DRW,
}
# 0x0 family, matched on the whole opcode
SYSTEM_OPS = {
    0x00E0: Op.CLS,
    0x00EE: Op.RET,
}
# 0x8 family, matched on the trailing nibble
ALU_OPS = {
    0x0: Op.LD_REG,
    0x1: Op.OR,
    0x2: Op.AND,
    0x3: Op.XOR,
    0x4: Op.ADD_REG,
    0x5: Op.SUB,
    0x6: Op.SHR,
    0x7: Op.SUBN,
    0xE: Op.SHL,
}
# 0xE family, matched on the trailing byte
KEY_OPS = {
    0x9E: Op.SKP,
    0xA1: Op.SKNP,
}
# 0xF family, matched on the trailing byte
MISC_OPS = {
    0x07: Op.LD_VX_DT,
    0x0A: Op.LD_VX_K,
    0x15: Op.LD_DT_VX,
    0x18: Op.LD_ST_VX,
    0x1E: Op.ADD_I,
    0x29: Op.LD_F,
    0x33: Op.LD_B,
    0x55: Op.LD_MEM_VX,
    0x65: Op.LD_VX_MEM,
}

def decode(opcode):
    """classify a 16-bit opcode into an Instruction, raise UnknownOpcode if it matches no variant"""
    family = (opcode & 0xF000) >> 12
    if family == 0x0:
        op = SYSTEM_OPS.get(opcode)
    elif family == 0x8:
        op = ALU_OPS.get(opcode & 0x000F)
    elif family == 0xE:
        op = KEY_OPS.get(opcode & 0x00FF)
    elif family == 0xF:
        op = MISC_OPS.get(opcode & 0x00FF)
    else:
        op = PRIMARY_OPS[family]
    if op is None:
        raise UnknownOpcode(opcode)
    return Instruction(
        op=op,
        opcode=opcode,
        x=(opcode & 0x0F00) >> 8,
        y=(opcode & 0x00F0) >> 4,
        n=opcode & 0x000F,
        nn=opcode & 0x00FF,
        nnn=opcode & 0x0FFF,
    )


# ******************** I/O SECTION
class FrameBuffer:
    """64x32 monochrome pixel surface, row-major, one byte (0 or 1) per pixel"""
    def __init__(self, w=SCREEN_WIDTH, h=SCREEN_HEIGHT):
        self.w, self.h = w, h
        self.buffer = bytearray(w * h)

    def __len__(self):
        return len(self.buffer)

    def __getitem__(self, index):
        return self.buffer[index]

    def read_pixel(self, x, y):
        """return 1 if pixel is ON, return 0 if pixel is OFF"""
        return self.buffer[y * self.w + x]

    def flip_pixel(self, x, y):
        """
        XOR a set sprite bit onto the pixel at (x, y) and return True on collision
        coordinates outside the surface are dropped, not wrapped
        """
        if x >= self.w or y >= self.h:
            return False
        idx = y * self.w + x
        collision = self.buffer[idx] == 1
        self.buffer[idx] ^= 1
        return collision

    def clear(self):
        self.buffer[:] = bytes(len(self.buffer))

class Keypad:
    """state of the 16 hex keys, written by the host and only read by the CPU"""
    def __init__(self):
        self.keys = [False] * NUM_KEYS

    def __getitem__(self, key):
        return self.keys[key & 0xF]

    def __setitem__(self, key, value):
        self.keys[key & 0xF] = bool(value)

    def untouched(self):
        return not any(self.keys)

    def last(self):
        """highest-indexed key currently pressed, None when no key is down"""
        pressed = [k for k, down in enumerate(self.keys) if down]
        return pressed[-1] if pressed else None


# ******************** MEMORY SECTION
# ********** WRAPS A LIST TO REPRESENT A STACK WITH A LIMITED SIZE OF 16 ADDRESSES
class Stack:
    def __init__(self):
        self.addr_list = []

    def __len__(self):
        return len(self.addr_list)

    def __str__(self):
        return "[" + ", ".join(f"0x{a:03x}" for a in self.addr_list) + "]"

    @property
    def sp(self):
        return len(self.addr_list)

    def append(self, address):
        if self.sp >= STACK_SIZE:
            raise StackOverflow(f"The CHIP-8 stack can contain at most {STACK_SIZE} addresses. Limit exceeded")
        self.addr_list.append(address)

    def pop(self):
        if self.sp == 0:
            raise StackUnderflow("Return with an empty CHIP-8 stack")
        return self.addr_list.pop()

# ********** WRAPS A BYTEARRAY TO REPRESENT THE MAIN MEMORY WITH A LIMITED SIZE OF 4KB
class Memory:
    def __init__(self):
        self.inner = bytearray(MEMORY_SIZE)
        self.load_font()

    def __len__(self):
        return len(self.inner)

    def __setitem__(self, key, value):
        self.inner[key & 0xFFF] = value & 0xFF     # addresses are 12 bits wide, nothing is written past 0xFFF

    def __getitem__(self, index):
        return self.inner[index & 0xFFF]

    def load_font(self):
        self.inner[FONT_START_ADDRESS:FONT_START_ADDRESS+len(C8_FONTS)] = bytes(C8_FONTS)

    def load_program(self, rom):
        """copy the ROM bytes at ROM_START_ADDRESS, raise RomTooLarge without touching memory if it doesn't fit"""
        rom = bytes(rom)
        if len(rom) > MAX_ROM_SIZE:
            raise RomTooLarge(len(rom))
        self.inner[ROM_START_ADDRESS:ROM_START_ADDRESS+len(rom)] = rom
        if DEBUG: print(f"A ROM of {len(rom)} bytes has been loaded successfully")


# ******************** CPU SECTION
class Chip8:
    def __init__(self, rng=None):
        self.mem = Memory()
        self.stack = Stack()
        self.v_regs = [0] * NUM_REGISTERS
        self.pc = ROM_START_ADDRESS
        self.idx = 0    # specify where the sprites reside in memory
        self.dt = 0     # delay timer, active when non-zero
        self.st = 0     # sound timer, active when non-zero
        self.draw = False
        self.screen = FrameBuffer()
        self.keypad = Keypad()
        self.rng = rng or random_byte
        self.instructions = {
            Op.CLS: self._clear_screen,
            Op.RET: self._return,
            Op.JP: self._jump,
            Op.CALL: self._call_addr,
            Op.SE_BYTE: self._skip_if_eq,
            Op.SNE_BYTE: self._skip_if_not_eq,
            Op.SE_REG: self._skip_if_eq_regs,
            Op.LD_BYTE: self._set_vk,
            Op.ADD_BYTE: self._add_to_vk,
            Op.LD_REG: self._set_vx_to_vy,
            Op.OR: self._set_vx_or_vy,
            Op.AND: self._set_vx_and_vy,
            Op.XOR: self._set_vx_xor_vy,
            Op.ADD_REG: self._add_vx_vy,
            Op.SUB: self._sub_vx_vy,
            Op.SHR: self._shr,
            Op.SUBN: self._subn_vx_vy,
            Op.SHL: self._shl,
            Op.SNE_REG: self._skip_if_not_eq_regs,
            Op.LD_I: self._set_idx,
            Op.JP_V0: self._jump_plus,
            Op.RND: self._random_byte_and,
            Op.DRW: self._to_screen,
            Op.SKP: self._skip_if_pressed,
            Op.SKNP: self._skip_if_not_pressed,
            Op.LD_VX_DT: self._set_vx_dt,
            Op.LD_VX_K: self._wait_keypress,
            Op.LD_DT_VX: self._set_dt_vx,
            Op.LD_ST_VX: self._set_st,
            Op.ADD_I: self._add_to_idx,
            Op.LD_F: self._select_char,
            Op.LD_B: self._bcd_repr,
            Op.LD_MEM_VX: self._store_vregs,
            Op.LD_VX_MEM: self._load_vregs,
        }

    def __str__(self):
        registers = f"PC_REGISTER:0x{self.pc:04x} | IDX_REGISTER:0x{self.idx:04x} | VARIABLE_REGISTERS:{self.v_regs}"
        timers = f"DELAY_TIMER:{self.dt} | SOUND_TIMER:{self.st}"
        stack = f"STACK:{self.stack}"
        flags = f"DRAW: {self.draw}"
        return f"{registers}\n{timers}\n{stack}\n{flags}"

    def load_rom(self, rom):
        self.mem.load_program(rom)

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: CLS")
    def _clear_screen(self, ins):
        self.screen.clear()
        self.draw = True
        self._goto_next_instruction()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: RET")
    def _return(self, ins):
        """return from a subroutine"""
        self.pc = self.stack.pop()
        self._goto_next_instruction()   # the stack holds the address of the CALL itself

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: JP 0x{nnn:03x}")
    def _jump(self, ins):
        self.pc = ins.nnn

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: CALL 0x{nnn:03x}")
    def _call_addr(self, ins):
        self.stack.append(self.pc)
        self.pc = ins.nnn

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SE V{x:X}, {nn}")
    def _skip_if_eq(self, ins):
        self._skip_if(self.v_regs[ins.x] == ins.nn)

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SNE V{x:X}, {nn}")
    def _skip_if_not_eq(self, ins):
        self._skip_if(self.v_regs[ins.x] != ins.nn)

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SE V{x:X}, V{y:X}")
    def _skip_if_eq_regs(self, ins):
        self._skip_if(self.v_regs[ins.x] == self.v_regs[ins.y])

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SNE V{x:X}, V{y:X}")
    def _skip_if_not_eq_regs(self, ins):
        self._skip_if(self.v_regs[ins.x] != self.v_regs[ins.y])

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD V{x:X}, {nn}")
    def _set_vk(self, ins):
        """set the value of one of the 16 variable registers, Vx"""
        self.v_regs[ins.x] = ins.nn
        self._goto_next_instruction()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: ADD V{x:X}, {nn}")
    def _add_to_vk(self, ins):
        """add to the value already present in one of the variable registers, no carry"""
        self.v_regs[ins.x] = (self.v_regs[ins.x] + ins.nn) & 0xFF    # keep only the lowest 8 bits
        self._goto_next_instruction()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD V{x:X}, V{y:X}")
    def _set_vx_to_vy(self, ins):
        """set the value of Vx equal to that of Vy"""
        self.v_regs[ins.x] = self.v_regs[ins.y]
        self._goto_next_instruction()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: OR V{x:X}, V{y:X}")
    def _set_vx_or_vy(self, ins):
        self.v_regs[ins.x] |= self.v_regs[ins.y]
        self._goto_next_instruction()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: AND V{x:X}, V{y:X}")
    def _set_vx_and_vy(self, ins):
        self.v_regs[ins.x] &= self.v_regs[ins.y]
        self._goto_next_instruction()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: XOR V{x:X}, V{y:X}")
    def _set_vx_xor_vy(self, ins):
        self.v_regs[ins.x] ^= self.v_regs[ins.y]
        self._goto_next_instruction()

    # flag-producing instructions write VF first and the result last,
    # so with X == F the register ends up holding the result
    @asm("mem_addr: 0x{mem_addr:04x}    instruction: ADD V{x:X}, V{y:X}")
    def _add_vx_vy(self, ins):
        """set Vx = Vx + Vy, VF = carry"""
        total = self.v_regs[ins.x] + self.v_regs[ins.y]
        self.v_regs[0xF] = 1 if total > 0xFF else 0
        self.v_regs[ins.x] = total & 0xFF
        self._goto_next_instruction()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SUB V{x:X}, V{y:X}")
    def _sub_vx_vy(self, ins):
        """set Vx = Vx - Vy, VF = NOT borrow"""
        vx, vy = self.v_regs[ins.x], self.v_regs[ins.y]
        self.v_regs[0xF] = 1 if vx >= vy else 0
        self.v_regs[ins.x] = (vx - vy) & 0xFF
        self._goto_next_instruction()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SUBN V{x:X}, V{y:X}")
    def _subn_vx_vy(self, ins):
        """set Vx = Vy - Vx, VF = NOT borrow"""
        vx, vy = self.v_regs[ins.x], self.v_regs[ins.y]
        self.v_regs[0xF] = 1 if vy >= vx else 0
        self.v_regs[ins.x] = (vy - vx) & 0xFF
        self._goto_next_instruction()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SHR V{x:X}")
    def _shr(self, ins):
        """set Vx equal to Vx SHR 1, Vy is ignored"""
        vx = self.v_regs[ins.x]
        self.v_regs[0xF] = vx & 0x1
        self.v_regs[ins.x] = vx >> 1
        self._goto_next_instruction()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SHL V{x:X}")
    def _shl(self, ins):
        """set Vx equal to Vx SHL 1, Vy is ignored"""
        vx = self.v_regs[ins.x]
        self.v_regs[0xF] = (vx >> 7) & 0x1
        self.v_regs[ins.x] = (vx << 1) & 0xFF
        self._goto_next_instruction()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD I, 0x{nnn:03x}")
    def _set_idx(self, ins):
        """set the value of the I register"""
        self.idx = ins.nnn
        self._goto_next_instruction()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: JP V0, 0x{nnn:03x}")
    def _jump_plus(self, ins):
        self.pc = ins.nnn + self.v_regs[0x0]

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: RND V{x:X}, 0x{nn:02x}")
    def _random_byte_and(self, ins):
        self.v_regs[ins.x] = self.rng() & ins.nn
        self._goto_next_instruction()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: DRW V{x:X}, V{y:X}, {n}")
    def _to_screen(self, ins):
        """display n-byte sprite starting at memory location I at (Vx, Vy), set VF = collision"""
        x, y = self.v_regs[ins.x], self.v_regs[ins.y]
        self.v_regs[0xF] = 0
        for row in range(ins.n):
            sprite_byte = self.mem[self.idx + row]
            for col in range(8):
                if sprite_byte & (0x80 >> col):
                    # sprites are XORed onto the existing screen, a set pixel
                    # turned off by the XOR is a collision
                    if self.screen.flip_pixel(x + col, y + row):
                        self.v_regs[0xF] = 1
        self.draw = True
        self._goto_next_instruction()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SKP V{x:X}")
    def _skip_if_pressed(self, ins):
        """skip the following instruction if the key corresponding to the hex value stored in Vx is pressed"""
        self._skip_if(self.keypad[self.v_regs[ins.x]])

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SKNP V{x:X}")
    def _skip_if_not_pressed(self, ins):
        """skip the following instruction if the key corresponding to the hex value stored in Vx is NOT pressed"""
        self._skip_if(not self.keypad[self.v_regs[ins.x]])

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD V{x:X}, DT")
    def _set_vx_dt(self, ins):
        self.v_regs[ins.x] = self.dt
        self._goto_next_instruction()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD V{x:X}, K")
    def _wait_keypress(self, ins):
        """wait for a key press and store its value in Vx"""
        key = self.keypad.last()
        if key is None:
            return      # stay on the same instruction until a key is pressed
        self.v_regs[ins.x] = key
        self._goto_next_instruction()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD DT, V{x:X}")
    def _set_dt_vx(self, ins):
        self.dt = self.v_regs[ins.x]
        self._goto_next_instruction()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD ST, V{x:X}")
    def _set_st(self, ins):
        self.st = self.v_regs[ins.x]
        self._goto_next_instruction()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: ADD I, V{x:X}")
    def _add_to_idx(self, ins):
        """set I = I + Vx, VF = 1 when I goes past 0xFFF; I is not wrapped"""
        total = self.idx + self.v_regs[ins.x]
        self.v_regs[0xF] = 1 if total > 0xFFF else 0
        self.idx = total
        self._goto_next_instruction()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD F, V{x:X}")
    def _select_char(self, ins):
        """set I to location of sprite for digit Vx"""
        self.idx = FONT_START_ADDRESS + self.v_regs[ins.x] * FONT_SPRITE_SIZE
        self._goto_next_instruction()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD B, V{x:X}")
    def _bcd_repr(self, ins):
        """store the hundreds digit of Vx in memory at I, the tens digit at I+1, the ones digit at I+2"""
        vx = self.v_regs[ins.x]
        self.mem[self.idx] = vx // 100
        self.mem[self.idx+1] = (vx // 10) % 10
        self.mem[self.idx+2] = vx % 10
        self._goto_next_instruction()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD [I], V{x:X}")
    def _store_vregs(self, ins):
        """store registers V0 through Vx (included) in memory starting at location I"""
        for i in range(ins.x + 1):
            self.mem[self.idx+i] = self.v_regs[i]
        self.idx += ins.x + 1       # compatibility quirk 6
        self._goto_next_instruction()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD V{x:X}, [I]")
    def _load_vregs(self, ins):
        """read registers V0 through Vx (included) from memory starting at location I"""
        for i in range(ins.x + 1):
            self.v_regs[i] = self.mem[self.idx+i]
        self.idx += ins.x + 1       # compatibility quirk 6
        self._goto_next_instruction()

    def _goto_next_instruction(self):
        self.pc += 0x2

    def _skip_if(self, condition):
        self.pc += 0x4 if condition else 0x2

    def fetch(self):
        """each instruction is two bytes long, stored big-endian"""
        return self.mem[self.pc] << 8 | self.mem[self.pc + 1]

    def tick_timers(self):
        if self.dt > 0:
            self.dt -= 1
        if self.st > 0:
            self.st -= 1

    def cycle(self):
        """emulate one machine cycle: fetch, decode, execute, update timers"""
        opcode = self.fetch()
        if DEBUG: print(f"opcode: 0x{opcode:04x}", end="    ")
        ins = decode(opcode)
        self.instructions[ins.op](ins)
        self.tick_timers()

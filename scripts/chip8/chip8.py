# CHIP-8 INFO
# https://chip-8.github.io/extensions/#chip-8
# https://chip-8.github.io/links/
#
# MASTERING CHIP-8
# https://github.com/mattmikolay/chip-8/wiki/Mastering-CHIP%E2%80%908
#
# Headless CPU core: memory, V registers, call stack and the fetch/decode/dispatch loop.
# Display, keypad, timers and the remaining opcode families plug in via Chip8.add_instruction


import argparse
import logging
import os
import sys
from collections import namedtuple
from enum import Enum
from functools import partial, wraps


# ******************** STATIC SECTION
MEMORY_SIZE = 4096
REGISTER_COUNT = 16
FLAG_REGISTER = 0xF
STACK_SIZE = 16
INSTRUCTION_WIDTH = 2
ROM_START_ADDRESS = 0x200
DEBUG = True if int(os.getenv('DEBUG', 0)) >= 1 else False

log = logging.getLogger(__name__)


class State(Enum):
    RUNNING = "running"
    HALTED = "halted"
    FAULTED = "faulted"


# an instruction word split into nibbles (c, x, y, d) plus the wider operands nnn and kk
Instruction = namedtuple("Instruction", ["opcode", "c", "x", "y", "d", "nnn", "kk"])


# ******************** UTILITIES SECTION
def asm(msg):
    """decorator to log the ASM of the instruction being called"""
    def decorator(fn):
        @wraps(fn)
        def wrapper_fn(*args, **kwargs):
            mem_addr = args[0].pc - INSTRUCTION_WIDTH   # pc already points past the instruction
            vals = fn(*args, **kwargs)  # use the locals() values of each decorated function in the message
            vals['mem_addr'] = mem_addr
            if log.isEnabledFor(logging.DEBUG):
                log.debug(msg.format(**vals))
        return wrapper_fn
    return decorator

def decode(opcode):
    """split a 16 bit instruction word into its four nibbles and the nnn/kk operands"""
    if not 0 <= opcode <= 0xFFFF:
        raise ValueError(f"instruction words are 16 bits wide, got {opcode:#x}")
    return Instruction(
        opcode=opcode,
        c=(opcode & 0xF000) >> 12,
        x=(opcode & 0x0F00) >> 8,
        y=(opcode & 0x00F0) >> 4,
        d=opcode & 0x000F,
        nnn=opcode & 0x0FFF,
        kk=opcode & 0x00FF,
    )

def encode(c, x, y, d):
    """inverse of decode: pack four nibbles back into an instruction word"""
    for nibble in (c, x, y, d):
        if not 0 <= nibble <= 0xF:
            raise ValueError(f"a nibble holds 0x0-0xF, got {nibble:#x}")
    return c << 12 | x << 8 | y << 4 | d


# ******************** ERRORS SECTION
class Chip8Fault(Exception):
    """
    base class of every fatal CPU condition
    opcode and address identify the faulting instruction, the run loop fills them in when the raiser could not
    """
    def __init__(self, msg, opcode=None, address=None):
        super().__init__(msg)
        self.opcode = opcode
        self.address = address

    def __str__(self):
        msg = super().__str__()
        where = []
        if self.opcode is not None:
            where.append(f"opcode 0x{self.opcode:04x}")
        if self.address is not None:
            where.append(f"at 0x{self.address:04x}")
        return f"{msg} [{' '.join(where)}]" if where else msg

class UnimplementedOpcode(Chip8Fault, NotImplementedError):
    pass

class StackOverflow(Chip8Fault, IndexError):
    pass

class StackUnderflow(Chip8Fault, IndexError):
    pass

class OutOfBoundsFetch(Chip8Fault, IndexError):
    pass

class OutOfBoundsAccess(Chip8Fault, IndexError):
    pass

class CycleLimitExceeded(Chip8Fault):
    pass


# ******************** MEMORY SECTION
# ********** WRAPS A LIST TO REPRESENT A STACK WITH A LIMITED SIZE OF 16 ADDRESSES
class Stack:
    def __init__(self, capacity=STACK_SIZE):
        self.addr_list = []
        self.capacity = capacity

    def __len__(self):
        return len(self.addr_list)

    def __repr__(self):
        return "[" + ", ".join(f"0x{a:04x}" for a in self.addr_list) + "]"

    @property
    def size(self):
        return len(self.addr_list)

    def append(self, address):
        if self.size >= self.capacity:
            raise StackOverflow(f"The CHIP-8 stack can contain at most {self.capacity} addresses. Limit exceeded")
        self.addr_list.append(address)

    def pop(self):
        if self.size == 0:
            raise StackUnderflow("Cannot return from a subroutine, the CHIP-8 stack is empty")
        return self.addr_list.pop()

# ********** WRAPS A BYTEARRAY TO REPRESENT THE MAIN MEMORY WITH A LIMITED SIZE OF 4KB
class Memory:
    def __init__(self, size=MEMORY_SIZE):
        self.inner = bytearray(size)

    def __len__(self):
        return len(self.inner)

    def _check(self, index):
        # negative indexes would silently wrap around on a bytearray
        if not 0 <= index < len(self.inner):
            raise OutOfBoundsAccess(f"memory address {index:#06x} is out of range")

    def __setitem__(self, key, value):
        self._check(key)
        self.inner[key] = value

    def __getitem__(self, index):
        if isinstance(index, slice):
            return bytes(self.inner[index])
        self._check(index)
        return self.inner[index]

    def load(self, data, address=0):
        """copy a program image into memory starting at address"""
        data = bytes(data)
        if address < 0 or address + len(data) > len(self.inner):
            raise ValueError(f"{len(data)} bytes at {address:#06x} do not fit in {len(self.inner)} bytes of memory")
        self.inner[address:address+len(data)] = data

    def load_rom(self, path, address=ROM_START_ADDRESS):
        """load ROM file from user specified path at the given address"""
        with open(path, mode='rb') as f:
            rom = f.read()
        self.load(rom, address)
        log.info(f"The ROM at path {path} has been loaded successfully ({len(rom)} bytes at 0x{address:04x})")


# ******************** CPU SECTION
class Chip8:
    def __init__(self, entry_point=0, mem=None, stack=None, v_regs=None):
        self.mem = mem if mem is not None else Memory()
        self.stack = stack if stack is not None else Stack()
        self.v_regs = v_regs if v_regs is not None else [0] * REGISTER_COUNT
        if len(self.v_regs) != REGISTER_COUNT:
            raise ValueError(f"the register file holds {REGISTER_COUNT} registers, got {len(self.v_regs)}")
        self.entry_point = entry_point
        self.pc = entry_point
        self.state = State.RUNNING
        self.fault = None
        self.cycles = 0
        # (mask, pattern) -> handler, a word matches when opcode & mask == pattern
        self.instructions = {
            (0xFFFF, 0x0000): self._halt,
            (0xFFFF, 0x00EE): self._return,
            (0xF000, 0x2000): self._call_addr,
            (0xF00F, 0x8004): self._add_vx_vy,
        }
        self._sort_instructions()

    def __str__(self):
        registers = f"PC_REGISTER:0x{self.pc:04x} | VARIABLE_REGISTERS:{self.v_regs}"
        stack = f"STACK:{self.stack}"
        state = f"STATE:{self.state.name}"
        if self.fault is not None:
            state += f" ({type(self.fault).__name__}: {self.fault})"
        return f"{registers}\n{stack}\n{state}"

    def _sort_instructions(self):
        # WATCH OUT: order is important!!!
        # masks with more bits set are more specific and must be tried first
        self._lookup = sorted(self.instructions, key=lambda k: bin(k[0]).count("1"), reverse=True)

    def add_instruction(self, mask, pattern, handler):
        """
        register an extra opcode family, handler is called as handler(chip, instruction)
        fetch, decode and the pc advance are untouched by this
        """
        if pattern & ~mask & 0xFFFF:
            raise ValueError(f"pattern 0x{pattern:04x} has bits outside of mask 0x{mask:04x}")
        if (mask, pattern) in self.instructions:
            raise ValueError(f"an instruction is already registered for 0x{pattern:04x}/0x{mask:04x}")
        self.instructions[(mask, pattern)] = partial(handler, self)
        self._sort_instructions()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: HALT")
    def _halt(self, ins):
        """stop the run loop, the only normal way out of it"""
        self.state = State.HALTED
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: RET")
    def _return(self, ins):
        """return from a subroutine"""
        self.pc = self.stack.pop()
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: CALL 0x{address:03x}")
    def _call_addr(self, ins):
        address = ins.nnn
        self.stack.append(self.pc)      # pc already points at the instruction after the CALL
        self.pc = address
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: ADD V{x:X}, V{y:X}")
    def _add_vx_vy(self, ins):
        """set the value of Vx to Vx + Vy, VF = carry"""
        x, y = ins.x, ins.y
        total = self.v_regs[x] + self.v_regs[y]
        self.v_regs[x] = total & 0xFF   # keep only the lowest 8 bits from the result and store them in Vx
        self.v_regs[FLAG_REGISTER] = 1 if total > 255 else 0
        return locals()

    def _goto_next_instruction(self):
        self.pc += INSTRUCTION_WIDTH

    def _record_fault(self, fault):
        self.state = State.FAULTED
        self.fault = fault
        log.error(f"The CPU faulted: {type(fault).__name__}: {fault}")

    def load_program(self, words, address=None):
        """write 16 bit instruction words big-endian into memory, at the entry point by default"""
        address = self.entry_point if address is None else address
        data = bytearray()
        for word in words:
            if not 0 <= word <= 0xFFFF:
                raise ValueError(f"instruction words are 16 bits wide, got {word:#x}")
            data += word.to_bytes(INSTRUCTION_WIDTH, "big")
        self.mem.load(data, address)

    def fetch(self):
        """read the instruction word at pc (each instruction is two bytes long, high byte first)"""
        if not 0 <= self.pc <= len(self.mem) - INSTRUCTION_WIDTH:
            raise OutOfBoundsFetch("Cannot fetch an instruction past the end of memory", address=self.pc)
        return self.mem[self.pc] << 8 | self.mem[self.pc + 1]

    def dispatch(self, ins):
        """return the handler for a decoded instruction"""
        for mask, pattern in self._lookup:
            if ins.opcode & mask == pattern:
                return self.instructions[(mask, pattern)]
        raise UnimplementedOpcode(f"The opcode 0x{ins.opcode:04x} has not been implemented", opcode=ins.opcode)

    def cycle(self):
        """emulate one machine cycle (fetch opcode, advance pc, decode opcode, execute opcode)"""
        if self.state is not State.RUNNING:
            raise RuntimeError(f"The CPU is {self.state.value} and cannot execute more instructions")
        address, opcode = self.pc, None
        try:
            opcode = self.fetch()
            self._goto_next_instruction()
            ins = decode(opcode)
            instruction = self.dispatch(ins)
            instruction(ins)
        except Chip8Fault as fault:
            if fault.opcode is None:
                fault.opcode = opcode
            if fault.address is None:
                fault.address = address
            self._record_fault(fault)
            raise
        self.cycles += 1
        return self.state

    def run(self, max_cycles=None):
        """
        cycle until the CPU halts, return State.HALTED
        any fault is recorded on the machine and raised to the caller
        max_cycles is an optional safety valve against programs that never halt
        """
        if self.state is not State.RUNNING:
            raise RuntimeError(f"The CPU is {self.state.value} and cannot run")
        executed = 0
        while self.state is State.RUNNING:
            if max_cycles is not None and executed >= max_cycles:
                fault = CycleLimitExceeded(f"The program did not halt within {max_cycles} cycles", address=self.pc)
                self._record_fault(fault)
                raise fault
            self.cycle()
            executed += 1
        return self.state


# ******************** ENTRY POINT SECTION
def get_args(argv=None):
    parser = argparse.ArgumentParser(description="run a CHIP-8 program image until it halts")
    parser.add_argument("-f", "--file", required=True, help="input rom file")
    parser.add_argument("-a", "--address", type=lambda v: int(v, 0), default=ROM_START_ADDRESS,
                        help="load address and entry point (default: 0x200)")
    parser.add_argument("-n", "--max-cycles", type=int, default=None,
                        help="give up after this many cycles (default: no limit)")
    parser.add_argument("-d", "--debug", action="store_true", help="log every executed instruction")
    return parser.parse_args(argv)

def main(argv=None):
    args = get_args(argv)
    logging.basicConfig(level=logging.DEBUG if DEBUG or args.debug else logging.INFO, format="%(message)s")
    chip = Chip8(entry_point=args.address)
    chip.mem.load_rom(args.file, args.address)
    try:
        chip.run(max_cycles=args.max_cycles)
    except Chip8Fault:
        sys.exit(f"********** THE EMULATOR CRASHED WITH THE FOLLOWING STATE\n{chip}")
    print(chip)
    return 0


if __name__ == "__main__":
    main()

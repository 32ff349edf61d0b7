"""
Machine state shared by the SPC700 interpreter and the S-DSP model.

A MachineState is created once per conversion from a fully populated snapshot
and is owned exclusively by that conversion's emulation run.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional

from errors import CorruptSnapshot


RAM_SIZE = 0x10000
DSP_REGISTER_COUNT = 128

# SPC700 clock: 1.024 MHz (all instruction cycle counts are in this unit)
CLOCK_HZ = 1024000

# S-DSP produces one sample every 32 CPU cycles (32 kHz)
CYCLES_PER_SAMPLE = 32

# Timer prescalers in CPU cycles: T0/T1 run at 8 kHz, T2 at 64 kHz
TIMER_PERIODS = (128, 128, 16)

# I/O page registers
REG_TEST = 0xF0
REG_CONTROL = 0xF1
REG_DSPADDR = 0xF2
REG_DSPDATA = 0xF3
REG_PORT0 = 0xF4
REG_TIMER_TARGET0 = 0xFA
REG_TIMER_COUNTER0 = 0xFD

IPL_ROM_ADDRESS = 0xFFC0

# 64-byte boot ROM overlaid on $FFC0-$FFFF when CONTROL bit 7 is set
IPL_ROM = bytes([
    0xCD, 0xEF, 0xBD, 0xE8, 0x00, 0xC6, 0x1D, 0xD0, 0xFC, 0x8F, 0xAA, 0xF4, 0x8F, 0xBB, 0xF5, 0x78,
    0xCC, 0xF4, 0xD0, 0xFB, 0x2F, 0x19, 0xEB, 0xF4, 0xD0, 0xFC, 0x7E, 0xF4, 0xD0, 0x0B, 0xE4, 0xF5,
    0xCB, 0xF4, 0xD7, 0x00, 0xFC, 0xD0, 0xF3, 0xAB, 0x01, 0x10, 0xEF, 0x7E, 0xF4, 0x10, 0xEB, 0xBA,
    0xF6, 0xDA, 0x00, 0xBA, 0xF4, 0xC4, 0xF4, 0xDD, 0x5D, 0xD0, 0xDB, 0x1F, 0x00, 0x00, 0xC0, 0xFF,
])


@dataclass
class Timer:
    """One of the three APU timers.

    Updated lazily: run_until() catches the timer up to a given cycle, so the
    emulator only touches a timer when the program accesses it.
    """
    prescaler: int  # CPU cycles per stage tick
    target: int = 256  # 0 written to the target register means 256
    enabled: bool = False
    divider: int = 0
    counter: int = 0  # 4-bit output counter
    next_cycle: int = 0

    def run_until(self, cycle: int):
        if cycle < self.next_cycle:
            return
        elapsed = (cycle - self.next_cycle) // self.prescaler + 1
        self.next_cycle += self.prescaler * elapsed
        if not self.enabled:
            return
        remain = self.target - self.divider
        if remain <= 0:
            remain += 256
        divider = self.divider + elapsed
        over = elapsed - remain
        if over >= 0:
            n = over // self.target
            self.counter = (self.counter + 1 + n) & 0x0F
            divider = over - n * self.target
        self.divider = divider & 0xFF

    def read_counter(self, cycle: int) -> int:
        """Read and clear the 4-bit counter."""
        self.run_until(cycle)
        value = self.counter
        self.counter = 0
        return value


@dataclass
class MachineState:
    """Complete emulated APU state: memory, CPU registers, DSP registers, I/O."""
    ram: bytearray
    dsp_regs: bytearray
    pc: int = 0
    a: int = 0
    x: int = 0
    y: int = 0
    sp: int = 0xEF
    psw: int = 0x02
    cycles: int = 0

    # I/O page state
    control: int = 0
    dsp_addr: int = 0
    port_in: bytearray = field(default_factory=lambda: bytearray(4))
    port_out: bytearray = field(default_factory=lambda: bytearray(4))
    timers: List[Timer] = field(default_factory=lambda: [Timer(p) for p in TIMER_PERIODS])

    def __post_init__(self):
        if len(self.ram) != RAM_SIZE:
            raise CorruptSnapshot(f"memory image is {len(self.ram)} bytes, expected {RAM_SIZE}")
        if len(self.dsp_regs) != DSP_REGISTER_COUNT:
            raise CorruptSnapshot(
                f"DSP register image is {len(self.dsp_regs)} bytes, expected {DSP_REGISTER_COUNT}")
        # Own the buffers even if the caller passed immutable bytes
        self.ram = bytearray(self.ram)
        self.dsp_regs = bytearray(self.dsp_regs)

    @classmethod
    def from_image(cls, ram: bytes, dsp_regs: bytes, pc: int = 0, a: int = 0, x: int = 0,
                   y: int = 0, psw: int = 0x02, sp: int = 0xEF) -> 'MachineState':
        """Build a state from raw images, restoring the I/O page from RAM.

        A snapshot stores the last values written to $F0-$FF in its RAM image:
        CONTROL, DSPADDR, the CPU-side input ports, the timer targets and the
        timer counters.
        """
        state = cls(ram=bytearray(ram), dsp_regs=bytearray(dsp_regs),
                    pc=pc & 0xFFFF, a=a & 0xFF, x=x & 0xFF, y=y & 0xFF,
                    psw=psw & 0xFF, sp=sp & 0xFF)
        state.control = state.ram[REG_CONTROL]
        state.dsp_addr = state.ram[REG_DSPADDR]
        state.port_in[:] = state.ram[REG_PORT0:REG_PORT0 + 4]
        for i, timer in enumerate(state.timers):
            target = state.ram[REG_TIMER_TARGET0 + i]
            timer.target = target if target else 256
            timer.enabled = bool(state.control & (1 << i))
            timer.counter = state.ram[REG_TIMER_COUNTER0 + i] & 0x0F
        return state

    @property
    def ipl_enabled(self) -> bool:
        return bool(self.control & 0x80)

    def read_ram_word(self, address: int) -> int:
        """Little-endian word from RAM (no I/O side effects), wrapping at 64K."""
        return self.ram[address & 0xFFFF] | (self.ram[(address + 1) & 0xFFFF] << 8)


class ChipObserver(ABC):
    """Sound chip attached to the DSPADDR/DSPDATA ports.

    The processor forwards every DSP register access here synchronously,
    before fetching its next instruction.
    """

    @abstractmethod
    def read_register(self, state: MachineState, address: int, cycle: int) -> int:
        """Return the value of DSP register `address` (0-127) at `cycle`."""
        pass

    @abstractmethod
    def write_register(self, state: MachineState, address: int, value: int, cycle: int):
        """Apply a write of `value` to DSP register `address` (0-127) at `cycle`."""
        pass

    @abstractmethod
    def run_until(self, state: MachineState, cycle: int):
        """Advance the chip's own clock up to and including `cycle`."""
        pass


class NullChip(ChipObserver):
    """Plain register file with no side effects."""

    def read_register(self, state: MachineState, address: int, cycle: int) -> int:
        return state.dsp_regs[address & 0x7F]

    def write_register(self, state: MachineState, address: int, value: int, cycle: int):
        state.dsp_regs[address & 0x7F] = value & 0xFF

    def run_until(self, state: MachineState, cycle: int):
        pass


def empty_state(pc: int = 0x0200, dsp_regs: Optional[bytes] = None) -> MachineState:
    """Zeroed state with the program counter at `pc`."""
    return MachineState(ram=bytearray(RAM_SIZE),
                        dsp_regs=bytearray(dsp_regs) if dsp_regs else bytearray(DSP_REGISTER_COUNT),
                        pc=pc)

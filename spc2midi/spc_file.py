"""
SPC snapshot files.

Layout (v0.30):
    0x00000  33-byte signature "SNES-SPC700 Sound File Data v0.30"
    0x00025  PC (word), A, X, Y, PSW, SP
    0x0002E  ID666 tag (text format)
    0x00100  64 KiB APU RAM
    0x10100  128 DSP registers
    0x101C0  64 bytes of RAM hidden under the IPL ROM
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Union

from errors import CorruptSnapshot
from machine import MachineState, RAM_SIZE, DSP_REGISTER_COUNT, IPL_ROM_ADDRESS


SPC_SIGNATURE = b"SNES-SPC700 Sound File Data"

OFFSET_PC = 0x25
OFFSET_A = 0x27
OFFSET_X = 0x28
OFFSET_Y = 0x29
OFFSET_PSW = 0x2A
OFFSET_SP = 0x2B
OFFSET_RAM = 0x100
OFFSET_DSP = OFFSET_RAM + RAM_SIZE
OFFSET_EXTRA_RAM = 0x101C0
EXTRA_RAM_SIZE = 0x40
SPC_MIN_SIZE = OFFSET_DSP + 0x100

# ID666 text-format fields: name -> (offset, length)
ID666_FIELDS = {
    'title': (0x2E, 32),
    'game': (0x4E, 32),
    'dumper': (0x6E, 16),
    'comments': (0x7E, 32),
    'date': (0x9E, 11),
    'length_seconds': (0xA9, 3),
    'fade_ms': (0xAC, 5),
    'artist': (0xB1, 32),
}

BRR_BLOCK_SIZE = 9


def _text(data: bytes) -> str:
    return data.split(b'\x00', 1)[0].decode('latin-1').strip()


@dataclass
class SpcFile:
    """Parsed SPC snapshot."""
    pc: int
    a: int
    x: int
    y: int
    psw: int
    sp: int
    ram: bytes
    dsp_regs: bytes
    extra_ram: bytes = b''
    tags: Dict[str, str] = field(default_factory=dict)
    filename: Optional[str] = None

    @property
    def title(self) -> str:
        return self.tags.get('title', '')

    def to_state(self) -> MachineState:
        """Fresh MachineState for one conversion run."""
        state = MachineState.from_image(self.ram, self.dsp_regs, pc=self.pc, a=self.a, x=self.x,
                                        y=self.y, psw=self.psw, sp=self.sp)
        # With the IPL ROM mapped, the RAM underneath is stored separately
        if state.ipl_enabled and len(self.extra_ram) == EXTRA_RAM_SIZE:
            state.ram[IPL_ROM_ADDRESS:] = self.extra_ram
        return state


def parse_spc(data: bytes, filename: Optional[str] = None) -> SpcFile:
    """Parse SPC file contents. Raises CorruptSnapshot on bad layout."""
    if not data.startswith(SPC_SIGNATURE):
        raise CorruptSnapshot(f"{filename or 'snapshot'}: missing SPC signature")
    if len(data) < SPC_MIN_SIZE:
        raise CorruptSnapshot(f"{filename or 'snapshot'}: file is {len(data)} bytes, "
                              f"expected at least {SPC_MIN_SIZE}")

    tags = {}
    # Byte 0x23 is 26 when the header carries an ID666 tag
    if data[0x23] == 26:
        for name, (offset, length) in ID666_FIELDS.items():
            value = _text(data[offset:offset + length])
            if value:
                tags[name] = value

    extra = data[OFFSET_EXTRA_RAM:OFFSET_EXTRA_RAM + EXTRA_RAM_SIZE]
    return SpcFile(
        pc=data[OFFSET_PC] | (data[OFFSET_PC + 1] << 8),
        a=data[OFFSET_A],
        x=data[OFFSET_X],
        y=data[OFFSET_Y],
        psw=data[OFFSET_PSW],
        sp=data[OFFSET_SP],
        ram=bytes(data[OFFSET_RAM:OFFSET_RAM + RAM_SIZE]),
        dsp_regs=bytes(data[OFFSET_DSP:OFFSET_DSP + DSP_REGISTER_COUNT]),
        extra_ram=bytes(extra),
        tags=tags,
        filename=filename,
    )


def read_spc(path: Union[str, Path]) -> SpcFile:
    path = Path(path)
    with open(path, 'rb') as f:
        return parse_spc(f.read(), filename=path.name)


def build_spc(state: MachineState, title: str = '') -> bytes:
    """Serialize a MachineState as an SPC file (used for fixtures and round trips)."""
    data = bytearray(SPC_MIN_SIZE)
    data[0:len(SPC_SIGNATURE)] = SPC_SIGNATURE
    data[len(SPC_SIGNATURE):0x21] = b" v0.30"
    data[0x21] = 26
    data[0x22] = 26
    data[0x23] = 26
    data[0x24] = 30
    data[OFFSET_PC] = state.pc & 0xFF
    data[OFFSET_PC + 1] = state.pc >> 8
    data[OFFSET_A] = state.a
    data[OFFSET_X] = state.x
    data[OFFSET_Y] = state.y
    data[OFFSET_PSW] = state.psw
    data[OFFSET_SP] = state.sp
    encoded = title.encode('latin-1', 'replace')[:32]
    data[0x2E:0x2E + len(encoded)] = encoded
    data[OFFSET_RAM:OFFSET_RAM + RAM_SIZE] = state.ram
    data[OFFSET_DSP:OFFSET_DSP + DSP_REGISTER_COUNT] = state.dsp_regs
    data[OFFSET_EXTRA_RAM:OFFSET_EXTRA_RAM + EXTRA_RAM_SIZE] = state.ram[IPL_ROM_ADDRESS:]
    return bytes(data)


@dataclass
class SampleInfo:
    """A BRR sample as referenced from the source directory."""
    srcn: int
    addr: int
    loop_addr: int
    blocks: int = 0
    loop_flag: bool = False
    warning: Optional[str] = None

    @property
    def one_shot(self) -> bool:
        """Samples that do not loop are usually drums or effects."""
        return not self.loop_flag

    @property
    def loop_pos(self) -> int:
        return self.loop_addr - self.addr


def read_sample_info(ram: bytes, dir_page: int, srcn: int) -> SampleInfo:
    """Walk a sample's BRR blocks up to its END block."""
    dirloc = dir_page * 0x100 + srcn * 4
    addr = ram[dirloc & 0xFFFF] | (ram[(dirloc + 1) & 0xFFFF] << 8)
    loop_addr = ram[(dirloc + 2) & 0xFFFF] | (ram[(dirloc + 3) & 0xFFFF] << 8)
    sample = SampleInfo(srcn, addr, loop_addr)
    # check for invalid locations
    if addr < 0x200:
        sample.warning = "Sample address in zero page memory"
        return sample
    loc = addr
    while True:
        sample.blocks += 1
        # END bit
        if ram[loc] & 1:
            # LOOP bit
            if ram[loc] & 0b10:
                sample.loop_flag = True
                if sample.loop_pos % BRR_BLOCK_SIZE:
                    sample.warning = "Loop point misaligned with block boundaries"
            break
        loc += BRR_BLOCK_SIZE
        if loc > len(ram) - BRR_BLOCK_SIZE:
            sample.warning = "Unterminated BRR"
            break
    return sample


def survey_samples(ram: bytes, dir_page: int, srcns) -> List[SampleInfo]:
    return [read_sample_info(ram, dir_page, srcn) for srcn in sorted(set(srcns))]

"""
Performance extraction: run the driver and collect a bounded event timeline.

Emulation stops either when the driver is seen to repeat itself (same
program counter and same machine state at a key-on write) or when the
emulated-duration bound is reached. Both are normal outcomes.
"""

import hashlib
import heapq
from typing import Dict, List, Optional, Tuple

from dsp_tracer import DspTracer, V_ENVX, V_OUTX, R_ENDX, R_KON, R_KOF
from errors import EmulationTimeout
from events import Event, Timeline, TerminationReason
from machine import MachineState
from options import ConversionOptions
from source_map import SourceMapper
from spc700 import SPC700


# DSP registers the chip itself updates; they do not describe driver state
VOLATILE_DSP_REGISTERS = tuple(
    [(v << 4) | V_ENVX for v in range(8)] +
    [(v << 4) | V_OUTX for v in range(8)] +
    [R_ENDX, R_KON, R_KOF]
)


def machine_state_digest(state: MachineState) -> bytes:
    """SHA-1 over the driver-visible state that decides what it does next.

    Covers CPU registers (the program counter is keyed separately), the DSP
    register file without its volatile registers, and RAM without the I/O
    page and the unused part of the stack page.
    """
    regs = bytearray(state.dsp_regs)
    for address in VOLATILE_DSP_REGISTERS:
        regs[address] = 0
    digest = hashlib.sha1()
    digest.update(bytes((state.a, state.x, state.y, state.sp, state.psw)))
    digest.update(regs)
    ram = state.ram
    digest.update(ram[0x0000:0x00F0])
    digest.update(ram[0x0100 + state.sp + 1:0x0200])
    digest.update(ram[0x0200:])
    return digest.digest()


class PerformanceExtractor:
    """Drives the SPC700 and the DSP tracer and produces a Timeline."""

    def __init__(self, state: MachineState, options: Optional[ConversionOptions] = None,
                 source_mapper: Optional[SourceMapper] = None):
        self.state = state
        self.options = options or ConversionOptions()
        self.tracer = DspTracer(state, self.options, source_mapper)
        self.cpu = SPC700(state, self.tracer)
        self.tracer.key_on_listener = self._on_key_on

        self.seen: Dict[Tuple[int, bytes], int] = {}
        self.loop_key: Optional[Tuple[int, bytes]] = None
        self.loop_start_cycle: Optional[int] = None
        self.loop_end_cycle: Optional[int] = None
        self.loop_hits = 0
        self.halt_cycle: Optional[int] = None
        self.steps = 0
        self.diagnostics: List[Exception] = []

    @property
    def loops_required(self) -> int:
        """Repeats of the loop point to observe before halting."""
        if self.options.loop_mode == 'repeat-n-times':
            return self.options.loop_count
        return 1

    def _on_key_on(self, state: MachineState, value: int, cycle: int) -> bool:
        """Loop check, called before every KON write. False suppresses the write."""
        if self.halt_cycle is not None:
            return False
        key = (self.cpu.opcode_pc, machine_state_digest(state) + bytes((value,)))
        first = self.seen.get(key)
        if first is None:
            self.seen[key] = cycle
            return True

        if self.loop_key is None:
            self.loop_key = key
            self.loop_start_cycle = first
            self.loop_end_cycle = cycle
        if key == self.loop_key:
            self.loop_hits += 1
            if self.loop_hits >= self.loops_required:
                self.halt_cycle = cycle
                return False
        return True

    def run(self) -> Timeline:
        """Emulate until a loop is confirmed or the duration bound is reached."""
        state = self.state
        cpu = self.cpu
        tracer = self.tracer
        start = state.cycles
        limit = start + self.options.max_cycles

        while self.halt_cycle is None and state.cycles < limit:
            cpu.step()
            self.steps += 1
            if state.cycles >= tracer.next_sample_cycle:
                # Nothing is sampled past the halt point or the bound
                bound = limit if self.halt_cycle is None else self.halt_cycle
                tracer.run_until(state, min(state.cycles, bound))

        if self.halt_cycle is not None:
            reason = TerminationReason.LOOP_DETECTED
            end_cycle = self.halt_cycle
        else:
            reason = TerminationReason.DURATION_LIMIT
            end_cycle = limit
            self.diagnostics.append(EmulationTimeout(
                f"duration limit of {self.options.max_duration} s reached after {self.steps} instructions",
                cycle=limit, address=cpu.opcode_pc))
        tracer.finish(state, end_cycle)

        return Timeline(
            events=tuple(merge_voice_events(tracer.voice_events)),
            end_cycle=end_cycle,
            reason=reason,
            loop_start_cycle=self.loop_start_cycle,
            loop_end_cycle=self.loop_end_cycle,
        )


def merge_voice_events(voice_events: List[List[Event]]) -> List[Event]:
    """Merge per-voice streams into one list ordered by Event.sort_key."""
    streams = [sorted(events, key=lambda e: e.sort_key) for events in voice_events]
    return list(heapq.merge(*streams, key=lambda e: e.sort_key))

#!/usr/bin/env python3
"""Tests for performance extraction: loop detection and the duration bound."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import pytest

from errors import EmulationTimeout, UnsupportedOpcode
from events import EventKind, TerminationReason
from options import ConversionOptions
from performance import PerformanceExtractor, machine_state_digest
from snapshot_helpers import (
    make_state, key_off, jmp, LOOPING_DRIVER, LOOPING_DRIVER_PASS_CYCLES,
    LOOPING_DRIVER_KON_CYCLE, IDLE_DRIVER, PROGRAM_ADDR,
)


def extract(program, **options):
    state = make_state(program)
    extractor = PerformanceExtractor(state, ConversionOptions(**options))
    return extractor, extractor.run()


def test_loop_detected_at_repeated_key_on():
    extractor, timeline = extract(LOOPING_DRIVER)
    second_kon = LOOPING_DRIVER_KON_CYCLE + LOOPING_DRIVER_PASS_CYCLES

    print(f"Loop {timeline.loop_start_cycle} -> {timeline.loop_end_cycle}, "
          f"{extractor.steps} instructions")
    assert timeline.reason is TerminationReason.LOOP_DETECTED
    assert not timeline.truncated
    assert timeline.loop_start_cycle == LOOPING_DRIVER_KON_CYCLE
    assert timeline.loop_end_cycle == second_kon
    assert timeline.end_cycle == second_kon
    # The repeated key-on is not performed
    assert timeline.count(EventKind.NOTE_ON) == 1
    assert extractor.diagnostics == []


def test_repeat_n_times_keeps_playing():
    _, timeline = extract(LOOPING_DRIVER, loop_mode='repeat-n-times', loop_count=3)
    assert timeline.reason is TerminationReason.LOOP_DETECTED
    assert timeline.count(EventKind.NOTE_ON) == 3
    assert timeline.loop_start_cycle == LOOPING_DRIVER_KON_CYCLE
    assert timeline.loop_end_cycle == LOOPING_DRIVER_KON_CYCLE + LOOPING_DRIVER_PASS_CYCLES
    assert timeline.end_cycle == LOOPING_DRIVER_KON_CYCLE + 3 * LOOPING_DRIVER_PASS_CYCLES


def test_notes_are_paired():
    _, timeline = extract(LOOPING_DRIVER, loop_mode='repeat-n-times', loop_count=4)
    open_note = None
    for event in timeline.for_voice(0):
        if event.kind is EventKind.NOTE_ON:
            assert open_note is None
            open_note = event
        elif event.kind is EventKind.NOTE_OFF:
            assert open_note is not None
            assert event.cycle >= open_note.cycle
            open_note = None
    assert open_note is None


def test_events_are_ordered():
    _, timeline = extract(LOOPING_DRIVER, loop_mode='repeat-n-times', loop_count=3)
    keys = [e.sort_key for e in timeline]
    assert keys == sorted(keys)
    assert all(e.cycle <= timeline.end_cycle for e in timeline)


def test_duration_limit():
    extractor, timeline = extract(IDLE_DRIVER, max_duration=0.01)
    assert timeline.reason is TerminationReason.DURATION_LIMIT
    assert timeline.truncated
    assert timeline.end_cycle == 10240
    assert len(timeline) == 0
    assert len(extractor.diagnostics) == 1
    assert isinstance(extractor.diagnostics[0], EmulationTimeout)


def test_duration_limit_closes_open_notes():
    # Key on, then idle forever
    program = LOOPING_DRIVER[:6] + IDLE_DRIVER
    _, timeline = extract(program, max_duration=0.01)
    events = timeline.for_voice(0)
    assert [e.kind for e in events] == [EventKind.NOTE_ON, EventKind.NOTE_OFF]
    assert events[1].cycle == timeline.end_cycle
    assert events[1].payload['reason'] == 'end'


def test_key_off_before_loop():
    # Key on, key off, spin, jump back
    program = LOOPING_DRIVER[:6] + key_off(0x01) + [0xCD, 0x10, 0x1D, 0xD0, 0xFD] + jmp(PROGRAM_ADDR)
    _, timeline = extract(program)
    assert timeline.reason is TerminationReason.LOOP_DETECTED
    offs = [e for e in timeline if e.kind is EventKind.NOTE_OFF]
    assert offs[0].payload['reason'] == 'key_off'
    assert offs[0].cycle == LOOPING_DRIVER_KON_CYCLE + 10


def test_conversion_is_deterministic():
    _, first = extract(LOOPING_DRIVER, loop_mode='repeat-n-times', loop_count=2)
    _, second = extract(LOOPING_DRIVER, loop_mode='repeat-n-times', loop_count=2)
    assert first == second


def test_unsupported_opcode_propagates():
    state = make_state([0x00, 0xEF])
    extractor = PerformanceExtractor(state, ConversionOptions())
    with pytest.raises(UnsupportedOpcode):
        extractor.run()


def test_digest_ignores_volatile_state():
    state = make_state()
    before = machine_state_digest(state)
    state.dsp_regs[0x08] = 0x7F  # ENVX
    state.dsp_regs[0x7C] = 0xFF  # ENDX
    state.ram[0xFD] = 0x0F  # Timer counter
    state.ram[0x100] = 0x55  # Below the stack pointer
    assert machine_state_digest(state) == before
    state.ram[0x1000] = 1
    assert machine_state_digest(state) != before


if __name__ == '__main__':
    sys.exit(pytest.main([__file__, '-v']))

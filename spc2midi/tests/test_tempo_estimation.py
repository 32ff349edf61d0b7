#!/usr/bin/env python3
"""Tests for tempo estimation from note onsets."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import numpy as np
import pytest

from converter import convert_state
from events import Timeline, TerminationReason, make_note_on, make_note_off
from machine import CLOCK_HZ
from options import ConversionOptions
from snapshot_helpers import make_state, LOOPING_DRIVER
from tempo_estimation import CYCLES_PER_FRAME, estimate_bpm, onset_signal


def pulse_timeline(period_seconds, seconds=12.0, start_cycle=0):
    """One note every `period_seconds`, alternating between two voices."""
    events = []
    count = int(seconds / period_seconds)
    for i in range(count):
        cycle = start_cycle + int(i * period_seconds * CLOCK_HZ)
        voice = i % 2
        events.append(make_note_on(cycle, voice, 60, 100, 0, 0x1000, sequence=2 * i))
        events.append(make_note_off(cycle + 1000, voice, 60, 0, 'key_off', sequence=2 * i + 1))
    events.sort(key=lambda e: e.sort_key)
    end = start_cycle + int(seconds * CLOCK_HZ)
    return Timeline(tuple(events), end, TerminationReason.DURATION_LIMIT)


def test_onset_signal():
    timeline = pulse_timeline(0.5, seconds=2.0, start_cycle=5000)
    onsets = onset_signal(timeline, 5000)
    assert len(onsets) == 2 * CLOCK_HZ // CYCLES_PER_FRAME + 1
    assert list(np.nonzero(onsets)[0]) == [0, 500, 1000, 1500]
    assert onsets[500] == pytest.approx(100.0)


def test_simultaneous_onsets_add_up():
    events = (make_note_on(0, 0, 60, 30, 0, 0x1000),
              make_note_on(0, 1, 64, 40, 0, 0x1000, sequence=1))
    onsets = onset_signal(Timeline(events, 2048, TerminationReason.DURATION_LIMIT))
    assert onsets[0] == pytest.approx(50.0)


@pytest.mark.parametrize("period, bpm", [
    (0.5, 120.0),
    (0.75, 80.0),
    (1.0, 60.0),
])
def test_regular_pulse(period, bpm):
    estimated = estimate_bpm(onset_signal(pulse_timeline(period)))
    print(f"Period {period}s estimated at {estimated} bpm")
    assert estimated == bpm


def test_too_short_or_silent():
    assert estimate_bpm(onset_signal(pulse_timeline(0.5, seconds=1.0))) is None
    assert estimate_bpm(np.zeros(10000)) is None
    assert estimate_bpm(np.array([])) is None


def test_auto_bpm_keeps_tempo_for_short_performance():
    result = convert_state(make_state(LOOPING_DRIVER), ConversionOptions(bpm=90, auto_bpm=True))
    assert result.bpm == 90


if __name__ == '__main__':
    sys.exit(pytest.main([__file__, '-v']))

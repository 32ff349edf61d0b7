#!/usr/bin/env python3
"""Tests for cycle to tick mapping."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import pytest

from machine import CLOCK_HZ
from timebase import TimebaseMapper


def test_one_second_is_one_beat_by_default():
    mapper = TimebaseMapper(480)
    assert mapper.tick(CLOCK_HZ) == 480
    assert mapper.tick(CLOCK_HZ // 2) == 240


def test_bpm_scales_ticks():
    assert TimebaseMapper(480, bpm=120).tick(CLOCK_HZ) == 960


def test_start_cycle_offset():
    mapper = TimebaseMapper(480, start_cycle=5000)
    assert mapper.tick(5000) == 0
    assert mapper.tick(5000 + CLOCK_HZ) == 480
    assert mapper.seconds(5000 + CLOCK_HZ) == 1.0


def test_rounds_half_to_even():
    mapper = TimebaseMapper(1)
    assert mapper.tick(CLOCK_HZ // 2) == 0
    assert mapper.tick(CLOCK_HZ * 3 // 2) == 2


def test_deltas_do_not_drift():
    mapper = TimebaseMapper(480)
    cycles = [i * 1000 for i in range(2000)]
    deltas = mapper.deltas(cycles)
    assert all(d >= 0 for d in deltas)
    assert sum(deltas) == mapper.tick(cycles[-1])


def test_equal_ticks_give_zero_deltas():
    assert TimebaseMapper(480).deltas([100, 100, 101]) == [0, 0, 0]


def test_decreasing_cycles_rejected():
    with pytest.raises(ValueError):
        TimebaseMapper(480).deltas([CLOCK_HZ, 0])


@pytest.mark.parametrize("resolution,bpm", [(0, 60), (480, 0)])
def test_invalid_parameters(resolution, bpm):
    with pytest.raises(ValueError):
        TimebaseMapper(resolution, bpm)


if __name__ == '__main__':
    sys.exit(pytest.main([__file__, '-v']))

"""
Cycle to tick conversion.

Ticks are always computed from absolute cycles and then differenced, so
rounding never accumulates across a track.
"""

from typing import Iterable, List

from machine import CLOCK_HZ


class TimebaseMapper:
    """Maps absolute SPC700 cycles to sequence ticks.

    tick = round(cycle / CLOCK_HZ * resolution * bpm / 60)

    With the default tempo of 60 bpm one beat is one second, so this is
    round(cycle / CLOCK_HZ * resolution).
    """

    def __init__(self, resolution: int = 480, bpm: float = 60.0, start_cycle: int = 0):
        if resolution <= 0:
            raise ValueError(f"resolution must be positive, got {resolution}")
        if bpm <= 0:
            raise ValueError(f"bpm must be positive, got {bpm}")
        self.resolution = resolution
        self.bpm = bpm
        self.start_cycle = start_cycle
        self.ticks_per_second = resolution * bpm / 60.0

    def tick(self, cycle: int) -> int:
        elapsed = max(0, cycle - self.start_cycle)
        return round(elapsed / CLOCK_HZ * self.ticks_per_second)

    def deltas(self, cycles: Iterable[int]) -> List[int]:
        """Per-message delta ticks for a non-decreasing cycle sequence."""
        result = []
        previous = 0
        for cycle in cycles:
            tick = self.tick(cycle)
            delta = tick - previous
            if delta < 0:
                raise ValueError(f"cycle {cycle} is earlier than the previous event")
            result.append(delta)
            previous = tick
        return result

    def seconds(self, cycle: int) -> float:
        return max(0, cycle - self.start_cycle) / CLOCK_HZ

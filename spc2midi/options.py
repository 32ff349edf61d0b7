"""
Conversion options.
"""

from dataclasses import dataclass, asdict, fields
from typing import Any, Dict, Optional

from machine import CLOCK_HZ


LOOP_MODES = ('truncate-at-loop', 'play-once', 'repeat-n-times')
VELOCITY_CURVES = ('linear', 'logarithmic')
TRACK_LAYOUTS = ('per-voice', 'merged')


@dataclass
class ConversionOptions:
    """Options recognized by the conversion core."""
    resolution: int = 480  # Ticks per beat
    max_duration: float = 120.0  # Seconds of emulated time
    loop_mode: str = 'truncate-at-loop'
    loop_count: int = 2  # Loop body repetitions for repeat-n-times
    velocity_curve: str = 'linear'
    bpm: float = 60.0
    track_layout: str = 'per-voice'
    track_volume: bool = False  # Emit CC7/CC10 for volume register changes
    announce_programs: bool = False  # Program change ahead of notes whose program differs
    pitch_bend_range: int = 2  # Semitones at full bend
    auto_bpm: bool = False  # Replace bpm with one estimated from the note onsets
    title: Optional[str] = None

    def __post_init__(self):
        self.validate()

    def validate(self):
        if not 1 <= self.resolution <= 0x7FFF:
            raise ValueError(f"resolution must be 1-32767, got {self.resolution}")
        if self.max_duration <= 0:
            raise ValueError(f"max_duration must be positive, got {self.max_duration}")
        if self.loop_mode not in LOOP_MODES:
            raise ValueError(f"loop_mode must be one of {', '.join(LOOP_MODES)}, got {self.loop_mode!r}")
        if self.loop_count < 1:
            raise ValueError(f"loop_count must be at least 1, got {self.loop_count}")
        if self.velocity_curve not in VELOCITY_CURVES:
            raise ValueError(
                f"velocity_curve must be one of {', '.join(VELOCITY_CURVES)}, got {self.velocity_curve!r}")
        if self.bpm <= 0:
            raise ValueError(f"bpm must be positive, got {self.bpm}")
        if self.track_layout not in TRACK_LAYOUTS:
            raise ValueError(
                f"track_layout must be one of {', '.join(TRACK_LAYOUTS)}, got {self.track_layout!r}")
        if not 1 <= self.pitch_bend_range <= 24:
            raise ValueError(f"pitch_bend_range must be 1-24, got {self.pitch_bend_range}")

    @property
    def max_cycles(self) -> int:
        return int(self.max_duration * CLOCK_HZ)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'ConversionOptions':
        """Build options from a config mapping, rejecting unknown keys."""
        if not data:
            return cls()
        known = {f.name for f in fields(cls)}
        # Accept hyphenated keys as well (max-duration)
        normalized = {}
        for key, value in data.items():
            name = str(key).replace('-', '_')
            if name not in known:
                raise ValueError(f"unknown option '{key}'")
            normalized[name] = value
        return cls(**normalized)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

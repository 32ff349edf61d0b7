#!/usr/bin/env python3
"""
Performance events extracted from S-DSP register activity.

Events are stamped with the absolute SPC700 cycle at which the register write
(or envelope step) happened. Voices produce events independently; the
performance extractor merges them into one Timeline.
"""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Iterator, Mapping, Optional, Tuple


class EventKind(Enum):
    """Types of performance events."""
    NOTE_OFF = "note_off"
    NOTE_ON = "note_on"
    PITCH_CHANGE = "pitch_change"
    PROGRAM_CHANGE = "program_change"
    CONTROL_CHANGE = "control_change"


# Ordering among events that share a cycle. A voice retriggered on the same
# cycle it ends must release the old note before the new one starts.
KIND_ORDER = {
    EventKind.NOTE_OFF: 0,
    EventKind.NOTE_ON: 1,
    EventKind.PITCH_CHANGE: 2,
    EventKind.PROGRAM_CHANGE: 3,
    EventKind.CONTROL_CHANGE: 4,
}

# Controller numbers used for chip flags
CC_MODULATION = 1  # Pitch modulation (PMON)
CC_VOLUME = 7
CC_PAN = 10
CC_EXPRESSION = 11  # Envelope level
CC_NOISE = 80  # General purpose 5: noise enable (NON)
CC_NOISE_CLOCK = 81  # General purpose 6: FLG noise clock
CC_MUTE = 82  # General purpose 7: FLG mute
CC_ECHO_WRITE = 83  # General purpose 8: FLG echo write disable
CC_ECHO = 91  # Effects depth: echo enable (EON)


@dataclass(frozen=True)
class Event:
    """A single performance event.

    payload is a read-only mapping; its keys depend on kind:
      NOTE_ON:        note, velocity, srcn, pitch
      NOTE_OFF:       note, srcn, reason
      PITCH_CHANGE:   pitch, bend
      PROGRAM_CHANGE: srcn
      CONTROL_CHANGE: controller, value
    """
    cycle: int
    voice: int
    kind: EventKind
    payload: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}), hash=False)
    sequence: int = 0  # Emission order, final tie-breaker

    def __post_init__(self):
        if not isinstance(self.payload, MappingProxyType):
            object.__setattr__(self, 'payload', MappingProxyType(dict(self.payload)))

    @property
    def sort_key(self) -> Tuple[int, int, int, int]:
        return (self.cycle, KIND_ORDER[self.kind], self.voice, self.sequence)

    def describe(self) -> str:
        """One-line text form used by dumps."""
        args = ' '.join(f"{k}={v}" for k, v in self.payload.items())
        return f"{self.kind.value:<15} {args}".rstrip()


class TerminationReason(Enum):
    """Why emulation stopped. Both are normal outcomes."""
    LOOP_DETECTED = "loop_detected"
    DURATION_LIMIT = "duration_limit"


@dataclass(frozen=True)
class Timeline:
    """Globally ordered performance, finalized when emulation halts."""
    events: Tuple[Event, ...]
    end_cycle: int
    reason: TerminationReason
    loop_start_cycle: Optional[int] = None
    loop_end_cycle: Optional[int] = None

    def __len__(self) -> int:
        return len(self.events)

    def __iter__(self) -> Iterator[Event]:
        return iter(self.events)

    @property
    def truncated(self) -> bool:
        """True when the duration bound cut the performance short."""
        return self.reason is TerminationReason.DURATION_LIMIT

    @property
    def has_loop(self) -> bool:
        return self.loop_start_cycle is not None and self.loop_end_cycle is not None

    def for_voice(self, voice: int) -> Tuple[Event, ...]:
        return tuple(e for e in self.events if e.voice == voice)

    def voices_with_notes(self) -> Tuple[int, ...]:
        """Voice indices that produced at least one NOTE_ON, ascending."""
        return tuple(sorted({e.voice for e in self.events if e.kind is EventKind.NOTE_ON}))

    def count(self, kind: EventKind) -> int:
        return sum(1 for e in self.events if e.kind is kind)


# Helper functions for creating common event types

def make_note_on(cycle: int, voice: int, note: int, velocity: int, srcn: int,
                 pitch: int, bend: int = 8192, sequence: int = 0) -> Event:
    """Create a note-on event.

    Args:
        cycle: Absolute SPC700 cycle of the key-on write
        voice: Voice index 0-7
        note: MIDI note number derived from pitch (may be out of 0-127)
        velocity: MIDI velocity derived from the voice volume
        srcn: Sample source number the voice is playing
        pitch: Raw 14-bit pitch register value
        bend: 14-bit bend that tunes `note` to the exact pitch (8192 = centered)
    """
    return Event(cycle, voice, EventKind.NOTE_ON,
                 MappingProxyType({'note': note, 'velocity': velocity, 'srcn': srcn,
                                   'pitch': pitch, 'bend': bend}),
                 sequence)


def make_note_off(cycle: int, voice: int, note: int, srcn: int, reason: str,
                  sequence: int = 0) -> Event:
    """Create a note-off event. reason is one of key_off, retrigger, release,
    decay, sample_end, reset or end."""
    return Event(cycle, voice, EventKind.NOTE_OFF,
                 MappingProxyType({'note': note, 'srcn': srcn, 'reason': reason}),
                 sequence)


def make_pitch_change(cycle: int, voice: int, pitch: int, bend: int, sequence: int = 0) -> Event:
    """Create a pitch change event (bend is 14-bit, 8192 = centered)."""
    return Event(cycle, voice, EventKind.PITCH_CHANGE,
                 MappingProxyType({'pitch': pitch, 'bend': bend}), sequence)


def make_program_change(cycle: int, voice: int, srcn: int, sequence: int = 0) -> Event:
    """Create a program (sample source) change event."""
    return Event(cycle, voice, EventKind.PROGRAM_CHANGE,
                 MappingProxyType({'srcn': srcn}), sequence)


def make_control_change(cycle: int, voice: int, controller: int, value: int,
                        sequence: int = 0) -> Event:
    """Create a control change event."""
    return Event(cycle, voice, EventKind.CONTROL_CHANGE,
                 MappingProxyType({'controller': controller, 'value': value}), sequence)

"""
Per-source instrument mapping.

Every sample source number (SRCN) the driver keys on can be mapped to a
General MIDI program, a center note and a few output tweaks.
"""

from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional, Union


# Global constants
NOTE_NAMES = ["C ", "C#", "D ", "D#", "E ", "F ", "F#",
              "G ", "G#", "A ", "A#", "B "]

# General MIDI instrument names for reference
GM_INSTRUMENTS = [
    "Acoustic Grand Piano", "Bright Acoustic Piano", "Electric Grand Piano", "Honky-tonk Piano",
    "Electric Piano 1", "Electric Piano 2", "Harpsichord", "Clavi",
    "Celesta", "Glockenspiel", "Music Box", "Vibraphone",
    "Marimba", "Xylophone", "Tubular Bells", "Dulcimer",
    "Drawbar Organ", "Percussive Organ", "Rock Organ", "Church Organ",
    "Reed Organ", "Accordion", "Harmonica", "Tango Accordion",
    "Acoustic Guitar (nylon)", "Acoustic Guitar (steel)", "Electric Guitar (jazz)", "Electric Guitar (clean)",
    "Electric Guitar (muted)", "Overdriven Guitar", "Distortion Guitar", "Guitar harmonics",
    "Acoustic Bass", "Electric Bass (finger)", "Electric Bass (pick)", "Fretless Bass",
    "Slap Bass 1", "Slap Bass 2", "Synth Bass 1", "Synth Bass 2",
    "Violin", "Viola", "Cello", "Contrabass",
    "Tremolo Strings", "Pizzicato Strings", "Orchestral Harp", "Timpani",
    "String Ensemble 1", "String Ensemble 2", "SynthStrings 1", "SynthStrings 2",
    "Choir Aahs", "Voice Oohs", "Synth Voice", "Orchestra Hit",
    "Trumpet", "Trombone", "Tuba", "Muted Trumpet",
    "French Horn", "Brass Section", "SynthBrass 1", "SynthBrass 2",
    "Soprano Sax", "Alto Sax", "Tenor Sax", "Baritone Sax",
    "Oboe", "English Horn", "Bassoon", "Clarinet",
    "Piccolo", "Flute", "Recorder", "Pan Flute",
    "Blown Bottle", "Shakuhachi", "Whistle", "Ocarina",
    "Lead 1 (square)", "Lead 2 (sawtooth)", "Lead 3 (calliope)", "Lead 4 (chiff)",
    "Lead 5 (charang)", "Lead 6 (voice)", "Lead 7 (fifths)", "Lead 8 (bass + lead)",
    "Pad 1 (new age)", "Pad 2 (warm)", "Pad 3 (polysynth)", "Pad 4 (choir)",
    "Pad 5 (bowed)", "Pad 6 (metallic)", "Pad 7 (halo)", "Pad 8 (sweep)",
    "FX 1 (rain)", "FX 2 (soundtrack)", "FX 3 (crystal)", "FX 4 (atmosphere)",
    "FX 5 (brightness)", "FX 6 (goblins)", "FX 7 (echoes)", "FX 8 (sci-fi)",
    "Sitar", "Banjo", "Shamisen", "Koto",
    "Kalimba", "Bag pipe", "Fiddle", "Shanai",
    "Tinkle Bell", "Agogo", "Steel Drums", "Woodblock",
    "Taiko Drum", "Melodic Tom", "Synth Drum", "Reverse Cymbal",
    "Guitar Fret Noise", "Breath Noise", "Seashore", "Bird Tweet",
    "Telephone Ring", "Helicopter", "Applause", "Gunshot"
]

# Pitch register value that plays a sample at its recorded rate
CENTER_PITCH = 0x1000
DEFAULT_CENTER_NOTE = 60.0


def note_name(note: int) -> str:
    """MIDI note number as name + octave, e.g. 60 -> 'C 4'."""
    return f"{NOTE_NAMES[note % 12]}{note // 12 - 1}"


@dataclass
class SourceParameter:
    """Output parameters for one sample source."""
    program: int = 0  # General MIDI program (0-127, or negative for percussion key)
    center_note: float = DEFAULT_CENTER_NOTE  # MIDI note played at pitch $1000
    mute: bool = False  # Drop this source's notes from the output
    velocity_scale: float = 1.0
    velocity: Optional[int] = None  # Fixed note-on velocity instead of the volume-derived one
    pitch_bend: bool = True  # Emit pitch bends for pitch register changes
    pitch_bend_range: Optional[int] = None  # Semitones at full bend; None uses the global option
    envelope_as_expression: bool = False  # Follow the envelope level with CC11
    echo_as_effect: bool = True  # Report the voice's echo enable bit as CC91
    auto_volume: Optional[bool] = None  # Follow VOL(L)/VOL(R) with CC7; None uses track_volume
    volume: Optional[int] = None  # Fixed CC7 at note-on when auto_volume is off
    auto_pan: Optional[bool] = None  # Follow the stereo balance with CC10; None uses track_volume
    pan: Optional[int] = None  # Fixed CC10 at note-on when auto_pan is off
    name: Optional[str] = None  # Human-readable instrument name

    def __post_init__(self):
        if self.pitch_bend_range is not None and not 1 <= self.pitch_bend_range <= 24:
            raise ValueError(f"pitch_bend_range must be 1-24, got {self.pitch_bend_range}")
        for field_name in ('velocity', 'volume', 'pan'):
            value = getattr(self, field_name)
            if value is not None and not 0 <= value <= 127:
                raise ValueError(f"{field_name} must be 0-127, got {value}")

    def is_percussion(self) -> bool:
        """Check if this source maps to a percussion key."""
        return self.program < 0

    def percussion_key(self) -> int:
        return -self.program

    def bend_range(self, default: int) -> int:
        return default if self.pitch_bend_range is None else self.pitch_bend_range

    def follows_volume(self, track_volume: bool) -> bool:
        return track_volume if self.auto_volume is None else self.auto_volume

    def follows_pan(self, track_volume: bool) -> bool:
        return track_volume if self.auto_pan is None else self.auto_pan


def parse_source_id(source_id: Union[int, str]) -> int:
    """Source ids in config files may be ints or strings like '0x1A'."""
    if isinstance(source_id, int):
        value = source_id
    else:
        value = int(str(source_id), 0)
    if not 0 <= value <= 0xFF:
        raise ValueError(f"source id {source_id!r} out of range 0-255")
    return value


def _optional_int(value: Any) -> Optional[int]:
    return None if value is None else int(value)


def _optional_bool(value: Any) -> Optional[bool]:
    return None if value is None else bool(value)


class SourceMapper:
    """Maps sample source numbers to SourceParameter entries."""

    def __init__(self, source_map: Optional[Dict] = None):
        """Initialize with optional source mapping configuration."""
        self.source_map: Dict[int, SourceParameter] = {}
        self.default_parameter = SourceParameter()  # Unmapped sources

        if source_map:
            for source_id, info in source_map.items():
                srcn = parse_source_id(source_id)
                if isinstance(info, dict):
                    unknown = set(info) - set(SourceParameter.__dataclass_fields__)
                    if unknown:
                        raise ValueError(
                            f"source {source_id}: unknown parameter(s) {', '.join(sorted(unknown))}")
                    self.source_map[srcn] = SourceParameter(
                        program=int(info.get('program', 0)),
                        center_note=float(info.get('center_note', DEFAULT_CENTER_NOTE)),
                        mute=bool(info.get('mute', False)),
                        velocity_scale=float(info.get('velocity_scale', 1.0)),
                        velocity=_optional_int(info.get('velocity')),
                        pitch_bend=bool(info.get('pitch_bend', True)),
                        pitch_bend_range=_optional_int(info.get('pitch_bend_range')),
                        envelope_as_expression=bool(info.get('envelope_as_expression', False)),
                        echo_as_effect=bool(info.get('echo_as_effect', True)),
                        auto_volume=_optional_bool(info.get('auto_volume')),
                        volume=_optional_int(info.get('volume')),
                        auto_pan=_optional_bool(info.get('auto_pan')),
                        pan=_optional_int(info.get('pan')),
                        name=info.get('name')
                    )
                elif isinstance(info, int):
                    # Simple mapping: just GM program number
                    self.source_map[srcn] = SourceParameter(program=info)
                else:
                    raise ValueError(f"source {source_id}: expected mapping or program number")

    def get_parameter(self, srcn: int) -> SourceParameter:
        """Get parameters for a source, with default fallback."""
        if srcn in self.source_map:
            return self.source_map[srcn]
        return self.default_parameter

    def get_instrument_name(self, srcn: int) -> str:
        """Get human-readable instrument name for a source."""
        param = self.get_parameter(srcn)
        if param.name:
            return param.name
        if param.is_percussion():
            return f"Percussion (GM key {param.percussion_key()})"
        if 0 <= param.program < len(GM_INSTRUMENTS):
            return GM_INSTRUMENTS[param.program]
        return f"Unknown Instrument ({param.program})"

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        """Serializable form keyed by hex source id."""
        return {f"0x{srcn:02X}": asdict(param) for srcn, param in sorted(self.source_map.items())}

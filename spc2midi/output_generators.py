"""
Output generation for extracted SPC performances.

Generates Standard MIDI Files, text dumps of the event timeline and a JSON
export of the conversion settings.
"""

import io
import json
from typing import Any, Dict, List, Optional, Tuple

import mido

from errors import EncodingOverflow
from events import Event, EventKind, Timeline
from options import ConversionOptions
from source_map import SourceMapper, note_name
from timebase import TimebaseMapper


TOOL_NAME = "spc2midi"
TOOL_VERSION = "0.3.0"

PERCUSSION_CHANNEL = 9
MAX_DELTA = 0x0FFFFFFF  # Largest value a 4-byte variable-length quantity holds
BEND_CENTER = 8192
GM_BEND_RANGE = 2

LOOP_START_MARKER = "loopStart"
LOOP_END_MARKER = "loopEnd"


class MidiGenerator:
    """Builds a Standard MIDI File from a Timeline.

    Values that do not fit their MIDI field are clamped; each clamp is
    recorded in self.diagnostics as an EncodingOverflow.
    """

    def __init__(self, options: ConversionOptions, source_mapper: Optional[SourceMapper] = None):
        self.options = options
        self.source_mapper = source_mapper or SourceMapper()
        self.diagnostics: List[EncodingOverflow] = []

    def generate(self, timeline: Timeline, title: Optional[str] = None,
                 start_cycle: int = 0) -> bytes:
        """Encode the timeline and return the SMF bytes."""
        midi = self.build(timeline, title, start_cycle)
        buffer = io.BytesIO()
        midi.save(file=buffer)
        return buffer.getvalue()

    def build(self, timeline: Timeline, title: Optional[str] = None,
              start_cycle: int = 0) -> mido.MidiFile:
        self.diagnostics = []
        mapper = TimebaseMapper(self.options.resolution, self.options.bpm, start_cycle)
        conductor = self._conductor_messages(timeline, title or self.options.title or TOOL_NAME,
                                             start_cycle)

        if self.options.track_layout == 'merged':
            midi = mido.MidiFile(type=0, ticks_per_beat=self.options.resolution)
            channels = _ChannelState.for_voices()
            timed = list(conductor[:-1])
            timed.extend(self._prelude_messages(timeline, None, channels, start_cycle))
            for event in timeline:
                for message in self._event_messages(event, channels[event.voice]):
                    timed.append((event.cycle, message))
            # Loop markers interleave with the performance; sort is stable
            timed.sort(key=lambda item: item[0])
            timed.append(conductor[-1])
            midi.tracks.append(self._make_track(timed, mapper))
            return midi

        midi = mido.MidiFile(type=1, ticks_per_beat=self.options.resolution)
        midi.tracks.append(self._make_track(conductor, mapper))
        for voice in timeline.voices_with_notes():
            channels = _ChannelState.for_voices()
            timed = list(self._prelude_messages(timeline, voice, channels, start_cycle))
            last_cycle = start_cycle
            for event in timeline.for_voice(voice):
                for message in self._event_messages(event, channels[voice]):
                    timed.append((event.cycle, message))
                last_cycle = event.cycle
            timed.append((last_cycle, mido.MetaMessage('end_of_track')))
            midi.tracks.append(self._make_track(timed, mapper))
        return midi

    # ------------------------------------------------------------------
    # Track assembly
    # ------------------------------------------------------------------

    def _conductor_messages(self, timeline: Timeline, title: str,
                            start_cycle: int) -> List[Tuple[int, Any]]:
        tempo = int(round(mido.bpm2tempo(self.options.bpm)))
        # Meta text is written as latin-1
        title = title.encode('latin-1', 'replace').decode('latin-1')
        messages = [
            (start_cycle, mido.MetaMessage('track_name', name=title)),
            (start_cycle, mido.MetaMessage('set_tempo', tempo=tempo)),
        ]
        if self.options.loop_mode == 'truncate-at-loop' and timeline.has_loop:
            messages.append((timeline.loop_start_cycle, mido.MetaMessage('marker', text=LOOP_START_MARKER)))
            messages.append((timeline.loop_end_cycle, mido.MetaMessage('marker', text=LOOP_END_MARKER)))
        messages.append((max(timeline.end_cycle, start_cycle), mido.MetaMessage('end_of_track')))
        return messages

    def _prelude_messages(self, timeline: Timeline, voice: Optional[int],
                          channels: Dict[int, '_ChannelState'], start_cycle: int):
        """Messages at the start of a voice track (or the merged track)."""
        voices = timeline.voices_with_notes() if voice is None else (voice,)
        messages = []
        for v in voices:
            state = channels[v]
            events = timeline.for_voice(v)
            state.bends = any(_needs_bend(e) for e in events)
            if self.options.pitch_bend_range != GM_BEND_RANGE and state.bends:
                state.bend_range = self.options.pitch_bend_range
                for message in _bend_range_messages(state.channel, state.bend_range):
                    messages.append((start_cycle, message))
            if self.options.announce_programs:
                first = next((e for e in events if e.kind is EventKind.NOTE_ON), None)
                if first is not None:
                    param = self.source_mapper.get_parameter(first.payload['srcn'])
                    if not param.is_percussion():
                        program = self._clamp('program', param.program, 0, 127, first.cycle)
                        state.program = program
                        messages.append((start_cycle, mido.Message(
                            'program_change', channel=state.channel, program=program)))
        return messages

    def _make_track(self, timed: List[Tuple[int, Any]], mapper: TimebaseMapper) -> mido.MidiTrack:
        track = mido.MidiTrack()
        deltas = mapper.deltas(cycle for cycle, _ in timed)
        for (cycle, message), delta in zip(timed, deltas):
            if delta > MAX_DELTA:
                self.diagnostics.append(EncodingOverflow('delta', delta, MAX_DELTA, cycle))
                delta = MAX_DELTA
            track.append(message.copy(time=delta))
        return track

    # ------------------------------------------------------------------
    # Event translation
    # ------------------------------------------------------------------

    def _clamp(self, field_name: str, value: int, low: int, high: int, cycle: int) -> int:
        if value < low or value > high:
            clamped = low if value < low else high
            self.diagnostics.append(EncodingOverflow(field_name, value, clamped, cycle))
            return clamped
        return value

    def _event_messages(self, event: Event, state: '_ChannelState') -> List[mido.Message]:
        payload = event.payload
        kind = event.kind

        if kind is EventKind.NOTE_ON:
            param = self.source_mapper.get_parameter(payload['srcn'])
            if param.mute:
                state.sounding = None
                state.muted = True
                return []
            state.muted = False
            velocity = self._clamp('velocity', payload['velocity'], 1, 127, event.cycle)
            messages = []
            if param.is_percussion():
                channel = PERCUSSION_CHANNEL
                key = self._clamp('note', param.percussion_key(), 0, 127, event.cycle)
            else:
                channel = state.channel
                key = self._clamp('note', payload['note'], 0, 127, event.cycle)
                program = self._clamp('program', param.program, 0, 127, event.cycle)
                if program != state.program:
                    state.program = program
                    messages.append(mido.Message('program_change', channel=channel, program=program))
                if param.pitch_bend:
                    bend_range = param.bend_range(self.options.pitch_bend_range)
                    if state.bends and bend_range != state.bend_range:
                        state.bend_range = bend_range
                        messages.extend(_bend_range_messages(channel, bend_range))
                    bend = self._clamp('bend', payload.get('bend', BEND_CENTER), 0, 16383, event.cycle)
                else:
                    bend = BEND_CENTER
                # The channel may still hold a bend from an earlier note or a muted source
                if bend != state.bend:
                    state.bend = bend
                    messages.append(mido.Message('pitchwheel', channel=channel,
                                                 pitch=bend - BEND_CENTER))
            state.sounding = (channel, key)
            state.bend_enabled = param.pitch_bend and not param.is_percussion()
            messages.append(mido.Message('note_on', channel=channel, note=key, velocity=velocity))
            return messages

        if kind is EventKind.NOTE_OFF:
            if state.sounding is None:
                return []
            channel, key = state.sounding
            state.sounding = None
            return [mido.Message('note_off', channel=channel, note=key, velocity=0)]

        if kind is EventKind.PITCH_CHANGE:
            if state.muted or not state.bend_enabled:
                return []
            bend = self._clamp('bend', payload['bend'], 0, 16383, event.cycle)
            if bend == state.bend:
                return []
            state.bend = bend
            return [mido.Message('pitchwheel', channel=state.channel, pitch=bend - BEND_CENTER)]

        if kind is EventKind.PROGRAM_CHANGE:
            param = self.source_mapper.get_parameter(payload['srcn'])
            if param.is_percussion() or param.mute:
                return []
            program = self._clamp('program', param.program, 0, 127, event.cycle)
            if program == state.program:
                return []
            state.program = program
            return [mido.Message('program_change', channel=state.channel, program=program)]

        if kind is EventKind.CONTROL_CHANGE:
            control = self._clamp('controller', payload['controller'], 0, 127, event.cycle)
            value = self._clamp('control value', payload['value'], 0, 127, event.cycle)
            return [mido.Message('control_change', channel=state.channel, control=control, value=value)]

        raise ValueError(f"unknown event kind {kind}")


def _needs_bend(event: Event) -> bool:
    if event.kind is EventKind.PITCH_CHANGE:
        return True
    return event.kind is EventKind.NOTE_ON and event.payload.get('bend', BEND_CENTER) != BEND_CENTER


def _bend_range_messages(channel: int, semitones: int) -> List[mido.Message]:
    """RPN 0 (pitch bend sensitivity) setup."""
    return [mido.Message('control_change', channel=channel, control=control, value=value)
            for control, value in ((101, 0), (100, 0), (6, semitones), (38, 0))]


class _ChannelState:
    """What has been written to one voice's channel so far."""

    def __init__(self, channel: int):
        self.channel = channel
        self.program = 0  # GM default after reset
        self.bend = BEND_CENTER
        self.bend_range = GM_BEND_RANGE
        self.bends = False  # Whether the voice ever needs a non-center bend
        self.sounding: Optional[Tuple[int, int]] = None  # (channel, key)
        self.bend_enabled = True
        self.muted = False

    @classmethod
    def for_voices(cls) -> Dict[int, '_ChannelState']:
        return {voice: cls(voice) for voice in range(8)}


def dump_timeline_to_text(timeline: Timeline, options: ConversionOptions,
                          source_mapper: Optional[SourceMapper] = None,
                          title: Optional[str] = None, start_cycle: int = 0) -> str:
    """Generate a text dump of the extracted timeline.

    Args:
        timeline: Extracted performance
        options: Options used for the conversion (for the tick column)
        source_mapper: Optional SourceMapper for instrument names
        title: Song title for the header line
        start_cycle: Cycle counter value at the start of emulation

    Returns:
        Formatted dump text
    """
    source_mapper = source_mapper or SourceMapper()
    mapper = TimebaseMapper(options.resolution, options.bpm, start_cycle)
    output = []
    output.append(f"Song: {title or options.title or '(untitled)'}")
    output.append(f"Termination: {timeline.reason.value} at cycle {timeline.end_cycle} "
                  f"({mapper.seconds(timeline.end_cycle):.3f} s)")
    if timeline.has_loop:
        output.append(f"Loop: cycle {timeline.loop_start_cycle} - {timeline.loop_end_cycle} "
                      f"(ticks {mapper.tick(timeline.loop_start_cycle)} - "
                      f"{mapper.tick(timeline.loop_end_cycle)})")
    output.append(f"Events: {len(timeline)}")
    output.append("")

    for voice in range(8):
        events = timeline.for_voice(voice)
        if not events:
            continue
        output.append(f"=== Voice {voice} ===")
        for event in events:
            parts = [f"{event.cycle:>10d} {mapper.tick(event.cycle):>8d}  {event.describe()}"]
            if event.kind is EventKind.NOTE_ON:
                note = event.payload['note']
                if 0 <= note <= 127:
                    parts.append(f" ({note_name(note)})")
                parts.append(f" [{source_mapper.get_instrument_name(event.payload['srcn'])}]")
            output.append(''.join(parts))
        output.append("")

    return '\n'.join(output)


def export_settings_json(options: ConversionOptions, source_mapper: SourceMapper,
                         timeline: Optional[Timeline] = None) -> str:
    """Export the effective conversion settings (and a timeline summary) as JSON."""
    data: Dict[str, Any] = {
        'tool_information': f"{TOOL_NAME} Ver.{TOOL_VERSION}",
        'options': options.to_dict(),
        'sources': source_mapper.to_dict(),
    }
    if timeline is not None:
        data['timeline'] = {
            'termination': timeline.reason.value,
            'end_cycle': timeline.end_cycle,
            'loop_start_cycle': timeline.loop_start_cycle,
            'loop_end_cycle': timeline.loop_end_cycle,
            'event_count': len(timeline),
            'voices': list(timeline.voices_with_notes()),
        }
    return json.dumps(data, indent=2)

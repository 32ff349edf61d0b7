"""
S-DSP register tracer.

Models the parts of the S-DSP that decide when a voice is audible (key-on and
key-off latches, the ADSR/GAIN envelope and BRR block walking) and turns the
driver's register writes into performance events. No audio is produced.

Envelope timing uses the hardware's global counter with the rate/offset
tables below, one step per output sample (every 32 CPU cycles).
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from events import (
    Event, make_note_on, make_note_off, make_pitch_change, make_program_change,
    make_control_change, CC_MODULATION, CC_VOLUME, CC_PAN, CC_EXPRESSION, CC_NOISE, CC_NOISE_CLOCK,
    CC_MUTE, CC_ECHO_WRITE, CC_ECHO,
)
from machine import ChipObserver, MachineState, CYCLES_PER_SAMPLE
from options import ConversionOptions
from source_map import SourceMapper, CENTER_PITCH


VOICE_COUNT = 8

# Per-voice register offsets (voice registers live at voice << 4)
V_VOLL = 0x00
V_VOLR = 0x01
V_PL = 0x02
V_PH = 0x03
V_SRCN = 0x04
V_ADSR1 = 0x05
V_ADSR2 = 0x06
V_GAIN = 0x07
V_ENVX = 0x08
V_OUTX = 0x09

# Global registers
R_MVOLL = 0x0C
R_MVOLR = 0x1C
R_EVOLL = 0x2C
R_EVOLR = 0x3C
R_KON = 0x4C
R_KOF = 0x5C
R_FLG = 0x6C
R_ENDX = 0x7C
R_EFB = 0x0D
R_PMON = 0x2D
R_NON = 0x3D
R_EON = 0x4D
R_DIR = 0x5D
R_ESA = 0x6D
R_EDL = 0x7D

FLG_RESET = 0x80
FLG_MUTE = 0x40
FLG_ECHO_WRITE_OFF = 0x20
FLG_NOISE_CLOCK = 0x1F

BRR_BLOCK_SIZE = 9
BRR_END = 0x01
BRR_LOOP = 0x02

ENVELOPE_MAX = 0x7FF

# Global envelope counter period; the counter counts down and wraps
COUNTER_RANGE = 2048 * 5 * 3

# Samples between envelope steps for each 5-bit rate (rate 0 never fires)
COUNTER_RATES = (
    COUNTER_RANGE + 1,
    2048, 1536,
    1280, 1024, 768,
    640, 512, 384,
    320, 256, 192,
    160, 128, 96,
    80, 64, 48,
    40, 32, 24,
    20, 16, 12,
    10, 8, 6,
    5, 4, 3,
    2,
    1,
)

COUNTER_OFFSETS = (
    1, 0, 1040,
    536, 0, 1040,
    536, 0, 1040,
    536, 0, 1040,
    536, 0, 1040,
    536, 0, 1040,
    536, 0, 1040,
    536, 0, 1040,
    536, 0, 1040,
    536, 0, 1040,
    0,
    0,
)


class EnvelopePhase(Enum):
    OFF = "off"
    ATTACK = "attack"
    DECAY = "decay"
    SUSTAIN = "sustain"
    RELEASE = "release"


@dataclass
class Envelope:
    phase: EnvelopePhase = EnvelopePhase.OFF
    level: int = 0  # 11-bit
    hidden: int = 0  # Last computed level, used by bent-line GAIN


def counter_fires(counter: int, rate: int) -> bool:
    """True if an envelope with this rate steps on this counter value."""
    return (counter + COUNTER_OFFSETS[rate]) % COUNTER_RATES[rate] == 0


def step_envelope(env: Envelope, adsr1: int, adsr2: int, gain: int, counter: int):
    """Advance one envelope by one sample."""
    if env.phase is EnvelopePhase.OFF:
        return
    level = env.level
    if env.phase is EnvelopePhase.RELEASE:
        level -= 0x8
        env.level = max(level, 0)
        return

    if adsr1 & 0x80:
        env_data = adsr2
        if env.phase in (EnvelopePhase.DECAY, EnvelopePhase.SUSTAIN):
            level -= 1
            level -= level >> 8
            rate = env_data & 0x1F
            if env.phase is EnvelopePhase.DECAY:
                rate = ((adsr1 >> 3) & 0x0E) + 0x10
        else:
            rate = (adsr1 & 0x0F) * 2 + 1
            level += 0x20 if rate < 31 else 0x400
    else:
        env_data = gain
        mode = gain >> 5
        if mode < 4:
            # Direct
            level = gain * 0x10
            rate = 31
        else:
            rate = gain & 0x1F
            if mode == 4:
                level -= 0x20
            elif mode == 5:
                level -= 1
                level -= level >> 8
            else:
                level += 0x20
                if mode == 7 and env.hidden >= 0x600:
                    level += 0x8 - 0x20

    if (level >> 8) == (env_data >> 5) and env.phase is EnvelopePhase.DECAY:
        env.phase = EnvelopePhase.SUSTAIN
    env.hidden = level
    if level < 0 or level > ENVELOPE_MAX:
        level = 0 if level < 0 else ENVELOPE_MAX
        if env.phase is EnvelopePhase.ATTACK:
            env.phase = EnvelopePhase.DECAY
    if counter_fires(counter, rate):
        env.level = level


@dataclass
class Voice:
    """One of the eight S-DSP voices."""
    index: int
    srcn: int = 0
    pitch: int = 0  # 14-bit
    vol_left: int = 0  # Signed
    vol_right: int = 0
    envelope: Envelope = field(default_factory=Envelope)

    # BRR playback
    brr_addr: int = 0
    brr_pos: int = 0  # Position inside the current block, 0x1000 per sample

    # Sounding note, None when no note is open
    note: Optional[int] = None
    note_srcn: int = 0
    bend: int = 8192

    last_volume_cc: Optional[int] = None
    last_pan_cc: Optional[int] = None
    last_expression_cc: Optional[int] = None
    last_echo_cc: int = 0

    @property
    def bit(self) -> int:
        return 1 << self.index

    @property
    def sounding(self) -> bool:
        return self.note is not None


def signed8(value: int) -> int:
    return value - 0x100 if value & 0x80 else value


def pitch_to_note(pitch: int, center_note: float) -> float:
    """Exact (fractional) MIDI note for a pitch register value."""
    return center_note + 12.0 * math.log2(max(pitch, 1) / CENTER_PITCH)


def volume_to_velocity(vol_left: int, vol_right: int, curve: str, scale: float = 1.0) -> int:
    """Map a voice's stereo volume to a note-on velocity.

    linear: the louder channel's magnitude, capped at 127.
    logarithmic: the same magnitude on a 48 dB scale, so half volume is
    about -6 dB rather than half velocity.
    """
    magnitude = min(127.0, float(max(abs(vol_left), abs(vol_right)))) * scale
    if curve == 'logarithmic':
        if magnitude <= 0:
            return 1
        velocity = 127.0 * (1.0 + 20.0 * math.log10(magnitude / 127.0) / 48.0)
    else:
        velocity = magnitude
    return max(1, min(127, int(round(velocity))))


def volume_to_pan(vol_left: int, vol_right: int) -> int:
    left = abs(vol_left)
    right = abs(vol_right)
    if left + right == 0:
        return 64
    return max(0, min(127, 64 + int(round((right - left) / (left + right) * 63))))


KeyOnListener = Callable[[MachineState, int, int], bool]


class DspTracer(ChipObserver):
    """S-DSP model that records performance events.

    Events are kept per voice in emission order; the performance extractor
    merges them. key_on_listener, if set, is called before every KON write
    with (state, value, cycle) and may veto the write by returning False.
    """

    def __init__(self, state: MachineState, options: Optional[ConversionOptions] = None,
                 source_mapper: Optional[SourceMapper] = None):
        self.options = options or ConversionOptions()
        self.source_mapper = source_mapper or SourceMapper()
        self.voices = [Voice(i) for i in range(VOICE_COUNT)]
        self.voice_events: List[List[Event]] = [[] for _ in range(VOICE_COUNT)]
        self.key_on_listener: Optional[KeyOnListener] = None

        self.counter = 0
        self.next_sample_cycle = state.cycles + CYCLES_PER_SAMPLE
        self.kon_latch = 0
        self.endx = state.dsp_regs[R_ENDX]
        self._sequence = 0

        regs = state.dsp_regs
        for voice in self.voices:
            base = voice.index << 4
            voice.srcn = regs[base | V_SRCN]
            voice.pitch = ((regs[base | V_PH] & 0x3F) << 8) | regs[base | V_PL]
            voice.vol_left = signed8(regs[base | V_VOLL])
            voice.vol_right = signed8(regs[base | V_VOLR])

    # ------------------------------------------------------------------
    # ChipObserver
    # ------------------------------------------------------------------

    def read_register(self, state: MachineState, address: int, cycle: int) -> int:
        self.run_until(state, cycle)
        address &= 0x7F
        low = address & 0x0F
        if low == V_ENVX:
            return self.voices[address >> 4].envelope.level >> 4
        if low == V_OUTX:
            return 0
        if address == R_ENDX:
            return self.endx
        return state.dsp_regs[address]

    def write_register(self, state: MachineState, address: int, value: int, cycle: int):
        self.run_until(state, cycle)
        address &= 0x7F
        value &= 0xFF
        if address == R_KON and self.key_on_listener is not None:
            if not self.key_on_listener(state, value, cycle):
                return
        regs = state.dsp_regs
        old = regs[address]
        regs[address] = value

        low = address & 0x0F
        if low <= V_OUTX:
            self._write_voice_register(state, self.voices[address >> 4], low, cycle)
        elif address == R_KON:
            self._key_on(state, value, cycle)
        elif address == R_KOF:
            self._key_off(value & ~old, cycle)
        elif address == R_FLG:
            self._write_flags(old, value, cycle)
        elif address == R_ENDX:
            self.endx = 0
            regs[R_ENDX] = 0
        elif address == R_NON:
            self._write_voice_bits(old, value, CC_NOISE, cycle)
        elif address == R_EON:
            for voice in self.voices:
                if (old ^ value) & voice.bit:
                    self._emit_echo(voice, value, cycle)
        elif address == R_PMON:
            # Voice 0 has no modulation source
            self._write_voice_bits(old & 0xFE, value & 0xFE, CC_MODULATION, cycle)

    def run_until(self, state: MachineState, cycle: int):
        while self.next_sample_cycle <= cycle:
            self._sample(state, self.next_sample_cycle)
            self.next_sample_cycle += CYCLES_PER_SAMPLE

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _emit(self, factory, cycle: int, voice: Voice, *args):
        event = factory(cycle, voice.index, *args, sequence=self._sequence)
        self._sequence += 1
        self.voice_events[voice.index].append(event)
        return event

    def _close_note(self, voice: Voice, cycle: int, reason: str):
        if voice.sounding:
            self._emit(make_note_off, cycle, voice, voice.note, voice.note_srcn, reason)
            voice.note = None

    def _bend_for(self, voice: Voice) -> int:
        param = self.source_mapper.get_parameter(voice.note_srcn)
        exact = pitch_to_note(voice.pitch, param.center_note)
        bend_range = param.bend_range(self.options.pitch_bend_range)
        return 8192 + int(round((exact - voice.note) / bend_range * 8192))

    def _playing_source(self, voice: Voice):
        return self.source_mapper.get_parameter(voice.note_srcn if voice.sounding else voice.srcn)

    def finish(self, state: MachineState, end_cycle: int):
        """Close every sounding note at the termination cycle."""
        for voice in self.voices:
            self._close_note(voice, end_cycle, 'end')

    # ------------------------------------------------------------------
    # Register writes
    # ------------------------------------------------------------------

    def _write_voice_register(self, state: MachineState, voice: Voice, reg: int, cycle: int):
        base = voice.index << 4
        regs = state.dsp_regs
        if reg in (V_VOLL, V_VOLR):
            voice.vol_left = signed8(regs[base | V_VOLL])
            voice.vol_right = signed8(regs[base | V_VOLR])
            if voice.sounding:
                self._emit_volume(voice, cycle)
        elif reg in (V_PL, V_PH):
            pitch = ((regs[base | V_PH] & 0x3F) << 8) | regs[base | V_PL]
            if pitch != voice.pitch:
                voice.pitch = pitch
                if voice.sounding:
                    voice.bend = self._bend_for(voice)
                    self._emit(make_pitch_change, cycle, voice, pitch, voice.bend)
        elif reg == V_SRCN:
            srcn = regs[base | V_SRCN]
            if srcn != voice.srcn:
                voice.srcn = srcn
                if voice.sounding:
                    self._emit(make_program_change, cycle, voice, srcn)

    def _emit_volume(self, voice: Voice, cycle: int):
        """CC7/CC10 for the sounding source: followed from the registers or fixed."""
        param = self.source_mapper.get_parameter(voice.note_srcn)
        if param.follows_volume(self.options.track_volume):
            volume = min(127, max(abs(voice.vol_left), abs(voice.vol_right)))
        else:
            volume = param.volume
        if param.follows_pan(self.options.track_volume):
            pan = volume_to_pan(voice.vol_left, voice.vol_right)
        else:
            pan = param.pan
        if volume is not None and volume != voice.last_volume_cc:
            voice.last_volume_cc = volume
            self._emit(make_control_change, cycle, voice, CC_VOLUME, volume)
        if pan is not None and pan != voice.last_pan_cc:
            voice.last_pan_cc = pan
            self._emit(make_control_change, cycle, voice, CC_PAN, pan)

    def _emit_echo(self, voice: Voice, eon: int, cycle: int):
        param = self._playing_source(voice)
        value = 127 if eon & voice.bit and param.echo_as_effect else 0
        if value != voice.last_echo_cc:
            voice.last_echo_cc = value
            self._emit(make_control_change, cycle, voice, CC_ECHO, value)

    def _emit_expression(self, voice: Voice, cycle: int):
        value = voice.envelope.level >> 4
        if value != voice.last_expression_cc:
            voice.last_expression_cc = value
            self._emit(make_control_change, cycle, voice, CC_EXPRESSION, value)

    def _key_on(self, state: MachineState, value: int, cycle: int):
        newly = value & ~self.kon_latch
        self.kon_latch |= value
        for voice in self.voices:
            if newly & voice.bit:
                self._start_voice(state, voice, cycle)

    def _start_voice(self, state: MachineState, voice: Voice, cycle: int):
        self._close_note(voice, cycle, 'retrigger')

        param = self.source_mapper.get_parameter(voice.srcn)
        note = int(round(pitch_to_note(voice.pitch, param.center_note)))
        if param.velocity is not None:
            velocity = max(1, min(127, int(param.velocity)))
        else:
            velocity = volume_to_velocity(voice.vol_left, voice.vol_right,
                                          self.options.velocity_curve, param.velocity_scale)
        voice.note = note
        voice.note_srcn = voice.srcn
        voice.bend = self._bend_for(voice)
        self._emit(make_note_on, cycle, voice, note, velocity, voice.srcn, voice.pitch, voice.bend)

        self._emit_volume(voice, cycle)
        self._emit_echo(voice, state.dsp_regs[R_EON], cycle)
        if not param.envelope_as_expression and voice.last_expression_cc not in (None, 127):
            # A previous source left the channel's expression down
            voice.last_expression_cc = 127
            self._emit(make_control_change, cycle, voice, CC_EXPRESSION, 127)

        voice.envelope = Envelope(phase=EnvelopePhase.ATTACK)
        dir_entry = (state.dsp_regs[R_DIR] << 8) + 4 * voice.srcn
        voice.brr_addr = state.read_ram_word(dir_entry)
        voice.brr_pos = 0
        self.endx &= ~voice.bit

    def _key_off(self, rising: int, cycle: int):
        for voice in self.voices:
            if rising & voice.bit:
                if voice.envelope.phase is not EnvelopePhase.OFF:
                    voice.envelope.phase = EnvelopePhase.RELEASE
                self._close_note(voice, cycle, 'key_off')

    def _write_flags(self, old: int, value: int, cycle: int):
        if value & FLG_RESET and not old & FLG_RESET:
            for voice in self.voices:
                voice.envelope = Envelope()
                self._close_note(voice, cycle, 'reset')
        changed = old ^ value
        controls = []
        if changed & FLG_NOISE_CLOCK:
            controls.append((CC_NOISE_CLOCK, (value & FLG_NOISE_CLOCK) * 4))
        if changed & FLG_MUTE:
            controls.append((CC_MUTE, 127 if value & FLG_MUTE else 0))
        if changed & FLG_ECHO_WRITE_OFF:
            controls.append((CC_ECHO_WRITE, 127 if value & FLG_ECHO_WRITE_OFF else 0))
        for controller, cc_value in controls:
            for voice in self.voices:
                self._emit(make_control_change, cycle, voice, controller, cc_value)

    def _write_voice_bits(self, old: int, value: int, controller: int, cycle: int):
        changed = old ^ value
        for voice in self.voices:
            if changed & voice.bit:
                self._emit(make_control_change, cycle, voice, controller,
                           127 if value & voice.bit else 0)

    # ------------------------------------------------------------------
    # Per-sample processing
    # ------------------------------------------------------------------

    def _sample(self, state: MachineState, cycle: int):
        self.counter -= 1
        if self.counter < 0:
            self.counter = COUNTER_RANGE - 1

        regs = state.dsp_regs
        flg = regs[R_FLG]
        kof = regs[R_KOF]
        for voice in self.voices:
            env = voice.envelope
            if flg & FLG_RESET:
                voice.envelope = Envelope()
                self._close_note(voice, cycle, 'reset')
                continue
            if kof & voice.bit and env.phase not in (EnvelopePhase.OFF, EnvelopePhase.RELEASE):
                env.phase = EnvelopePhase.RELEASE
                self._close_note(voice, cycle, 'key_off')
            if env.phase is EnvelopePhase.OFF:
                continue

            header = state.ram[voice.brr_addr & 0xFFFF]
            if header & (BRR_END | BRR_LOOP) == BRR_END:
                # Final block of a one-shot sample plays as silence
                voice.envelope = Envelope()
                self.endx |= voice.bit
                self._close_note(voice, cycle, 'sample_end')
                continue

            base = voice.index << 4
            previous = env.level
            step_envelope(env, regs[base | V_ADSR1], regs[base | V_ADSR2], regs[base | V_GAIN],
                          self.counter)
            if previous > 0 and env.level == 0:
                if env.phase is EnvelopePhase.RELEASE:
                    env.phase = EnvelopePhase.OFF
                    self._close_note(voice, cycle, 'release')
                else:
                    self._close_note(voice, cycle, 'decay')
            if voice.sounding and \
                    self.source_mapper.get_parameter(voice.note_srcn).envelope_as_expression:
                self._emit_expression(voice, cycle)

            self._advance_brr(state, voice, header)

        self.kon_latch = 0
        regs[R_ENDX] = self.endx

    def _advance_brr(self, state: MachineState, voice: Voice, header: int):
        voice.brr_pos += voice.pitch
        while voice.brr_pos >= 0x10000:
            voice.brr_pos -= 0x10000
            if header & BRR_END:
                self.endx |= voice.bit
                dir_entry = (state.dsp_regs[R_DIR] << 8) + 4 * voice.srcn
                voice.brr_addr = state.read_ram_word(dir_entry + 2)
            else:
                voice.brr_addr = (voice.brr_addr + BRR_BLOCK_SIZE) & 0xFFFF
            header = state.ram[voice.brr_addr]

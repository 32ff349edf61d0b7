#!/usr/bin/env python3
"""Tests for the S-DSP register tracer."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import pytest

from dsp_tracer import (
    DspTracer, Envelope, EnvelopePhase, step_envelope, pitch_to_note, volume_to_velocity,
    volume_to_pan, R_KON, R_KOF, R_ENDX, R_FLG, R_NON, R_EON, V_PL, V_SRCN, V_ADSR1, V_ADSR2,
    V_ENVX, V_GAIN, V_VOLL, V_VOLR,
)
from events import EventKind, CC_NOISE, CC_MUTE, CC_VOLUME, CC_PAN, CC_ECHO, CC_EXPRESSION
from options import ConversionOptions
from performance import merge_voice_events
from source_map import SourceMapper
from snapshot_helpers import make_state, install_sample, set_voice, BRR_END


def traced(options=None, source_map=None):
    state = make_state()
    tracer = DspTracer(state, options or ConversionOptions(), SourceMapper(source_map))
    return state, tracer


def events_of(tracer):
    return merge_voice_events(tracer.voice_events)


def kinds(events):
    return [e.kind for e in events]


def test_key_on_then_key_off():
    """Key-on at cycle 100 and key-off at cycle 5000 give one note."""
    state, tracer = traced(source_map={5: 0})
    install_sample(state, srcn=5)
    set_voice(state, 0, pitch=0x1000, srcn=5, vol_left=127, vol_right=127)
    tracer.write_register(state, 0x04, 5, 0)  # SRCN
    tracer.write_register(state, R_KON, 0x01, 100)
    tracer.write_register(state, R_KOF, 0x01, 5000)

    events = events_of(tracer)
    print([e.describe() for e in events])
    assert kinds(events) == [EventKind.NOTE_ON, EventKind.NOTE_OFF]
    note_on, note_off = events
    assert note_on.cycle == 100
    assert note_on.voice == 0
    assert note_on.payload['note'] == 60
    assert note_on.payload['velocity'] == 127
    assert note_on.payload['srcn'] == 5
    assert note_off.cycle == 5000
    assert note_off.payload['reason'] == 'key_off'


def test_pitch_write_on_sounding_voice_is_one_pitch_change():
    state = make_state()
    set_voice(state, 2)
    tracer = DspTracer(state, ConversionOptions(), SourceMapper())
    tracer.write_register(state, R_KON, 0x04, 100)
    tracer.write_register(state, (2 << 4) | V_PL, 0x10, 2000)
    tracer.write_register(state, (2 << 4) | V_PL, 0x10, 2100)  # Unchanged value

    events = [e for e in events_of(tracer) if e.voice == 2]
    assert kinds(events) == [EventKind.NOTE_ON, EventKind.PITCH_CHANGE]
    change = events[1]
    assert change.cycle == 2000
    assert change.payload['pitch'] == 0x1010
    assert change.payload['bend'] > 8192
    assert tracer.voices[2].note == 60


def test_pitch_write_on_silent_voice_is_ignored():
    state, tracer = traced()
    tracer.write_register(state, V_PL, 0x20, 100)
    assert events_of(tracer) == []
    assert tracer.voices[0].pitch == 0x1020


def test_retrigger_closes_previous_note_first():
    state, tracer = traced()
    tracer.write_register(state, R_KON, 0x01, 100)
    tracer.write_register(state, R_KON, 0x01, 110)  # Latched until the next sample
    tracer.write_register(state, R_KON, 0x01, 300)

    events = events_of(tracer)
    assert [(e.cycle, e.kind) for e in events] == [
        (100, EventKind.NOTE_ON),
        (300, EventKind.NOTE_OFF),
        (300, EventKind.NOTE_ON),
    ]
    assert events[1].payload['reason'] == 'retrigger'


def test_key_off_only_on_rising_bit():
    state, tracer = traced()
    tracer.write_register(state, R_KON, 0x01, 100)
    tracer.write_register(state, R_KOF, 0x01, 200)
    tracer.write_register(state, R_KOF, 0x01, 300)
    assert tracer.voices[0].envelope.phase is EnvelopePhase.RELEASE
    assert kinds(events_of(tracer)) == [EventKind.NOTE_ON, EventKind.NOTE_OFF]


def test_held_key_off_forces_release_on_key_on():
    state, tracer = traced()
    tracer.write_register(state, R_KOF, 0x01, 50)
    tracer.write_register(state, R_KON, 0x01, 100)
    tracer.run_until(state, 200)
    events = events_of(tracer)
    assert kinds(events) == [EventKind.NOTE_ON, EventKind.NOTE_OFF]
    assert events[1].cycle == 128  # First sample after the key-on


def test_gain_decrease_to_zero_ends_note():
    state, tracer = traced()
    set_voice(state, 0, gain=0x40)  # Direct, level 0x400
    tracer.write_register(state, R_KON, 0x01, 40)
    tracer.run_until(state, 100)
    assert tracer.voices[0].envelope.level == 0x400
    assert tracer.read_register(state, V_ENVX, 100) == 0x40

    tracer.write_register(state, V_GAIN, 0x9F, 100)  # Linear decrease, fastest rate
    tracer.run_until(state, 100 + 32 * 40)
    events = events_of(tracer)
    assert kinds(events) == [EventKind.NOTE_ON, EventKind.NOTE_OFF]
    assert events[1].payload['reason'] == 'decay'
    assert tracer.voices[0].envelope.level == 0


def test_adsr_sustain_decay_to_zero_ends_note():
    state, tracer = traced()
    state.dsp_regs[V_ADSR1] = 0x8F  # ADSR on, fastest attack, DR=0
    state.dsp_regs[V_ADSR2] = 0xFF  # SL=7, fastest sustain decrease
    tracer.write_register(state, R_KON, 0x01, 10)

    phases = []
    cycle = 10
    while tracer.voices[0].sounding and cycle < 32 * 2000:
        cycle += 32
        tracer.run_until(state, cycle)
        phase = tracer.voices[0].envelope.phase
        if not phases or phases[-1] is not phase:
            phases.append(phase)

    print(f"Note ended after {cycle} cycles, phases {[p.value for p in phases]}")
    assert phases == [EnvelopePhase.ATTACK, EnvelopePhase.DECAY, EnvelopePhase.SUSTAIN]
    events = events_of(tracer)
    assert kinds(events) == [EventKind.NOTE_ON, EventKind.NOTE_OFF]
    assert events[1].payload['reason'] == 'decay'
    assert tracer.voices[0].envelope.level == 0


def test_one_shot_sample_end():
    state, tracer = traced()
    install_sample(state, srcn=0, headers=(0x00, BRR_END))
    set_voice(state, 0, gain=0x7F)
    tracer.write_register(state, R_KON, 0x01, 10)
    tracer.run_until(state, 10 + 32 * 40)

    events = events_of(tracer)
    assert kinds(events) == [EventKind.NOTE_ON, EventKind.NOTE_OFF]
    assert events[1].payload['reason'] == 'sample_end'
    assert tracer.read_register(state, R_ENDX, 10 + 32 * 40) & 0x01
    assert tracer.voices[0].envelope.phase is EnvelopePhase.OFF

    # Writing ENDX clears it
    tracer.write_register(state, R_ENDX, 0xFF, 10 + 32 * 41)
    assert tracer.read_register(state, R_ENDX, 10 + 32 * 41) == 0


def test_looping_sample_sets_endx_and_keeps_playing():
    state, tracer = traced()
    set_voice(state, 0, gain=0x7F)
    tracer.write_register(state, R_KON, 0x01, 10)
    tracer.run_until(state, 10 + 32 * 40)
    assert tracer.endx & 0x01
    assert tracer.voices[0].sounding


def test_srcn_change_on_sounding_voice():
    state, tracer = traced()
    tracer.write_register(state, R_KON, 0x01, 100)
    tracer.write_register(state, V_SRCN, 0x03, 200)
    events = events_of(tracer)
    assert kinds(events) == [EventKind.NOTE_ON, EventKind.PROGRAM_CHANGE]
    assert events[1].payload['srcn'] == 3


def test_flag_changes_become_controls_for_every_voice():
    state, tracer = traced()
    tracer.write_register(state, R_FLG, 0x40, 100)  # Mute
    events = events_of(tracer)
    assert len(events) == 8
    assert {e.payload['controller'] for e in events} == {CC_MUTE}
    assert {e.payload['value'] for e in events} == {127}


def test_soft_reset_keys_everything_off():
    state = make_state()
    set_voice(state, 1)
    tracer = DspTracer(state, ConversionOptions(), SourceMapper())
    tracer.write_register(state, R_KON, 0x03, 100)
    tracer.write_register(state, R_FLG, 0x80, 200)
    offs = [e for e in events_of(tracer) if e.kind is EventKind.NOTE_OFF]
    assert [(e.voice, e.payload['reason']) for e in offs] == [(0, 'reset'), (1, 'reset')]


def test_noise_enable_bits():
    state, tracer = traced()
    tracer.write_register(state, R_NON, 0x05, 100)
    events = events_of(tracer)
    assert [(e.voice, e.payload['controller'], e.payload['value']) for e in events] == [
        (0, CC_NOISE, 127), (2, CC_NOISE, 127)]


def test_track_volume_controls():
    state, tracer = traced(ConversionOptions(track_volume=True))
    tracer.write_register(state, R_KON, 0x01, 100)
    tracer.write_register(state, V_VOLL, 0x20, 200)
    controls = [(e.payload['controller'], e.payload['value'])
                for e in events_of(tracer) if e.kind is EventKind.CONTROL_CHANGE]
    assert controls[:2] == [(CC_VOLUME, 127), (CC_PAN, 64)]
    assert controls[2] == (CC_PAN, volume_to_pan(0x20, 127))


def test_fixed_velocity_and_center_note():
    state, tracer = traced(source_map={0: {'program': 40, 'center_note': 69, 'velocity': 90}})
    tracer.write_register(state, R_KON, 0x01, 100)
    note_on = events_of(tracer)[0]
    assert note_on.payload['note'] == 69
    assert note_on.payload['velocity'] == 90


def controls_of(tracer, controller):
    return [(e.voice, e.cycle, e.payload['value']) for e in events_of(tracer)
            if e.kind is EventKind.CONTROL_CHANGE and e.payload['controller'] == controller]


def test_fixed_volume_and_pan_per_source():
    state, tracer = traced(source_map={0: {'auto_volume': False, 'volume': 90, 'pan': 20}})
    tracer.write_register(state, R_KON, 0x01, 100)
    tracer.write_register(state, V_VOLL, 0x20, 200)
    controls = [(e.payload['controller'], e.payload['value'])
                for e in events_of(tracer) if e.kind is EventKind.CONTROL_CHANGE]
    assert controls == [(CC_VOLUME, 90), (CC_PAN, 20)]


def test_auto_volume_per_source_without_track_volume():
    state, tracer = traced(source_map={0: {'auto_volume': True}})
    tracer.write_register(state, R_KON, 0x01, 100)
    tracer.write_register(state, V_VOLL, 0x20, 200)
    tracer.write_register(state, V_VOLR, 0x10, 300)
    assert controls_of(tracer, CC_VOLUME) == [(0, 100, 127), (0, 300, 32)]
    assert controls_of(tracer, CC_PAN) == []


def test_envelope_as_expression():
    state, tracer = traced(source_map={0: {'envelope_as_expression': True}})
    state.dsp_regs[V_ADSR1] = 0x8F
    state.dsp_regs[V_ADSR2] = 0xFF
    tracer.write_register(state, R_KON, 0x01, 10)
    tracer.run_until(state, 32 * 200)

    expression = controls_of(tracer, CC_EXPRESSION)
    assert expression[:2] == [(0, 32, 0x40), (0, 64, 0x7F)]
    assert expression[-1][2] < 0x7F

    # A source without the setting puts the expression back to full
    tracer.write_register(state, V_SRCN, 0x01, 32 * 200 + 5)
    tracer.write_register(state, R_KON, 0x01, 32 * 200 + 10)
    assert controls_of(tracer, CC_EXPRESSION)[-1] == (0, 32 * 200 + 10, 127)


def test_echo_as_effect_per_source():
    state = make_state()
    set_voice(state, 1, srcn=1)
    tracer = DspTracer(state, ConversionOptions(), SourceMapper({1: {'echo_as_effect': False}}))
    tracer.write_register(state, R_EON, 0x03, 50)
    tracer.write_register(state, R_KON, 0x03, 100)
    # Voice 0 switches to the source without echo and is keyed again
    tracer.write_register(state, V_SRCN, 0x01, 200)
    tracer.write_register(state, R_KON, 0x01, 300)
    assert controls_of(tracer, CC_ECHO) == [(0, 50, 127), (0, 300, 0)]


def test_key_on_bend_travels_with_the_note():
    state, tracer = traced(source_map={0: {'center_note': 60.5, 'pitch_bend_range': 1}})
    tracer.write_register(state, R_KON, 0x01, 100)
    events = events_of(tracer)
    assert kinds(events) == [EventKind.NOTE_ON]
    assert events[0].payload['note'] == 60
    assert events[0].payload['bend'] == 8192 + 4096  # Half a semitone at a one-semitone range


def test_finish_closes_sounding_notes():
    state, tracer = traced()
    tracer.write_register(state, R_KON, 0x01, 100)
    tracer.finish(state, 9999)
    events = events_of(tracer)
    assert events[-1].cycle == 9999
    assert events[-1].payload['reason'] == 'end'


class TestEnvelope:
    def test_fast_attack_then_decay_to_sustain(self):
        env = Envelope(phase=EnvelopePhase.ATTACK)
        adsr1 = 0x8F  # ADSR on, AR=15, DR=0
        adsr2 = 0xE0  # SL=7
        step_envelope(env, adsr1, adsr2, 0, counter=0)
        assert env.level == 0x400
        step_envelope(env, adsr1, adsr2, 0, counter=0)
        assert env.level == 0x7FF
        assert env.phase is EnvelopePhase.DECAY
        step_envelope(env, adsr1, adsr2, 0, counter=0)
        assert env.level == 0x7F7
        assert env.phase is EnvelopePhase.SUSTAIN

    def test_slow_rate_waits_for_counter(self):
        env = Envelope(phase=EnvelopePhase.ATTACK)
        # AR=0 gives rate 1: a step only when the counter is a multiple of 2048
        step_envelope(env, 0x80, 0, 0, counter=1)
        assert env.level == 0
        step_envelope(env, 0x80, 0, 0, counter=2048)
        assert env.level == 0x20

    def test_release_steps_every_sample(self):
        env = Envelope(phase=EnvelopePhase.RELEASE, level=0x10)
        step_envelope(env, 0x8F, 0, 0, counter=7)
        assert env.level == 0x08
        step_envelope(env, 0x8F, 0, 0, counter=6)
        assert env.level == 0

    def test_gain_direct(self):
        env = Envelope(phase=EnvelopePhase.ATTACK)
        step_envelope(env, 0x00, 0, 0x40, counter=123)
        assert env.level == 0x400

    def test_gain_bent_increase(self):
        env = Envelope(phase=EnvelopePhase.ATTACK, level=0x600, hidden=0x600)
        step_envelope(env, 0x00, 0, 0xFF, counter=0)  # Bent line, rate 31
        assert env.level == 0x608


@pytest.mark.parametrize("pitch,center,expected", [
    (0x1000, 60.0, 60.0),
    (0x2000, 60.0, 72.0),
    (0x0800, 60.0, 48.0),
    (0x1000, 69.5, 69.5),
])
def test_pitch_to_note(pitch, center, expected):
    assert pitch_to_note(pitch, center) == pytest.approx(expected)


def test_velocity_curves():
    assert volume_to_velocity(127, 127, 'linear') == 127
    assert volume_to_velocity(-64, 10, 'linear') == 64
    assert volume_to_velocity(0, 0, 'linear') == 1
    assert volume_to_velocity(127, 0, 'logarithmic') == 127
    # Half volume is about -6 dB on a 48 dB scale
    assert volume_to_velocity(64, 0, 'logarithmic') == pytest.approx(111, abs=1)
    assert volume_to_velocity(127, 127, 'linear', scale=0.5) == 64


if __name__ == '__main__':
    sys.exit(pytest.main([__file__, '-v']))

"""
Tempo estimation from note onsets.

Builds an onset strength signal from the note-ons of an extracted timeline
and takes the beat period from the first strong peak of its
autocorrelation. Used to pick a BPM so that the MIDI beat grid lines up
with the music.
"""

from typing import Optional

import numpy as np

from events import EventKind, Timeline
from machine import CLOCK_HZ


FRAME_RATE = 1000  # Onset frames per second
CYCLES_PER_FRAME = CLOCK_HZ // FRAME_RATE

MIN_BPM = 30
MAX_BPM = 240
MIN_LAG = int(60 * FRAME_RATE / MAX_BPM)
MAX_LAG = int(60 * FRAME_RATE / MIN_BPM)

# Lags whose autocorrelation is within this ratio of the best are beat candidates
PEAK_THRESHOLD = 0.98


def onset_signal(timeline: Timeline, start_cycle: int = 0) -> np.ndarray:
    """Per-frame onset strength: root of the summed squared note-on velocities."""
    frames = max(0, timeline.end_cycle - start_cycle) // CYCLES_PER_FRAME + 1
    energy = np.zeros(frames)
    for event in timeline:
        if event.kind is EventKind.NOTE_ON:
            frame = (event.cycle - start_cycle) // CYCLES_PER_FRAME
            energy[frame] += float(event.payload['velocity']) ** 2
    return np.sqrt(energy)


def estimate_bpm(onsets: np.ndarray) -> Optional[float]:
    """Estimate the tempo of an onset signal, rounded to a quarter BPM.

    Returns None when the signal is shorter than the slowest beat or has no
    onsets to correlate.
    """
    n = len(onsets)
    if n <= MAX_LAG:
        return None

    # Positive onset differences, windowed
    flux = np.empty(n)
    flux[0] = onsets[0]
    flux[1:] = np.maximum(np.diff(onsets), 0.0)
    flux *= np.sin(np.pi * np.arange(n) / (n - 1)) ** 2

    # Autocorrelation through the power spectrum, zero-padded so lags do not wrap
    spectrum = np.fft.rfft(flux, 2 * n)
    autocorr = np.fft.irfft(np.abs(spectrum) ** 2)[:n]

    candidates = autocorr[MIN_LAG:MAX_LAG + 1]
    peak = float(candidates.max())
    # Anything this small relative to the zero-lag energy is rounding noise
    if peak <= autocorr[0] * 1e-6:
        return None
    lag = MIN_LAG + int(np.argmax(candidates >= PEAK_THRESHOLD * peak))
    bpm = 60.0 * FRAME_RATE / lag
    return round(bpm * 4) / 4

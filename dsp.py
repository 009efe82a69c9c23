#!/usr/bin/env python3
"""
Receiver DSP Building Blocks

Sample conversion, FIR design, the streaming FIR filter, rate conversion
and de-emphasis shared by the demodulators (demodulator.py) and the stereo
separator (stereo_separator.py).

All stateful classes carry history across blocks and serve one stream each.
"""

from dataclasses import dataclass
from typing import NamedTuple

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view
from scipy import signal as sp_signal


class SamplesIQ(NamedTuple):
    """A deinterleaved I/Q block."""
    i: np.ndarray
    q: np.ndarray


@dataclass
class StereoSignal:
    """Output of the stereo separator: pilot lock flag and L-R signal."""
    has_pilot: bool
    diff: np.ndarray


@dataclass
class StereoAudio:
    """One block of decoded audio."""
    left: np.ndarray
    right: np.ndarray
    in_stereo: bool
    carrier: bool


def _ema_alpha_from_tau(tau_s, samples, sample_rate_hz):
    """
    Convert a continuous-time EMA time constant to an update alpha.

    With samples=1 this is the per-sample coefficient used inside the
    separator loop.
    """
    n = int(samples)
    if n <= 0:
        return 1.0
    tau = float(tau_s)
    if tau <= 0.0:
        return 1.0
    fs = float(sample_rate_hz)
    if fs <= 0.0:
        return 1.0
    alpha = 1.0 - np.exp(-n / (tau * fs))
    return float(max(0.0, min(1.0, alpha)))


def _validate_odd_taps(value, name, minimum=1):
    """Return validated odd FIR tap count."""
    taps = int(value)
    if taps < minimum or (taps % 2) == 0:
        raise ValueError(f"{name} must be an odd integer >= {minimum}, got {value}")
    return taps


def validate_rate(value, name):
    """Return a validated positive sample rate / frequency."""
    rate = float(value)
    if not rate > 0.0:
        raise ValueError(f"{name} must be positive, got {value}")
    return rate


def _raw_view(buffer, dtype, length):
    raw = np.frombuffer(buffer, dtype=np.uint8)
    # A trailing partial sample is not part of the stream
    whole = len(raw) - len(raw) % np.dtype(dtype).itemsize
    data = raw[:whole].view(dtype)
    if length is None:
        return data
    length = int(length)
    if length < 0 or length > len(data):
        raise ValueError(f"length {length} does not fit a buffer of {len(data)} samples")
    return data[:length]


def samples_from_uint8(buffer, length=None):
    """
    Convert unsigned 8-bit samples (RTL-style tuners) to floats.

    Args:
        buffer: bytes-like object or uint8 array
        length: number of samples to convert (default: whole buffer)

    Returns:
        float64 array in [-1, 1)
    """
    raw = _raw_view(buffer, np.uint8, length)
    return (raw.astype(np.float64) - 128.0) / 128.0


def samples_from_int16(buffer, length=None):
    """
    Convert little-endian signed 16-bit samples to floats.

    Args:
        buffer: bytes-like object or int16 array
        length: number of samples to convert (default: whole buffer)

    Returns:
        float64 array in [-1, 1)
    """
    raw = _raw_view(buffer, np.dtype('<i2'), length)
    return raw.astype(np.float64) / 32768.0


def low_pass_coefficients(sample_rate, half_ampl_freq, length):
    """
    Design a linear-phase low-pass FIR kernel.

    Windowed sinc (Hamming) with its half-amplitude point at half_ampl_freq.
    The kernel is forced exactly symmetric and scaled to unity DC gain, and
    returned read-only so filters can share it.

    Args:
        sample_rate: Sample rate of the signal to filter in Hz
        half_ampl_freq: Half-amplitude frequency in Hz
        length: Number of taps (odd)

    Returns:
        Read-only float64 array of taps
    """
    taps = _validate_odd_taps(length, "length")
    fs = validate_rate(sample_rate, "sample_rate")
    cutoff = validate_rate(half_ampl_freq, "half_ampl_freq")
    if cutoff >= fs / 2:
        raise ValueError(f"half_ampl_freq {cutoff} Hz must be below Nyquist ({fs / 2} Hz)")
    if taps == 1:
        h = np.ones(1, dtype=np.float64)
    else:
        h = sp_signal.firwin(taps, cutoff, window='hamming', fs=fs)
        # Mirror-average so h[i] == h[n-1-i] bit for bit
        h = (h + h[::-1]) / 2
        h = h / np.sum(h)
    h.setflags(write=False)
    return h


class FIRFilter:
    """
    Streaming FIR filter over one sub-channel of a (possibly interleaved) stream.

    The last (len-1)*step raw samples of each loaded block are kept as
    lookback for the next block, so output index n is the kernel centered on
    sub-channel sample n - (len-1)/2: a constant group delay of (len-1)/2
    sub-channel samples. Before the first block the lookback is zero, and
    positions past the end of the loaded block read as zero.
    """

    def __init__(self, coefficients, step=1):
        coefficients = np.asarray(coefficients, dtype=np.float64)
        _validate_odd_taps(len(coefficients), "len(coefficients)")
        self.step = int(step)
        if self.step < 1:
            raise ValueError(f"step must be >= 1, got {step}")
        self.coefficients = coefficients
        self._history_len = (len(coefficients) - 1) * self.step
        self._history = np.zeros(self._history_len, dtype=np.float64)
        self._window = self._history

    @property
    def delay(self):
        """Group delay in sub-channel samples."""
        return (len(self.coefficients) - 1) // 2

    def load_samples(self, samples):
        """Make samples the current working block."""
        samples = np.asarray(samples, dtype=np.float64)
        window = np.concatenate([self._history, samples])
        self._window = window
        if self._history_len:
            self._history = window[len(window) - self._history_len:].copy()

    def reset(self):
        """Forget the lookback history."""
        self._history = np.zeros(self._history_len, dtype=np.float64)
        self._window = self._history

    def get(self, index, offset=0):
        """
        Return one filtered sample.

        Args:
            index: Output index in the sub-channel selected by offset
            offset: Raw position of the sub-channel's first sample (0 <= offset < step)

        Returns:
            Filtered value as float
        """
        n_taps = len(self.coefficients)
        start = int(index) * self.step + int(offset)
        if start < 0:
            raise ValueError(f"index {index} precedes the loaded block")
        stop = start + n_taps * self.step
        taps = self._window[start:stop:self.step]
        if len(taps) < n_taps:
            taps = np.concatenate([taps, np.zeros(n_taps - len(taps))])
        return float(np.dot(self.coefficients, taps))

    def get_many(self, indices, offset=0):
        """Vectorized get() for in-range indices of the sub-channel."""
        indices = np.asarray(indices, dtype=np.intp)
        if len(indices) == 0:
            return np.zeros(0, dtype=np.float64)
        sub = self._window[int(offset)::self.step]
        windows = sliding_window_view(sub, len(self.coefficients))
        return windows[indices] @ self.coefficients


def _decimation_indices(n_in, rate_mul):
    """Nearest input positions for floor(n_in / rate_mul) outputs."""
    n_out = int(np.floor(n_in / rate_mul + 1e-9))
    if n_out <= 0:
        return np.zeros(0, dtype=np.intp)
    idx = np.rint(np.arange(n_out) * rate_mul).astype(np.intp)
    return np.minimum(idx, n_in - 1)


def _rate_ratio(in_rate, out_rate):
    in_rate = validate_rate(in_rate, "in_rate")
    out_rate = validate_rate(out_rate, "out_rate")
    if out_rate > in_rate:
        raise ValueError(f"out_rate {out_rate} exceeds in_rate {in_rate}")
    return in_rate / out_rate


class Downsampler:
    """Low-pass filter and decimate a single-channel stream."""

    def __init__(self, in_rate, out_rate, coefficients):
        self.rate_mul = _rate_ratio(in_rate, out_rate)
        self.filter = FIRFilter(coefficients)

    def downsample(self, samples):
        """
        Return the block at the output rate.

        Decimation picks the filtered sample nearest each output instant;
        the kernel is expected to have removed content above the new Nyquist.
        """
        samples = np.asarray(samples, dtype=np.float64)
        self.filter.load_samples(samples)
        idx = _decimation_indices(len(samples), self.rate_mul)
        return self.filter.get_many(idx)

    def reset(self):
        self.filter.reset()


class IQDownsampler:
    """Low-pass filter, decimate and deinterleave an [I0, Q0, I1, Q1, ...] stream."""

    def __init__(self, in_rate, out_rate, coefficients):
        self.rate_mul = _rate_ratio(in_rate, out_rate)
        self.filter = FIRFilter(coefficients, step=2)

    def downsample(self, samples):
        """Return the block as a SamplesIQ pair at the output rate."""
        samples = np.asarray(samples, dtype=np.float64)
        if len(samples) % 2:
            raise ValueError(f"interleaved I/Q block has odd length {len(samples)}")
        self.filter.load_samples(samples)
        idx = _decimation_indices(len(samples) // 2, self.rate_mul)
        return SamplesIQ(self.filter.get_many(idx, 0), self.filter.get_many(idx, 1))

    def reset(self):
        self.filter.reset()


class Deemphasizer:
    """
    Single-pole de-emphasis filter.

    y[n] = (1 - a) * x[n] + a * y[n-1], a = exp(-1 / (fs * tau)).
    """

    def __init__(self, sample_rate, time_constant_us):
        fs = validate_rate(sample_rate, "sample_rate")
        tau = validate_rate(time_constant_us, "time_constant_us") * 1e-6
        a = np.exp(-1.0 / (tau * fs))
        self.b = np.array([1.0 - a])
        self.a = np.array([1.0, -a])
        self._zi_unit = sp_signal.lfilter_zi(self.b, self.a)
        self.state = None

    def apply(self, samples):
        """De-emphasize a float array in place and return it."""
        if len(samples) == 0:
            return samples
        if self.state is None:
            # Settle on the first sample so a DC input is passed unchanged
            self.state = self._zi_unit * samples[0]
        out, self.state = sp_signal.lfilter(self.b, self.a, samples, zi=self.state)
        samples[:] = out
        return samples

    def reset(self):
        self.state = None

#!/usr/bin/env python3
"""
AM / FM Demodulators and Mode Decoders

AMDemodulator and FMDemodulator turn interleaved tuner I/Q into baseband
audio (or the FM composite) plus a carrier flag. The decoders below chain
them with rate conversion, stereo separation and de-emphasis and hand out
StereoAudio blocks:

    IQ -> IQDownsampler -> FM discriminator -> composite (inter_rate)
              composite -> Downsampler ----------------------> M = (L+R)/2
              composite -> StereoSeparator -> Downsampler ---> D = (L-R)/2
              L = M + D, R = M - D -> de-emphasis -> StereoAudio
"""

import logging

import numpy as np

from dsp import (
    Deemphasizer,
    Downsampler,
    IQDownsampler,
    StereoAudio,
    low_pass_coefficients,
    validate_rate,
)
from stereo_separator import StereoSeparator


logger = logging.getLogger(__name__)

# Average envelope (in converted sample units) above which a carrier is present.
CARRIER_THRESHOLD = 0.05


class _IQDemodulator:
    """Common part of the AM/FM demodulators: IQ downsampling and carrier detection."""

    def __init__(self, in_rate, out_rate, filter_freq, kernel_len, carrier_threshold):
        self.in_rate = validate_rate(in_rate, "in_rate")
        self.out_rate = validate_rate(out_rate, "out_rate")
        coefs = low_pass_coefficients(self.in_rate, filter_freq, kernel_len)
        self.downsampler = IQDownsampler(self.in_rate, self.out_rate, coefs)
        self.carrier_threshold = float(carrier_threshold)
        self._has_carrier = False
        self._signal_level = 0.0

    @property
    def has_carrier(self):
        """True if a carrier was detected in the last demodulated block."""
        return self._has_carrier

    @property
    def signal_level(self):
        """Average envelope of the last demodulated block."""
        return self._signal_level

    def _update_carrier(self, i, q):
        level = float(np.mean(np.hypot(i, q))) if len(i) else 0.0
        carrier = level > self.carrier_threshold
        if carrier != self._has_carrier:
            logger.debug("Carrier %s (level %.4f)", "found" if carrier else "lost", level)
        self._signal_level = level
        self._has_carrier = carrier


class AMDemodulator(_IQDemodulator):
    """
    Envelope detector for amplitude modulated I/Q.

    Args:
        in_rate: Sample rate of the interleaved input
        out_rate: Sample rate of the output audio
        filter_freq: Half-amplitude frequency of the channel filter
        kernel_len: Length of the channel filter kernel (odd)
        carrier_threshold: Average envelope needed to report a carrier
    """

    def __init__(self, in_rate, out_rate, filter_freq, kernel_len,
                 carrier_threshold=CARRIER_THRESHOLD):
        super().__init__(in_rate, out_rate, filter_freq, kernel_len, carrier_threshold)

    def demodulate(self, samples):
        """Return the envelope sqrt(I² + Q²) of the block at out_rate."""
        iq = self.downsampler.downsample(samples)
        self._update_carrier(iq.i, iq.q)
        return np.hypot(iq.i, iq.q)

    def reset(self):
        self.downsampler.reset()
        self._has_carrier = False
        self._signal_level = 0.0


class FMDemodulator(_IQDemodulator):
    """
    Quadrature discriminator for frequency modulated I/Q.

    Output is scaled so a deviation of max_f maps to +-1.0.

    Args:
        in_rate: Sample rate of the interleaved input
        out_rate: Sample rate of the demodulated output
        max_f: Maximum frequency deviation in Hz
        filter_freq: Half-amplitude frequency of the channel filter
        kernel_len: Length of the channel filter kernel (odd)
        carrier_threshold: Average envelope needed to report a carrier
    """

    def __init__(self, in_rate, out_rate, max_f, filter_freq, kernel_len,
                 carrier_threshold=CARRIER_THRESHOLD):
        super().__init__(in_rate, out_rate, filter_freq, kernel_len, carrier_threshold)
        self.max_f = validate_rate(max_f, "max_f")
        self.ampl_conv = self.out_rate / (2 * np.pi * self.max_f)
        self._last_i = 0.0
        self._last_q = 0.0

    def demodulate(self, samples):
        """Return the instantaneous frequency of the block at out_rate."""
        iq = self.downsampler.downsample(samples)
        i = np.concatenate([[self._last_i], iq.i])
        q = np.concatenate([[self._last_q], iq.q])

        # Phase step between consecutive samples
        dot = i[1:] * i[:-1] + q[1:] * q[:-1]
        cross = i[:-1] * q[1:] - q[:-1] * i[1:]
        out = np.arctan2(cross, dot) * self.ampl_conv

        self._last_i = i[-1]
        self._last_q = q[-1]
        self._update_carrier(iq.i, iq.q)
        return out

    def reset(self):
        """Reset demodulator state (call when changing frequency)."""
        self.downsampler.reset()
        self._last_i = 0.0
        self._last_q = 0.0
        self._has_carrier = False
        self._signal_level = 0.0


class FMStereoDecoder:
    """
    Wideband FM broadcast decoder with pilot-locked stereo.

    Args:
        in_rate: Interleaved I/Q sample rate in Hz
        out_rate: Audio sample rate in Hz
        inter_rate: Composite rate between demodulation and audio decimation
        max_f: Maximum deviation in Hz (75 kHz broadcast)
        filter_freq: Channel filter half-amplitude frequency (default 0.8 * max_f)
        kernel_len: Channel filter length
        audio_filter_freq: Audio filter half-amplitude frequency
        audio_kernel_len: Audio filter length
        pilot_freq: Pilot tone frequency in Hz
        deemphasis_us: De-emphasis time constant (50 us, 75 us in the Americas)
        force_mono: Skip stereo separation
        kernel_mode: Separator loop backend (auto|python|numba)
    """

    def __init__(self, in_rate, out_rate=48000, inter_rate=336000, max_f=75000,
                 filter_freq=None, kernel_len=51, audio_filter_freq=10000,
                 audio_kernel_len=41, pilot_freq=19000, deemphasis_us=50,
                 force_mono=False, kernel_mode="auto"):
        self.in_rate = in_rate
        self.out_rate = out_rate
        self.inter_rate = inter_rate
        self.force_mono = force_mono
        if filter_freq is None:
            filter_freq = 0.8 * max_f

        self.demodulator = FMDemodulator(in_rate, inter_rate, max_f, filter_freq, kernel_len)
        audio_coefs = low_pass_coefficients(inter_rate, audio_filter_freq, audio_kernel_len)
        # Same kernel on both paths keeps M and D time aligned
        self.mono_sampler = Downsampler(inter_rate, out_rate, audio_coefs)
        self.stereo_sampler = Downsampler(inter_rate, out_rate, audio_coefs)
        self.separator = StereoSeparator(inter_rate, pilot_freq, kernel_mode=kernel_mode)
        self.left_deemph = Deemphasizer(out_rate, deemphasis_us)
        self.right_deemph = Deemphasizer(out_rate, deemphasis_us)
        self._in_stereo = False

    @property
    def has_carrier(self):
        return self.demodulator.has_carrier

    @property
    def pilot_detected(self):
        """True if the separator is locked to the pilot."""
        return self.separator.has_pilot

    @property
    def in_stereo(self):
        """True if the last block was decoded in stereo."""
        return self._in_stereo

    @property
    def signal_level(self):
        return self.demodulator.signal_level

    def demodulate(self, samples):
        """
        Decode one block of interleaved I/Q.

        Args:
            samples: Float array [I0, Q0, I1, Q1, ...] at in_rate

        Returns:
            StereoAudio with float32 channels at out_rate
        """
        composite = self.demodulator.demodulate(samples)
        left = self.mono_sampler.downsample(composite)
        right = left.copy()

        in_stereo = False
        if not self.force_mono:
            stereo = self.separator.separate(composite)
            # Decimate every block so the difference path keeps its history
            diff = self.stereo_sampler.downsample(stereo.diff)
            if stereo.has_pilot:
                in_stereo = True
                left += diff
                right -= diff
        self._in_stereo = in_stereo

        self.left_deemph.apply(left)
        self.right_deemph.apply(right)
        return StereoAudio(
            left.astype(np.float32),
            right.astype(np.float32),
            in_stereo,
            self.demodulator.has_carrier,
        )

    def reset(self):
        """Reset decoder state (call when changing frequency)."""
        self.demodulator.reset()
        self.mono_sampler.reset()
        self.stereo_sampler.reset()
        self.separator.reset()
        self.left_deemph.reset()
        self.right_deemph.reset()
        self._in_stereo = False


class NBFMDecoder:
    """
    Narrowband FM decoder for voice channels.

    NBFM characteristics:
    - Deviation: ~5 kHz
    - Mono only (no stereo subcarrier)
    - Audio bandwidth: ~3 kHz
    - No de-emphasis
    """

    def __init__(self, in_rate, out_rate=48000, deviation=5000, kernel_len=351,
                 audio_filter_freq=3000, audio_kernel_len=101):
        self.in_rate = in_rate
        self.out_rate = out_rate
        self.deviation = deviation
        # 12.5 kHz channel for 5 kHz deviation
        channel_freq = 2.5 * deviation
        self.demodulator = FMDemodulator(in_rate, out_rate, deviation, channel_freq, kernel_len)
        audio_coefs = low_pass_coefficients(out_rate, audio_filter_freq, audio_kernel_len)
        self.audio_filter = Downsampler(out_rate, out_rate, audio_coefs)

    @property
    def has_carrier(self):
        return self.demodulator.has_carrier

    @property
    def pilot_detected(self):
        """Always False for NBFM (no stereo pilot)."""
        return False

    def demodulate(self, samples):
        """Decode one block of interleaved I/Q to mono audio on both channels."""
        audio = self.audio_filter.downsample(self.demodulator.demodulate(samples))
        audio = audio.astype(np.float32)
        return StereoAudio(audio, audio.copy(), False, self.demodulator.has_carrier)

    def reset(self):
        self.demodulator.reset()
        self.audio_filter.reset()


class AMDecoder:
    """
    AM broadcast decoder.

    The envelope's block mean (the carrier level) is removed so the audio
    is centered on zero.
    """

    def __init__(self, in_rate, out_rate=48000, bandwidth=10000, kernel_len=351):
        self.in_rate = in_rate
        self.out_rate = out_rate
        self.demodulator = AMDemodulator(in_rate, out_rate, bandwidth / 2, kernel_len)

    @property
    def has_carrier(self):
        return self.demodulator.has_carrier

    @property
    def pilot_detected(self):
        return False

    def demodulate(self, samples):
        """Decode one block of interleaved I/Q to mono audio on both channels."""
        envelope = self.demodulator.demodulate(samples)
        if len(envelope):
            envelope = envelope - np.mean(envelope)
        audio = envelope.astype(np.float32)
        return StereoAudio(audio, audio.copy(), False, self.demodulator.has_carrier)

    def reset(self):
        self.demodulator.reset()

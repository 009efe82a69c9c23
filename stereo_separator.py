#!/usr/bin/env python3
"""
Pilot-Locked FM Stereo Separator

Tracks the 19 kHz pilot with a table-driven NCO and uses the tracked phase
to demodulate the 38 kHz L-R subcarrier.

- In-phase / quadrature correlations are smoothed by per-sample EMAs
- Their ratio selects a frequency correction of up to +-40 Hz
- Lock is reported while the smoothed in-phase correlation (the pilot
  amplitude seen through the NCO) stays above a fixed threshold
"""

import logging
from functools import lru_cache

import numpy as np

from dsp import StereoSignal, _ema_alpha_from_tau, validate_rate

try:
    from numba import njit
except Exception:  # pragma: no cover - optional dependency
    njit = None


logger = logging.getLogger(__name__)

# Correction range: corr in [-MAX_CORR, MAX_CORR] maps to +-MAX_CORR*HZ_PER_CORR.
MAX_CORR = 4.0
HZ_PER_CORR = 10.0
# Table resolution in entries per unit of corr (0.01 Hz steps).
TABLE_STEPS_PER_CORR = 1000

IQ_TAU_S = 0.03
LOCK_TAU_S = 0.1
# Lock metric is half the pilot amplitude once tracked; composite units are
# fractions of full deviation, so this accepts pilots down to about 2%.
PILOT_LOCK_THRESHOLD = 0.01


class OscillatorTable:
    """
    Per-sample NCO rotations for frequencies around the pilot.

    Entry k rotates by pilot_freq + (k / TABLE_STEPS_PER_CORR - MAX_CORR) *
    HZ_PER_CORR Hz. Arrays are read-only; one table is shared by every
    separator built for the same (sample_rate, pilot_freq).
    """

    def __init__(self, sample_rate, pilot_freq):
        self.sample_rate = sample_rate
        self.pilot_freq = pilot_freq
        size = int(2 * MAX_CORR * TABLE_STEPS_PER_CORR) + 1
        offsets_hz = (np.arange(size) / TABLE_STEPS_PER_CORR - MAX_CORR) * HZ_PER_CORR
        omega = 2 * np.pi * (pilot_freq + offsets_hz) / sample_rate
        self.sin = np.sin(omega)
        self.cos = np.cos(omega)
        self.sin.setflags(write=False)
        self.cos.setflags(write=False)

    @classmethod
    @lru_cache(maxsize=None)
    def for_rate(cls, sample_rate, pilot_freq):
        return cls(sample_rate, pilot_freq)


def _separate_kernel_python(
    samples,
    out,
    sin_table,
    cos_table,
    sin_t,
    cos_t,
    i_avg,
    q_avg,
    lock_avg,
    iq_alpha,
    lock_alpha,
):
    """Reference separator inner loop (Python)."""
    n = len(samples)
    table_scale = float(TABLE_STEPS_PER_CORR)
    max_corr = MAX_CORR

    for k in range(n):
        x = samples[k]

        # Correlate against the NCO at the current phase
        i_avg += iq_alpha * (x * sin_t - i_avg)
        q_avg += iq_alpha * (x * cos_t - q_avg)

        # 2*sin(2θ) carrier: DSB-SC demod of L-R at unity gain
        out[k] = 4.0 * x * sin_t * cos_t

        if i_avg > 0.0:
            corr = q_avg / i_avg
            if corr > max_corr:
                corr = max_corr
            elif corr < -max_corr:
                corr = -max_corr
        elif q_avg > 0.0:
            corr = max_corr
        elif q_avg < 0.0:
            corr = -max_corr
        else:
            corr = 0.0

        idx = int(np.floor((corr + max_corr) * table_scale + 0.5))
        new_sin = sin_t * cos_table[idx] + cos_t * sin_table[idx]
        cos_t = cos_t * cos_table[idx] - sin_t * sin_table[idx]
        sin_t = new_sin

        lock_avg += lock_alpha * (i_avg - lock_avg)

    return sin_t, cos_t, i_avg, q_avg, lock_avg


_separate_kernel_numba = None
if njit is not None:  # pragma: no branch - one-time configuration
    _separate_kernel_numba = njit(cache=True)(_separate_kernel_python)


_NUMBA_KERNEL_READY = None


def _numba_kernel_available():
    """Return True when the Numba kernel can compile and run."""
    global _NUMBA_KERNEL_READY
    if _separate_kernel_numba is None:
        return False
    if _NUMBA_KERNEL_READY is None:
        try:
            table = np.zeros(int(2 * MAX_CORR * TABLE_STEPS_PER_CORR) + 1)
            x = np.zeros(1, dtype=np.float64)
            _separate_kernel_numba(
                x, np.empty_like(x), table, table, 0.0, 1.0, 0.0, 0.0, 0.0, 0.0, 0.0
            )
            _NUMBA_KERNEL_READY = True
        except Exception:
            logger.warning("Numba separator kernel failed to compile, using Python loop")
            _NUMBA_KERNEL_READY = False
    return _NUMBA_KERNEL_READY


def prewarm():
    """
    Eagerly compile/check the optional Numba kernel.

    Call before streaming to keep JIT latency out of the audio path.
    """
    return _numba_kernel_available()


def _normalize_kernel_mode(value):
    mode = str(value).strip().lower()
    if mode not in {"auto", "python", "numba"}:
        raise ValueError(f"kernel_mode must be one of: auto, python, numba (got '{value}')")
    return mode


class StereoSeparator:
    """
    Extract the L-R signal from a demodulated FM composite.

    One instance per composite stream; NCO phase and averages carry over
    between calls to separate().
    """

    def __init__(self, sample_rate, pilot_freq=19000, kernel_mode="auto"):
        self.sample_rate = validate_rate(sample_rate, "sample_rate")
        self.pilot_freq = validate_rate(pilot_freq, "pilot_freq")
        if 2 * (self.pilot_freq + MAX_CORR * HZ_PER_CORR) >= self.sample_rate / 2:
            raise ValueError(
                f"sample_rate {sample_rate} Hz is too low for a {pilot_freq} Hz pilot"
            )

        mode = _normalize_kernel_mode(kernel_mode)
        if mode == "numba":
            if not _numba_kernel_available():
                raise ValueError("kernel_mode='numba' requested but Numba is unavailable")
            backend = "numba"
        elif mode == "python":
            backend = "python"
        else:
            backend = "numba" if _numba_kernel_available() else "python"
        self._backend = backend
        self._kernel = (
            _separate_kernel_numba if backend == "numba" else _separate_kernel_python
        )
        logger.info("Stereo separator using %s kernel", backend)

        self.table = OscillatorTable.for_rate(self.sample_rate, self.pilot_freq)
        self._iq_alpha = _ema_alpha_from_tau(IQ_TAU_S, 1, self.sample_rate)
        self._lock_alpha = _ema_alpha_from_tau(LOCK_TAU_S, 1, self.sample_rate)
        self.reset()

    @property
    def backend(self):
        """Active loop backend ("python" or "numba")."""
        return self._backend

    @property
    def has_pilot(self):
        """True if the pilot was locked at the end of the last block."""
        return self._has_pilot

    @property
    def pilot_level(self):
        """Smoothed in-phase correlation (half the tracked pilot amplitude)."""
        return self._lock_avg

    @property
    def frequency_offset(self):
        """Current NCO correction in Hz relative to the nominal pilot."""
        if self._i_avg > 0.0:
            corr = float(np.clip(self._q_avg / self._i_avg, -MAX_CORR, MAX_CORR))
        else:
            corr = float(np.sign(self._q_avg)) * MAX_CORR
        return corr * HZ_PER_CORR

    def separate(self, samples):
        """
        Lock onto the pilot and demodulate the stereo difference subcarrier.

        Args:
            samples: FM composite at sample_rate (numpy array)

        Returns:
            StereoSignal with the lock flag and the unfiltered L-R signal
        """
        samples = np.asarray(samples, dtype=np.float64)
        out = np.empty_like(samples)
        sin_t, cos_t, i_avg, q_avg, lock_avg = self._kernel(
            samples,
            out,
            self.table.sin,
            self.table.cos,
            self._sin,
            self._cos,
            self._i_avg,
            self._q_avg,
            self._lock_avg,
            self._iq_alpha,
            self._lock_alpha,
        )

        # Keep the NCO on the unit circle
        norm = np.hypot(sin_t, cos_t)
        if norm > 0.0:
            sin_t /= norm
            cos_t /= norm
        else:
            sin_t, cos_t = 0.0, 1.0

        self._sin = sin_t
        self._cos = cos_t
        self._i_avg = i_avg
        self._q_avg = q_avg
        self._lock_avg = lock_avg

        locked = lock_avg > PILOT_LOCK_THRESHOLD
        if locked != self._has_pilot:
            logger.debug("Pilot %s (level %.4f)", "locked" if locked else "lost", lock_avg)
        self._has_pilot = locked
        return StereoSignal(locked, out)

    def reset(self):
        """Reset NCO and averages (call when changing frequency)."""
        self._sin = 0.0
        self._cos = 1.0
        self._i_avg = 0.0
        self._q_avg = 0.0
        self._lock_avg = 0.0
        self._has_pilot = False

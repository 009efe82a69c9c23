#!/usr/bin/env python3
"""
Stereo separator tests: pilot acquisition, loss of lock, L-R recovery.

The composite is built directly at the separator rate:
    x = M + D * sin(2φ) + pilot * sin(φ),  φ = 2π·19 kHz·t + phase
"""

import os
import sys

import numpy as np
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), '..'))

from stereo_separator import OscillatorTable, StereoSeparator

FS = 240000
BLOCK = 24000


def composite(duration_s, pilot_level=0.09, diff=0.0, mono_amp=0.3,
              pilot_phase=0.7, noise=0.0, seed=7):
    n = int(duration_s * FS)
    t = np.arange(n) / FS
    phi = 2 * np.pi * 19000 * t + pilot_phase
    x = mono_amp * np.sin(2 * np.pi * 1000 * t) + diff * np.sin(2 * phi)
    x = x + pilot_level * np.sin(phi)
    if noise > 0:
        x = x + np.random.default_rng(seed).normal(0.0, noise, n)
    return x


def run_blocks(separator, x, block=BLOCK):
    return [separator.separate(x[i:i + block]) for i in range(0, len(x), block)]


def test_locks_onto_pilot():
    sep = StereoSeparator(FS, 19000, kernel_mode="python")
    assert not sep.has_pilot
    results = run_blocks(sep, composite(1.5))
    flags = [r.has_pilot for r in results]
    assert all(flags[-5:])
    assert sep.has_pilot
    assert abs(sep.frequency_offset) < 2.0
    # Tracked level is half the pilot amplitude
    assert sep.pilot_level == pytest.approx(0.045, abs=0.005)


def test_no_pilot_never_locks():
    sep = StereoSeparator(FS, 19000, kernel_mode="python")
    results = run_blocks(sep, composite(1.0, pilot_level=0.0, diff=0.2, noise=0.05))
    assert not any(r.has_pilot for r in results)


def test_silence_never_locks():
    sep = StereoSeparator(FS, 19000, kernel_mode="python")
    result = sep.separate(np.zeros(BLOCK))
    assert not result.has_pilot
    assert np.all(result.diff == 0.0)


def test_difference_signal_recovered():
    sep = StereoSeparator(FS, 19000, kernel_mode="python")
    results = run_blocks(sep, composite(1.5, diff=0.2, mono_amp=0.0))
    last = results[-1]
    assert last.has_pilot
    assert len(last.diff) == BLOCK
    # 2·D·sin²(2φ) averages to D once the NCO is in phase
    assert float(np.mean(last.diff)) == pytest.approx(0.2, abs=0.01)


def test_lock_is_lost_gradually():
    sep = StereoSeparator(FS, 19000, kernel_mode="python")
    run_blocks(sep, composite(1.5))
    assert sep.has_pilot

    # A short dropout does not drop lock
    assert sep.separate(np.zeros(2400)).has_pilot

    results = run_blocks(sep, np.zeros(int(0.6 * FS)))
    assert not results[-1].has_pilot


def test_separators_do_not_share_state():
    a = StereoSeparator(FS, 19000, kernel_mode="python")
    b = StereoSeparator(FS, 19000, kernel_mode="python")
    x = composite(1.5)
    for i in range(0, len(x), BLOCK):
        a.separate(x[i:i + BLOCK])
        b.separate(np.zeros(BLOCK))
    assert a.has_pilot
    assert not b.has_pilot
    assert a.table is b.table


def test_oscillator_table_is_read_only():
    table = OscillatorTable.for_rate(float(FS), 19000.0)
    assert len(table.sin) == len(table.cos) == 8001
    assert not table.sin.flags.writeable
    center = len(table.sin) // 2
    assert table.sin[center] == pytest.approx(np.sin(2 * np.pi * 19000 / FS))
    assert OscillatorTable.for_rate(float(FS), 19000.0) is table
    assert OscillatorTable.for_rate(float(FS), 19500.0) is not table


def test_rejects_bad_configuration():
    with pytest.raises(ValueError):
        StereoSeparator(48000, 19000)
    with pytest.raises(ValueError):
        StereoSeparator(FS, 0)
    with pytest.raises(ValueError):
        StereoSeparator(FS, 19000, kernel_mode="gpu")


def test_reset_unlocks():
    sep = StereoSeparator(FS, 19000, kernel_mode="python")
    run_blocks(sep, composite(1.5))
    sep.reset()
    assert not sep.has_pilot
    assert sep.pilot_level == 0.0


def test_numba_kernel_matches_python():
    pytest.importorskip("numba")
    from stereo_separator import prewarm
    if not prewarm():
        pytest.skip("Numba kernel unavailable")
    x = composite(0.3, diff=0.2)
    ref = StereoSeparator(FS, 19000, kernel_mode="python")
    fast = StereoSeparator(FS, 19000, kernel_mode="numba")
    assert fast.backend == "numba"
    for i in range(0, len(x), BLOCK):
        r = ref.separate(x[i:i + BLOCK])
        f = fast.separate(x[i:i + BLOCK])
        assert r.has_pilot == f.has_pilot
        assert np.allclose(r.diff, f.diff, atol=1e-6)

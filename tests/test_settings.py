#!/usr/bin/env python3
"""Unit tests for settings loading, saving and decoder construction."""

import os
import sys

import numpy as np
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), '..'))

from demodulator import AMDecoder, FMStereoDecoder, NBFMDecoder
from settings import (
    ReceiverSettings,
    deemphasis_for_region,
    load_settings,
    make_decoder,
    save_settings,
)


def test_defaults_without_file():
    settings = load_settings(None, environ={})
    assert settings == ReceiverSettings()
    assert settings.mode == "wbfm"
    assert settings.stereo


def test_missing_file_keeps_defaults(tmp_path):
    settings = load_settings(str(tmp_path / "nope.cfg"), environ={})
    assert settings == ReceiverSettings()


def test_round_trip(tmp_path):
    path = str(tmp_path / "rx.cfg")
    original = ReceiverSettings(mode="nbfm", region="NA", in_rate=250000,
                                out_rate=44100, stereo=False, kernel_mode="python",
                                sample_format="s16", block_size=4096)
    save_settings(original, path)
    assert load_settings(path, environ={}) == original


def test_invalid_values_are_ignored(tmp_path):
    path = tmp_path / "rx.cfg"
    path.write_text(
        "[radio]\n"
        "mode = ssb\n"
        "in_rate = fast\n"
        "region = na\n"
        "block_size = -5\n"
        "[audio]\n"
        "out_rate = 32000\n"
        "stereo = maybe\n"
    )
    settings = load_settings(str(path), environ={})
    assert settings.mode == "wbfm"
    assert settings.in_rate == 1024000
    assert settings.region == "NA"
    assert settings.block_size == 65536
    assert settings.out_rate == 32000
    assert settings.stereo


def test_unparseable_file_keeps_defaults(tmp_path):
    path = tmp_path / "rx.cfg"
    path.write_text("this is not an ini file\n")
    assert load_settings(str(path), environ={}) == ReceiverSettings()


def test_environment_overrides_file(tmp_path):
    path = str(tmp_path / "rx.cfg")
    save_settings(ReceiverSettings(mode="am", region="WW"), path)
    settings = load_settings(path, environ={
        'RXDSP_MODE': 'NBFM',
        'RXDSP_REGION': 'jp',
        'RXDSP_KERNEL_MODE': 'bogus',
    })
    assert settings.mode == "nbfm"
    assert settings.region == "JP"
    assert settings.kernel_mode == "auto"


def test_deemphasis_for_region():
    assert deemphasis_for_region("NA") == 75
    assert deemphasis_for_region("ww") == 50
    assert deemphasis_for_region("JP") == 50
    with pytest.raises(ValueError):
        deemphasis_for_region("XX")


def test_make_decoder_wbfm_uses_region_deemphasis():
    settings = ReceiverSettings(region="NA", kernel_mode="python")
    decoder = make_decoder(settings)
    assert isinstance(decoder, FMStereoDecoder)
    assert decoder.inter_rate == 336000
    assert not decoder.force_mono
    expected = np.exp(-1.0 / (75e-6 * settings.out_rate))
    assert decoder.left_deemph.a[1] == pytest.approx(-expected)


def test_make_decoder_mono_and_other_modes():
    decoder = make_decoder(ReceiverSettings(stereo=False, kernel_mode="python"))
    assert decoder.force_mono
    assert isinstance(make_decoder(ReceiverSettings(mode="nbfm", in_rate=240000)), NBFMDecoder)
    assert isinstance(make_decoder(ReceiverSettings(mode="am", in_rate=240000)), AMDecoder)


def test_make_decoder_rejects_unknown_mode():
    with pytest.raises(ValueError):
        make_decoder(ReceiverSettings(mode="ssb"))

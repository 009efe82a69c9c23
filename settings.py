#!/usr/bin/env python3
"""
Receiver settings: INI file plus environment overrides.

    [radio]
    mode = wbfm            ; wbfm | nbfm | am
    region = WW            ; WW | NA | JP (selects de-emphasis)
    in_rate = 1024000
    sample_format = u8     ; u8 | s16
    block_size = 65536
    kernel_mode = auto     ; auto | python | numba

    [audio]
    out_rate = 48000
    stereo = true

Environment variables RXDSP_MODE, RXDSP_REGION and RXDSP_KERNEL_MODE win
over the file.
"""

import configparser
import logging
import os
from dataclasses import dataclass

from demodulator import AMDecoder, FMStereoDecoder, NBFMDecoder


logger = logging.getLogger(__name__)

MODES = ("wbfm", "nbfm", "am")
SAMPLE_FORMATS = ("u8", "s16")
KERNEL_MODES = ("auto", "python", "numba")

# De-emphasis time constants (us) by broadcast region.
DEEMPHASIS_US = {
    'WW': 50,
    'NA': 75,
    'JP': 50,
}

ENV_OVERRIDES = {
    'RXDSP_MODE': 'mode',
    'RXDSP_REGION': 'region',
    'RXDSP_KERNEL_MODE': 'kernel_mode',
}


@dataclass
class ReceiverSettings:
    mode: str = "wbfm"
    region: str = "WW"
    in_rate: int = 1024000
    out_rate: int = 48000
    stereo: bool = True
    kernel_mode: str = "auto"
    sample_format: str = "u8"
    block_size: int = 65536


def _normalize_choice(value, choices, name):
    text = str(value).strip()
    for choice in choices:
        if text.lower() == choice.lower():
            return choice
    raise ValueError(f"Unknown {name} '{value}' (expected {'|'.join(choices)})")


def deemphasis_for_region(region):
    """Return the de-emphasis time constant in microseconds for a region code."""
    return DEEMPHASIS_US[_normalize_choice(region, tuple(DEEMPHASIS_US), "region")]


def _apply_option(settings, field, raw):
    """Set one field from its text form; invalid values raise ValueError."""
    if field == 'mode':
        settings.mode = _normalize_choice(raw, MODES, "mode")
    elif field == 'region':
        settings.region = _normalize_choice(raw, tuple(DEEMPHASIS_US), "region")
    elif field == 'kernel_mode':
        settings.kernel_mode = _normalize_choice(raw, KERNEL_MODES, "kernel_mode")
    elif field == 'sample_format':
        settings.sample_format = _normalize_choice(raw, SAMPLE_FORMATS, "sample_format")
    elif field in ('in_rate', 'out_rate', 'block_size'):
        value = int(raw)
        if value <= 0:
            raise ValueError(f"{field} must be positive, got {raw}")
        setattr(settings, field, value)


def load_settings(path=None, environ=None):
    """
    Load settings from an INI file and the environment.

    Missing files, sections and options keep their defaults; invalid values
    are skipped with a warning.
    """
    settings = ReceiverSettings()
    environ = os.environ if environ is None else environ

    if path and os.path.exists(path):
        config = configparser.ConfigParser()
        try:
            config.read(path)
            for field in ('mode', 'region', 'in_rate', 'sample_format',
                          'block_size', 'kernel_mode'):
                if config.has_option('radio', field):
                    try:
                        _apply_option(settings, field, config.get('radio', field))
                    except ValueError as e:
                        logger.warning("Ignoring [radio] %s: %s", field, e)
            if config.has_option('audio', 'out_rate'):
                try:
                    _apply_option(settings, 'out_rate', config.get('audio', 'out_rate'))
                except ValueError as e:
                    logger.warning("Ignoring [audio] out_rate: %s", e)
            if config.has_option('audio', 'stereo'):
                try:
                    settings.stereo = config.getboolean('audio', 'stereo')
                except ValueError as e:
                    logger.warning("Ignoring [audio] stereo: %s", e)
        except configparser.Error as e:
            logger.warning("Ignoring unreadable config %s: %s", path, e)

    for var, field in ENV_OVERRIDES.items():
        if var in environ:
            try:
                _apply_option(settings, field, environ[var])
            except ValueError as e:
                logger.warning("Ignoring %s: %s", var, e)

    return settings


def save_settings(settings, path):
    """Write settings to an INI file."""
    config = configparser.ConfigParser()
    config['radio'] = {
        'mode': settings.mode,
        'region': settings.region,
        'in_rate': str(settings.in_rate),
        'sample_format': settings.sample_format,
        'block_size': str(settings.block_size),
        'kernel_mode': settings.kernel_mode,
    }
    config['audio'] = {
        'out_rate': str(settings.out_rate),
        'stereo': str(settings.stereo).lower(),
    }
    with open(path, 'w') as f:
        config.write(f)


def make_decoder(settings):
    """Build the decoder for settings.mode."""
    if settings.mode == "wbfm":
        inter_rate = min(336000, settings.in_rate)
        return FMStereoDecoder(
            settings.in_rate,
            settings.out_rate,
            inter_rate=inter_rate,
            deemphasis_us=deemphasis_for_region(settings.region),
            force_mono=not settings.stereo,
            kernel_mode=settings.kernel_mode,
        )
    if settings.mode == "nbfm":
        return NBFMDecoder(settings.in_rate, settings.out_rate)
    if settings.mode == "am":
        return AMDecoder(settings.in_rate, settings.out_rate)
    raise ValueError(f"Unknown mode '{settings.mode}'")

#!/usr/bin/env python3
"""
rxdemod - demodulate a raw I/Q capture to a WAV file

Reads interleaved I/Q (unsigned 8-bit as from RTL tuners, or signed 16-bit)
in blocks, runs the configured decoder and writes 16-bit stereo WAV.

Usage:
    python rxdemod.py capture.u8 out.wav --in-rate 1024000
    python rxdemod.py capture.s16 out.wav --format s16 --mode nbfm
"""

import argparse
import logging
import sys

import numpy as np
from rich.console import Console
from rich.table import Table
from scipy.io import wavfile

from dsp import samples_from_int16, samples_from_uint8
from settings import (
    DEEMPHASIS_US,
    KERNEL_MODES,
    MODES,
    SAMPLE_FORMATS,
    load_settings,
    make_decoder,
)
from stereo_separator import prewarm


logger = logging.getLogger(__name__)

BYTES_PER_VALUE = {'u8': 1, 's16': 2}


def read_blocks(path, sample_format, block_size):
    """
    Yield float I/Q blocks of up to block_size complex samples.

    A trailing odd value (half an I/Q pair) is dropped.
    """
    width = BYTES_PER_VALUE[sample_format]
    convert = samples_from_uint8 if sample_format == 'u8' else samples_from_int16
    chunk = 2 * block_size * width
    with open(path, 'rb') as f:
        while True:
            data = f.read(chunk)
            if not data:
                break
            n_values = (len(data) // width) & ~1
            if n_values == 0:
                break
            yield convert(data, n_values)


def demodulate_file(input_path, output_path, settings):
    """
    Decode a capture file and write the audio.

    Returns:
        dict with block count, audio sample count and carrier/stereo block counts
    """
    decoder = make_decoder(settings)
    stats = {'blocks': 0, 'samples': 0, 'carrier': 0, 'stereo': 0}
    left_chunks = []
    right_chunks = []
    for block in read_blocks(input_path, settings.sample_format, settings.block_size):
        audio = decoder.demodulate(block)
        left_chunks.append(audio.left)
        right_chunks.append(audio.right)
        stats['blocks'] += 1
        stats['samples'] += len(audio.left)
        stats['carrier'] += int(audio.carrier)
        stats['stereo'] += int(audio.in_stereo)

    if left_chunks:
        pcm = np.column_stack((np.concatenate(left_chunks), np.concatenate(right_chunks)))
    else:
        pcm = np.zeros((0, 2), dtype=np.float32)
    pcm = (np.clip(pcm, -1.0, 1.0) * 32767).astype(np.int16)
    wavfile.write(output_path, int(settings.out_rate), pcm)
    logger.info("Wrote %d samples to %s", len(pcm), output_path)
    return stats


def build_summary(stats, settings):
    """Return a rich Table describing a finished run."""
    blocks = max(stats['blocks'], 1)
    table = Table(title="rxdemod", show_header=False)
    table.add_row("Mode", settings.mode)
    table.add_row("Blocks", str(stats['blocks']))
    table.add_row("Audio", f"{stats['samples'] / settings.out_rate:.2f} s @ {settings.out_rate} Hz")
    table.add_row("Carrier", f"{100.0 * stats['carrier'] / blocks:.0f}% of blocks")
    if settings.mode == "wbfm":
        table.add_row("Stereo", f"{100.0 * stats['stereo'] / blocks:.0f}% of blocks")
    return table


def main(argv=None):
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="rxdemod - demodulate a raw I/Q capture to WAV"
    )
    parser.add_argument("input", help="Raw interleaved I/Q file")
    parser.add_argument("output", help="Output WAV file")
    parser.add_argument("--config", default=None, help="INI settings file")
    parser.add_argument("--format", choices=SAMPLE_FORMATS, dest="sample_format",
                        default=None, help="Sample format (default: config or u8)")
    parser.add_argument("--mode", choices=MODES, default=None,
                        help="Demodulation mode (default: config or wbfm)")
    parser.add_argument("--in-rate", type=int, default=None,
                        help="I/Q sample rate in Hz (default: config or 1024000)")
    parser.add_argument("--out-rate", type=int, default=None,
                        help="Audio sample rate in Hz (default: config or 48000)")
    parser.add_argument("--region", choices=sorted(DEEMPHASIS_US), default=None,
                        help="Broadcast region for de-emphasis")
    parser.add_argument("--kernel-mode", choices=KERNEL_MODES, default=None,
                        help="Stereo separator loop backend")
    parser.add_argument("--mono", action="store_true", help="Disable stereo decoding")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
    )
    console = Console(stderr=True)

    settings = load_settings(args.config)
    for field in ('sample_format', 'mode', 'in_rate', 'out_rate', 'region', 'kernel_mode'):
        value = getattr(args, field)
        if value is not None:
            setattr(settings, field, value)
    if args.mono:
        settings.stereo = False

    if settings.mode == "wbfm" and settings.stereo and settings.kernel_mode != "python":
        prewarm()

    try:
        stats = demodulate_file(args.input, args.output, settings)
    except (OSError, ValueError) as e:
        console.print(f"[red]Error:[/red] {e}")
        return 1

    console.print(build_summary(stats, settings))
    return 0


if __name__ == "__main__":
    sys.exit(main())

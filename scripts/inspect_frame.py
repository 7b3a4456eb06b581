#!/usr/bin/env python3
"""
Inspect Frame Tool
==================

Diagnostic tool for a raw LiDAR frame, either saved to disk or read live
from the shared-memory channel. Reports:
1. Integrity (size, non-finite values, empty frame)
2. Extents in sensor and host space
3. How many points each mode's candidate region admits

Usage:
    python scripts/inspect_frame.py frames/sphere.npy
    python scripts/inspect_frame.py --live
"""

import argparse
import sys
from pathlib import Path

import numpy as np
from rich.console import Console
from rich.table import Table

# Add parent directory to path to import utils
sys.path.append(str(Path(__file__).parent.parent))

from detection.candidates import CandidateSelector
from detection.channel import ChannelUnavailable, FrameChannel, decode_frame
from detection.config import ConfigError, DetectionConfig, Mode, load_config
from detection.process import load_raw_frame
from utils.validation import validate_raw_frame

console = Console()


def region_counts(positions: np.ndarray, config: DetectionConfig) -> dict:
    counts = {}
    for mode in Mode:
        selector = CandidateSelector(config.sphere, config.cylinder, mode)
        admitted = int(selector.admissible(positions).sum())
        counts[mode.value] = (admitted, selector.eval_frame(positions))
    return counts


def read_live(config: DetectionConfig) -> np.ndarray:
    with FrameChannel.from_config(config.channel) as channel:
        channel.poll_changed()
        console.print(f"[blue]Reading slot for flag {channel.current_flag}[/blue]")
        return channel.read_frame()


def main():
    parser = argparse.ArgumentParser(description="Inspect a raw LiDAR frame")
    parser.add_argument("input", nargs="?", help="Frame file (.npy or float32 .bin)")
    parser.add_argument("--live", action="store_true", help="Read the current frame from shared memory")
    parser.add_argument("--config", help="Detection config JSON")
    args = parser.parse_args()

    if not args.input and not args.live:
        parser.error("give a frame file or --live")

    try:
        config = load_config(Path(args.config)) if args.config else DetectionConfig()
    except ConfigError as e:
        console.print(f"[bold red]Invalid config:[/bold red] {e}")
        sys.exit(1)

    channels = config.channel.channels
    try:
        raw = read_live(config) if args.live else load_raw_frame(Path(args.input), channels)
    except (ChannelUnavailable, OSError, ValueError) as e:
        console.print(f"[bold red]Cannot read frame:[/bold red] {e}")
        sys.exit(1)

    point_count = raw.size // channels
    valid, info, errors = validate_raw_frame(raw, point_count, channels)
    for error in errors:
        console.print(f"[yellow]{error}[/yellow]")

    frame = decode_frame(raw, channels)
    positions = frame.positions
    finite = np.isfinite(positions).all(axis=1)

    table = Table(title=f"Frame ({point_count} points)")
    table.add_column("Check", style="blue")
    table.add_column("Value", justify="right")
    table.add_row("Valid", "[green]yes[/green]" if valid else "[red]no[/red]")
    table.add_row("Finite points", str(info.get("finite_points", 0)))
    if finite.any():
        host = positions[finite]
        table.add_row("Host min (x, y, z)", np.array2string(host.min(axis=0), precision=2))
        table.add_row("Host max (x, y, z)", np.array2string(host.max(axis=0), precision=2))
        table.add_row("Max range", f"{info['max_range']:.2f} m")
    table.add_row("Mean intensity", f"{float(np.nanmean(frame.intensity)):.3f}")

    for mode, (admitted, pooled) in region_counts(positions, config).items():
        table.add_row(f"{mode} candidates", f"{admitted} (pool {pooled})")

    console.print(table)


if __name__ == "__main__":
    main()

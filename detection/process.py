"""
Detection CLI

Runs the detection loop against the shared-memory channel, or a single fit
against a frame saved to disk.
"""

import json
from pathlib import Path
from typing import Optional
import numpy as np
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
import typer

from .channel import ChannelUnavailable, FrameChannel
from .config import ConfigError, DetectionConfig, Mode, load_config
from .fitters import CylinderFit, FitOutcome, FitStatus, SphereFit
from .orchestrator import CycleStats, Orchestrator

console = Console()
app = typer.Typer(help="LiDAR sphere / cylinder detection")


def _load(config_path: Optional[Path], mode: Optional[Mode], seed: Optional[int]) -> DetectionConfig:
    try:
        config = load_config(config_path) if config_path else DetectionConfig()
    except ConfigError as e:
        console.print(f"[bold red]Invalid config:[/bold red] {e}")
        raise typer.Exit(1)

    if mode is not None:
        config.initial_mode = mode
    if seed is not None:
        config.seed = seed
    return config


def load_raw_frame(frame_path: Path, channels: int) -> np.ndarray:
    """
    Load a raw sensor frame from .npy or a flat float32 binary dump.

    Returns:
        Flat float32 array
    """
    if frame_path.suffix == ".npy":
        raw = np.load(frame_path)
    else:
        raw = np.fromfile(frame_path, dtype=np.float32)

    raw = np.asarray(raw, dtype=np.float32).reshape(-1)
    if raw.size == 0 or raw.size % channels != 0:
        raise ValueError(f"{frame_path} holds {raw.size} values, not a multiple of {channels} channels")
    return raw


def describe_outcome(outcome: FitOutcome) -> str:
    if not outcome.ok:
        colour = "yellow" if outcome.status is FitStatus.NO_FIT else "red"
        return f"[{colour}]{outcome.mode.value}: {outcome.status.value}[/{colour}] ({outcome.reason})"

    fit = outcome.fit
    if isinstance(fit, SphereFit):
        cx, cy, cz = fit.center
        text = f"center=({cx:.3f}, {cy:.3f}, {cz:.3f}) r={fit.radius:.3f}"
    elif isinstance(fit, CylinderFit):
        px, py, pz = fit.axis_point
        dx, dy, dz = fit.axis_dir
        text = (
            f"axis=({px:.3f}, {py:.3f}, {pz:.3f}) dir=({dx:.2f}, {dy:.2f}, {dz:.2f}) "
            f"r={fit.radius:.3f} plane_inliers={fit.plane.inliers}"
        )
    else:
        text = repr(fit)
    return (
        f"[green]{outcome.mode.value}[/green] {text} "
        f"inliers={fit.inliers} ({outcome.duration * 1000:.0f} ms)"
    )


def stats_table(stats: CycleStats) -> Table:
    table = Table(title="Detection statistics")
    table.add_column("Metric", style="blue")
    table.add_column("Value", justify="right")

    table.add_row("Frames ingested", str(stats.frames_ingested))
    table.add_row("Candidates (last frame)", str(stats.candidates_last))
    for status, count in stats.fits.items():
        table.add_row(f"Fits {status}", str(count))
    table.add_row("Last fit", f"{stats.last_fit_seconds:.3f}s")
    table.add_row("Total fit time", f"{stats.total_fit_seconds:.3f}s")
    return table


@app.command()
def run(
    config_path: Optional[Path] = typer.Option(None, "--config", help="JSON configuration file"),
    mode: Optional[Mode] = typer.Option(None, help="Primitive to fit"),
    max_fits: Optional[int] = typer.Option(None, help="Stop after this many fits"),
    seed: Optional[int] = typer.Option(None, help="Random seed"),
    stats_out: Optional[Path] = typer.Option(None, help="Write statistics JSON here on exit"),
):
    """
    Fit primitives to frames published on the shared-memory channel.

    Opens (or creates) the sync and buffer regions and fits once per
    published frame until interrupted.
    """
    config = _load(config_path, mode, seed)

    try:
        channel = FrameChannel.from_config(config.channel)
    except ChannelUnavailable as e:
        console.print(f"[bold red]Channel unavailable:[/bold red] {e}")
        raise typer.Exit(1)

    console.print(Panel.fit(
        "[bold blue]LiDAR Primitive Detection[/bold blue]\n"
        f"Sync: {config.channel.sync_name}\n"
        f"Buffers: {', '.join('/'.join(pair) for pair in config.channel.buffer_pairs)}\n"
        f"Mode: {config.initial_mode.value}",
        border_style="blue"
    ))

    with Orchestrator(config, channel=channel) as orchestrator:
        try:
            for outcome in orchestrator.run(max_cycles=max_fits):
                console.print(describe_outcome(outcome))
        except KeyboardInterrupt:
            console.print("\n[yellow]Interrupted[/yellow]")

        console.print(stats_table(orchestrator.stats))
        if stats_out:
            stats_out.write_text(json.dumps(orchestrator.stats.to_dict(), indent=2))


@app.command("fit-file")
def fit_file(
    frame_path: Path = typer.Argument(..., help="Raw frame (.npy or float32 .bin)"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="JSON configuration file"),
    mode: Optional[Mode] = typer.Option(None, help="Primitive to fit"),
    seed: Optional[int] = typer.Option(None, help="Random seed"),
    export: Optional[Path] = typer.Option(None, help="Save the marked position buffer (.npy)"),
):
    """Run one fit on a saved frame."""
    config = _load(config_path, mode, seed)

    try:
        raw = load_raw_frame(frame_path, config.channel.channels)
    except (OSError, ValueError) as e:
        console.print(f"[bold red]Cannot read frame:[/bold red] {e}")
        raise typer.Exit(1)

    config.channel.point_count = raw.size // config.channel.channels
    orchestrator = Orchestrator(config)
    orchestrator.ingest(raw)
    console.print(
        f"[blue]{orchestrator.stats.candidates_last}[/blue] candidates "
        f"of {config.channel.point_count} points"
    )

    outcome = orchestrator.fit()
    console.print(Panel.fit(describe_outcome(outcome), border_style="green" if outcome.ok else "yellow"))

    if export:
        export.parent.mkdir(parents=True, exist_ok=True)
        np.save(export, orchestrator.position_buffer.renderer_view())
        console.print(f"[green]Marked positions saved to {export}[/green]")

    if not outcome.ok:
        raise typer.Exit(2)


@app.command("show-config")
def show_config(
    config_path: Optional[Path] = typer.Option(None, "--config", help="JSON configuration file"),
):
    """Print the effective configuration as JSON."""
    config = _load(config_path, None, None)
    console.print_json(config.model_dump_json())


@app.command("modes")
def list_modes():
    """List the supported primitives."""
    modes = [
        (Mode.SPHERE, "4-point RANSAC on an annulus around the sensor"),
        (Mode.CYLINDER, "Ground plane RANSAC, then a cylinder standing on it"),
    ]

    console.print("[bold]Modes:[/bold]\n")
    for mode, desc in modes:
        console.print(f"  [blue]{mode.value}[/blue]: {desc}")


if __name__ == "__main__":
    app()

"""
Detection Orchestrator

Owns one ingestion -> fit cycle: polls the frame channel, uploads the new
frame into the shared position buffer, feeds the candidate selector and runs
the fitter of the active mode. Exposes the last successful fit and the
position buffer to the renderer.
"""

import time
from dataclasses import dataclass, field
from typing import Dict, Optional
import numpy as np
from rich.console import Console

from .backend import ComputeBackend, SharedBuffer
from .candidates import CandidateSelector
from .channel import Frame, FrameChannel, decode_frame
from .config import DetectionConfig, Mode
from .fitters import BestFit, CylinderFitter, FitOutcome, FitStatus, SphereFitter

console = Console()


@dataclass
class CycleStats:
    """Counters collected while the orchestrator runs."""
    frames_ingested: int = 0
    candidates_last: int = 0
    fits: Dict[str, int] = field(default_factory=lambda: {status.value: 0 for status in FitStatus})
    last_fit_seconds: float = 0.0
    total_fit_seconds: float = 0.0

    def record_fit(self, outcome: FitOutcome):
        self.fits[outcome.status.value] += 1
        self.last_fit_seconds = outcome.duration
        self.total_fit_seconds += outcome.duration

    @property
    def fit_count(self) -> int:
        return sum(self.fits.values())

    def to_dict(self) -> Dict:
        return {
            "frames_ingested": self.frames_ingested,
            "candidates_last": self.candidates_last,
            "fits": dict(self.fits),
            "last_fit_seconds": self.last_fit_seconds,
            "total_fit_seconds": self.total_fit_seconds,
        }


@dataclass(frozen=True)
class RenderState:
    """What the renderer needs to draw the current fit."""
    mode: Mode
    parameters: Optional[np.ndarray]
    score: int = 0


class Orchestrator:
    """
    Runs the detection cycle for one channel.

    Args:
        config: Detection configuration
        backend: Compute backend; created from config.backend if omitted
        channel: Frame channel to poll; optional when frames are fed
            through ingest() directly
        rng: Random generator threaded through every fit; seeded from
            config.seed if omitted
    """

    def __init__(
        self,
        config: Optional[DetectionConfig] = None,
        backend: Optional[ComputeBackend] = None,
        channel: Optional[FrameChannel] = None,
        rng: Optional[np.random.Generator] = None
    ):
        self.config = config or DetectionConfig()
        self.backend = backend or ComputeBackend.from_config(self.config.backend)
        self.channel = channel
        self.rng = rng if rng is not None else np.random.default_rng(self.config.seed)

        point_count = self.config.channel.point_count
        self.position_buffer: SharedBuffer = self.backend.create_shared("positions", (point_count, 4))

        self.selector = CandidateSelector(
            self.config.sphere,
            self.config.cylinder,
            self.config.initial_mode,
        )
        group_size = self.config.backend.group_size
        self.fitters = {
            Mode.SPHERE: SphereFitter(self.backend, self.config.sphere, group_size),
            Mode.CYLINDER: CylinderFitter(self.backend, self.config.cylinder, group_size),
        }

        self.frame: Optional[Frame] = None
        self.last_fit: Optional[BestFit] = None
        self.last_outcome: Optional[FitOutcome] = None
        self.stats = CycleStats()

    @property
    def mode(self) -> Mode:
        return self.selector.mode

    def set_mode(self, mode: Mode):
        """Switch the primitive being fitted. Clears the pool and the last fit."""
        mode = Mode(mode)
        if mode is self.mode:
            return
        self.selector.set_mode(mode)
        self.last_fit = None
        console.print(f"[blue]Mode:[/blue] {mode.value}")

    def change_mode(self) -> Mode:
        """Toggle between sphere and cylinder."""
        self.set_mode(Mode.CYLINDER if self.mode is Mode.SPHERE else Mode.SPHERE)
        return self.mode

    def update(self) -> bool:
        """
        Poll the channel and ingest a frame if the producer published one.

        Returns:
            True if a new frame was ingested
        """
        if self.channel is None or not self.channel.poll_changed():
            return False
        self.ingest(self.channel.read_frame())
        return True

    def ingest(self, raw: np.ndarray) -> Frame:
        """
        Decode a raw frame, upload it for the renderer and collect candidates.

        The scratch channel of the position buffer is reset to zero.
        """
        frame = decode_frame(raw, self.config.channel.channels)
        if frame.point_count != len(self.position_buffer):
            raise ValueError(
                f"Frame has {frame.point_count} points, expected {len(self.position_buffer)}"
            )

        upload = np.zeros((frame.point_count, 4), dtype=np.float32)
        upload[:, :3] = frame.positions
        self.position_buffer.renderer_write(upload)

        self.selector.eval_frame(frame.positions)
        self.frame = frame
        self.stats.frames_ingested += 1
        self.stats.candidates_last = len(self.selector.pool)
        return frame

    def fit(self) -> FitOutcome:
        """
        Run the active fitter on the current pool.

        A failed or empty fit keeps the previous result for display.
        """
        fitter = self.fitters[self.mode]
        outcome = fitter.fit(self.selector.pool, self.position_buffer, self.rng)
        self.stats.record_fit(outcome)
        self.last_outcome = outcome

        if outcome.ok:
            self.last_fit = outcome.fit
        elif outcome.status is FitStatus.FAILED:
            console.print(f"[yellow]Fit failed, keeping previous result:[/yellow] {outcome.reason}")
        return outcome

    def step(self) -> Optional[FitOutcome]:
        """One cycle: update, then fit if a new frame arrived."""
        if not self.update():
            return None
        return self.fit()

    def run(self, max_cycles: Optional[int] = None, poll_interval: float = 0.001):
        """Cycle until max_cycles fits have run (forever if None)."""
        fits = 0
        while max_cycles is None or fits < max_cycles:
            outcome = self.step()
            if outcome is None:
                time.sleep(poll_interval)
                continue
            fits += 1
            yield outcome

    def render_state(self) -> RenderState:
        if self.last_fit is None:
            return RenderState(mode=self.mode, parameters=None)
        return RenderState(
            mode=self.last_fit.mode,
            parameters=self.last_fit.as_vector(),
            score=self.last_fit.inliers,
        )

    def close(self):
        if self.channel is not None:
            self.channel.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

"""
Primitive Fitters

One RANSAC round per call, executed on the compute backend:

1. draw K minimal samples from the candidate pool
2. generate one hypothesis per sample (one lane each)
3. score every hypothesis against every point (K x N lanes)
4. reduce to the best-scoring hypothesis
5. mark the best hypothesis' inliers in the shared position buffer

The sphere variant runs this once. The cylinder variant runs it twice: a
plane stage that finds the ground, and a cylinder stage whose axis stands on
that plane.
"""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple, Union
import numpy as np
from rich.console import Console

from .backend import BackendError, ComputeBackend, SharedBuffer
from .candidates import CandidatePool
from .config import CylinderConfig, Mode, SphereConfig
from .kernels import MARK_PLANE
from .reduction import DEFAULT_GROUP_SIZE, reduce_max
from utils.geometry import planar_distance

console = Console()


class FitStatus(str, Enum):
    OK = "ok"
    NO_FIT = "no_fit"      # not enough candidates, or no hypothesis had inliers
    FAILED = "failed"      # backend error, retry next cycle


@dataclass(frozen=True)
class SphereFit:
    center: np.ndarray
    radius: float
    inliers: int
    lane: int

    mode = Mode.SPHERE

    def as_vector(self) -> np.ndarray:
        return np.array([*self.center, self.radius], dtype=np.float32)


@dataclass(frozen=True)
class PlaneFit:
    point: np.ndarray
    normal: np.ndarray
    inliers: int
    lane: int


@dataclass(frozen=True)
class CylinderFit:
    axis_point: np.ndarray
    axis_dir: np.ndarray
    radius: float
    inliers: int
    lane: int
    plane: PlaneFit

    mode = Mode.CYLINDER

    def as_vector(self) -> np.ndarray:
        return np.array([*self.axis_point, *self.axis_dir, self.radius], dtype=np.float32)


BestFit = Union[SphereFit, CylinderFit]


@dataclass(frozen=True)
class FitOutcome:
    """Result of one fit attempt. Failures are values, not exceptions."""
    mode: Mode
    status: FitStatus
    fit: Optional[BestFit] = None
    reason: str = ""
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status is FitStatus.OK

    @classmethod
    def success(cls, fit: BestFit, duration: float = 0.0) -> "FitOutcome":
        return cls(fit.mode, FitStatus.OK, fit=fit, duration=duration)

    @classmethod
    def no_fit(cls, mode: Mode, reason: str, duration: float = 0.0) -> "FitOutcome":
        return cls(mode, FitStatus.NO_FIT, reason=reason, duration=duration)

    @classmethod
    def failed(cls, mode: Mode, reason: str, duration: float = 0.0) -> "FitOutcome":
        return cls(mode, FitStatus.FAILED, reason=reason, duration=duration)


class InsufficientCandidates(Exception):
    """Fewer points than a minimal sample needs."""
    pass


def short_pool(pool_size: int, sample_size: int) -> str:
    return f"{pool_size} candidates available, minimal sample needs {sample_size}"


def draw_minimal_samples(
    rng: np.random.Generator,
    pool_size: int,
    sample_size: int,
    count: int
) -> np.ndarray:
    """
    Draw `count` samples of `sample_size` distinct indices in [0, pool_size).

    Columns are filled left to right; a value that repeats an earlier column
    of its row is redrawn until it does not.

    Returns:
        int32 array of shape (count, sample_size)
    """
    if pool_size < sample_size:
        raise InsufficientCandidates(short_pool(pool_size, sample_size))

    samples = rng.integers(0, pool_size, size=(count, sample_size))
    for col in range(1, sample_size):
        while True:
            clash = (samples[:, col:col + 1] == samples[:, :col]).any(axis=1)
            redraw = int(clash.sum())
            if redraw == 0:
                break
            samples[clash, col] = rng.integers(0, pool_size, size=redraw)
    return samples.astype(np.int32)


class SphereFitter:
    """Single-stage RANSAC for a sphere (minimal sample of 4 points)."""

    SAMPLE_SIZE = 4

    def __init__(
        self,
        backend: ComputeBackend,
        config: Optional[SphereConfig] = None,
        group_size: int = DEFAULT_GROUP_SIZE
    ):
        self.backend = backend
        self.config = config or SphereConfig()
        self.group_size = group_size

        iterations = self.config.iterations
        self.samples = backend.create_buffer("sphere_samples", (iterations, self.SAMPLE_SIZE), np.int32)
        self.spheres = backend.create_buffer("spheres", (iterations, 4), np.float32)
        self.inliers = backend.create_buffer("sphere_inliers", (iterations,), np.int32)
        self.candidates = backend.create_buffer("sphere_candidates", (self.config.capacity, 4), np.float32)

    def fit(
        self,
        pool: CandidatePool,
        positions: SharedBuffer,
        rng: np.random.Generator
    ) -> FitOutcome:
        """
        Run one round against the current pool and frame.

        The pool is cleared whatever the outcome.
        """
        start = time.time()
        try:
            return self._fit(pool, positions, rng, start)
        except BackendError as e:
            console.print(f"[red]Sphere fit failed:[/red] {e}")
            return FitOutcome.failed(Mode.SPHERE, str(e), time.time() - start)
        finally:
            pool.clear()

    def _fit(self, pool, positions, rng, start) -> FitOutcome:
        config = self.config
        iterations = config.iterations
        backend = self.backend
        point_count = len(positions)

        if len(pool) < self.SAMPLE_SIZE:
            return FitOutcome.no_fit(Mode.SPHERE, short_pool(len(pool), self.SAMPLE_SIZE), time.time() - start)

        samples = draw_minimal_samples(rng, len(pool), self.SAMPLE_SIZE, iterations)

        backend.write_buffer(self.inliers, np.zeros(iterations, dtype=np.int32))
        backend.write_buffer(self.samples, samples)
        backend.write_buffer(self.candidates, pool.points)
        backend.finish()

        with backend.shared(positions):
            backend.dispatch(
                "calc_sphere",
                iterations,
                [self.candidates, self.samples, self.spheres, config.max_radius],
            )
            backend.finish()

            backend.dispatch(
                "fit_sphere",
                (iterations, point_count),
                [positions, self.spheres, self.inliers, config.epsilon],
            )
            backend.finish()

            best = reduce_max(backend, self.inliers, [self.spheres], iterations, self.group_size)

            backend.dispatch("fill_sphere", point_count, [positions, self.spheres, config.epsilon])
            backend.finish()

        sphere = backend.read_buffer(self.spheres, rows=1)[0].astype(np.float64)
        duration = time.time() - start

        if best.score < config.min_inliers:
            return FitOutcome.no_fit(
                Mode.SPHERE, f"best sphere has {best.score} inliers", duration
            )

        fit = SphereFit(center=sphere[:3], radius=float(sphere[3]), inliers=best.score, lane=best.lane)
        return FitOutcome.success(fit, duration)


class CylinderFitter:
    """
    Two-stage RANSAC for a cylinder standing on a plane.

    Stage A fits the plane from the candidate pool (minimal sample of 3
    frame points). The frame is then split into points on that plane and
    close points off it. Stage B samples 3 plane points, builds the circle
    through them on the plane and scores the resulting cylinder (axis along
    the plane normal) against the close points.
    """

    SAMPLE_SIZE = 3

    def __init__(
        self,
        backend: ComputeBackend,
        config: Optional[CylinderConfig] = None,
        group_size: int = DEFAULT_GROUP_SIZE
    ):
        self.backend = backend
        self.config = config or CylinderConfig()
        self.group_size = group_size

        plane_iterations = self.config.plane_iterations
        self.plane_samples = backend.create_buffer("plane_samples", (plane_iterations, 3), np.int32)
        self.plane_points = backend.create_buffer("plane_points", (plane_iterations, 4), np.float32)
        self.plane_normals = backend.create_buffer("plane_normals", (plane_iterations, 4), np.float32)
        self.plane_inliers = backend.create_buffer("plane_inliers", (plane_iterations,), np.int32)

        cylinder_iterations = self.config.cylinder_iterations
        self.cylinder_samples = backend.create_buffer("cylinder_samples", (cylinder_iterations, 3), np.int32)
        self.cylinders = backend.create_buffer("cylinders", (cylinder_iterations, 4), np.float32)
        self.cylinder_inliers = backend.create_buffer("cylinder_inliers", (cylinder_iterations,), np.int32)

    def fit(
        self,
        pool: CandidatePool,
        positions: SharedBuffer,
        rng: np.random.Generator
    ) -> FitOutcome:
        """Run both stages. The pool is cleared whatever the outcome."""
        start = time.time()
        try:
            return self._fit(pool, positions, rng, start)
        except BackendError as e:
            console.print(f"[red]Cylinder fit failed:[/red] {e}")
            return FitOutcome.failed(Mode.CYLINDER, str(e), time.time() - start)
        finally:
            pool.clear()

    def split_frame(self, cloud: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """
        Split marked frame rows into (plane_points, close_points).

        Only points inside the close region are kept. Rows marked as plane
        inliers go to plane_points, the rest to close_points.
        """
        config = self.config
        dist = planar_distance(cloud[:, :3])
        with np.errstate(invalid='ignore'):
            near = (
                (dist > config.close_min_radius)
                & (dist < config.close_max_radius)
                & (cloud[:, 1] < config.close_max_height)
            )
        on_plane = cloud[:, 3] == MARK_PLANE
        return cloud[near & on_plane], cloud[near & ~on_plane]

    def _fit(self, pool, positions, rng, start) -> FitOutcome:
        config = self.config
        backend = self.backend
        point_count = len(positions)
        plane_iterations = config.plane_iterations

        if len(pool) < self.SAMPLE_SIZE:
            return FitOutcome.no_fit(Mode.CYLINDER, short_pool(len(pool), self.SAMPLE_SIZE), time.time() - start)

        # Pool entries -> frame indices
        picks = draw_minimal_samples(rng, len(pool), self.SAMPLE_SIZE, plane_iterations)
        plane_samples = pool.indices[picks]

        backend.write_buffer(self.plane_inliers, np.zeros(plane_iterations, dtype=np.int32))
        backend.write_buffer(self.plane_samples, plane_samples)
        backend.finish()

        with backend.shared(positions):
            # Stage A: plane
            backend.dispatch(
                "calc_plane",
                plane_iterations,
                [positions, self.plane_samples, self.plane_points, self.plane_normals],
            )
            backend.finish()

            backend.dispatch(
                "fit_plane",
                (plane_iterations, point_count),
                [positions, self.plane_points, self.plane_normals, self.plane_inliers, config.plane_epsilon],
            )
            backend.finish()

            best_plane = reduce_max(
                backend,
                self.plane_inliers,
                [self.plane_points, self.plane_normals],
                plane_iterations,
                self.group_size,
            )

            backend.dispatch(
                "fill_plane",
                point_count,
                [positions, self.plane_points, self.plane_normals, config.plane_epsilon],
            )
            backend.finish()

            # Projection
            cloud = backend.read_buffer(positions)
            on_plane, close = self.split_frame(cloud)
            if len(on_plane) < self.SAMPLE_SIZE:
                missing = (
                    f"{len(on_plane)} plane points in the close region, "
                    f"minimal sample needs {self.SAMPLE_SIZE}"
                )
            elif config.score_target == "close" and len(close) == 0:
                missing = "no close points off the plane to score cylinders against"
            else:
                missing = None
                best_cylinder = self._fit_cylinders(positions, on_plane, close, rng)

        if missing is not None:
            return FitOutcome.no_fit(Mode.CYLINDER, missing, time.time() - start)

        plane_row = backend.read_buffer(self.plane_points, rows=1)[0].astype(np.float64)
        normal_row = backend.read_buffer(self.plane_normals, rows=1)[0].astype(np.float64)
        cylinder_row = backend.read_buffer(self.cylinders, rows=1)[0].astype(np.float64)
        duration = time.time() - start

        if best_cylinder.score < config.min_inliers:
            return FitOutcome.no_fit(
                Mode.CYLINDER, f"best cylinder has {best_cylinder.score} inliers", duration
            )

        plane = PlaneFit(
            point=plane_row[:3],
            normal=normal_row[:3],
            inliers=best_plane.score,
            lane=best_plane.lane,
        )
        fit = CylinderFit(
            axis_point=cylinder_row[:3],
            axis_dir=normal_row[:3],
            radius=float(cylinder_row[3]),
            inliers=best_cylinder.score,
            lane=best_cylinder.lane,
            plane=plane,
        )
        return FitOutcome.success(fit, duration)

    def _fit_cylinders(self, positions, on_plane, close, rng):
        """Stage B, run while the position buffer is held for compute."""
        config = self.config
        backend = self.backend
        point_count = len(positions)
        cylinder_iterations = config.cylinder_iterations

        if config.score_target == "frame":
            score_points = positions
            score_count = point_count
        else:
            score_points = backend.create_buffer("close_points", close.shape, np.float32)
            backend.write_buffer(score_points, close)
            score_count = len(close)

        picks = draw_minimal_samples(rng, len(on_plane), self.SAMPLE_SIZE, cylinder_iterations)
        plane_pts = backend.create_buffer("cylinder_plane_points", on_plane.shape, np.float32)

        backend.write_buffer(self.cylinder_inliers, np.zeros(cylinder_iterations, dtype=np.int32))
        backend.write_buffer(self.cylinder_samples, picks)
        backend.write_buffer(plane_pts, on_plane)
        backend.finish()

        backend.dispatch(
            "calc_cylinder",
            cylinder_iterations,
            [self.cylinder_samples, plane_pts, self.plane_points, self.plane_normals, self.cylinders],
        )
        backend.finish()

        backend.dispatch(
            "fit_cylinder",
            (cylinder_iterations, score_count),
            [score_points, self.cylinders, self.plane_normals, self.cylinder_inliers, config.cylinder_epsilon],
        )
        backend.finish()

        best = reduce_max(
            backend, self.cylinder_inliers, [self.cylinders], cylinder_iterations, self.group_size
        )

        backend.dispatch(
            "fill_cylinder",
            point_count,
            [positions, self.cylinders, self.plane_normals, config.cylinder_epsilon],
        )
        backend.finish()
        return best

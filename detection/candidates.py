"""
Candidate Selection

Mode-specific geometric prefilter that reduces a frame to a bounded pool of
points that plausibly belong to the target primitive.
"""

from typing import Dict, Optional
import numpy as np

from utils.geometry import planar_distance
from .config import CylinderConfig, Mode, SphereConfig


class CandidatePool:
    """Bounded pool of admitted points: frame index plus a copy of the position."""

    def __init__(self, capacity: int):
        if capacity <= 0:
            raise ValueError(f"Pool capacity must be positive, got {capacity}")
        self.capacity = capacity
        self._indices = np.empty(capacity, dtype=np.int32)
        self._points = np.empty((capacity, 4), dtype=np.float32)
        self._size = 0

    def __len__(self) -> int:
        return self._size

    @property
    def is_full(self) -> bool:
        return self._size >= self.capacity

    @property
    def indices(self) -> np.ndarray:
        return self._indices[:self._size]

    @property
    def points(self) -> np.ndarray:
        """Admitted points as float4 rows (w = 0)."""
        return self._points[:self._size]

    def append(self, point: np.ndarray, index: int) -> bool:
        if self.is_full:
            return False
        self._indices[self._size] = index
        self._points[self._size, :3] = point[:3]
        self._points[self._size, 3] = 0.0
        self._size += 1
        return True

    def extend(self, points: np.ndarray, indices: np.ndarray) -> int:
        """Append as many rows as fit; returns the number taken."""
        take = min(len(indices), self.capacity - self._size)
        end = self._size + take
        self._indices[self._size:end] = indices[:take]
        self._points[self._size:end, :3] = points[:take, :3]
        self._points[self._size:end, 3] = 0.0
        self._size = end
        return take

    def clear(self):
        self._size = 0


def sphere_admissible(points: np.ndarray, config: SphereConfig) -> np.ndarray:
    """Annulus around the sensor, optionally restricted to z < max_z."""
    region = config.region
    dist = planar_distance(points)
    with np.errstate(invalid='ignore'):
        mask = (dist > region.min_radius) & (dist < region.max_radius)
        if region.max_z is not None:
            mask &= points[..., 2] < region.max_z
    return mask


def cylinder_admissible(points: np.ndarray, config: CylinderConfig) -> np.ndarray:
    """Points below the configured height (ground and the foot of the cylinder)."""
    with np.errstate(invalid='ignore'):
        return points[..., 1] < config.max_height


class CandidateSelector:
    """
    Evaluates frame points against the active mode's admissible region.

    One pool per mode; switching mode clears the pool of the new mode.
    """

    def __init__(
        self,
        sphere: Optional[SphereConfig] = None,
        cylinder: Optional[CylinderConfig] = None,
        mode: Mode = Mode.SPHERE
    ):
        self.sphere = sphere or SphereConfig()
        self.cylinder = cylinder or CylinderConfig()
        self._pools: Dict[Mode, CandidatePool] = {
            Mode.SPHERE: CandidatePool(self.sphere.capacity),
            Mode.CYLINDER: CandidatePool(self.cylinder.capacity),
        }
        self._mode = mode

    @property
    def mode(self) -> Mode:
        return self._mode

    @property
    def pool(self) -> CandidatePool:
        return self._pools[self._mode]

    def set_mode(self, mode: Mode):
        self._mode = Mode(mode)
        self.pool.clear()

    def admissible(self, points: np.ndarray) -> np.ndarray:
        if self._mode is Mode.SPHERE:
            return sphere_admissible(points, self.sphere)
        return cylinder_admissible(points, self.cylinder)

    def eval_candidate(self, point: np.ndarray, index: int) -> bool:
        """
        Offer one point. Returns True if it was admitted.

        Points outside the region, or arriving after the pool is full, are
        dropped silently.
        """
        point = np.asarray(point, dtype=np.float32)
        if self.pool.is_full or not bool(self.admissible(point[:3])):
            return False
        return self.pool.append(point, index)

    def eval_frame(self, positions: np.ndarray) -> int:
        """
        Offer every point of a frame, in index order.

        Equivalent to calling eval_candidate for each point.

        Returns:
            Number of points admitted
        """
        positions = np.asarray(positions)
        if self.pool.is_full:
            return 0
        indices = np.flatnonzero(self.admissible(positions[:, :3]))
        return self.pool.extend(positions[indices], indices)

    def clear(self):
        self.pool.clear()

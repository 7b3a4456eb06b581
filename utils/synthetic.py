"""
Synthetic LiDAR frames with a known primitive.

Scenes are built in host space (Y up) and converted back to the sensor
layout, so they go through the same decode path as real frames.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional
import numpy as np

from .geometry import (
    host_to_sensor,
    sample_ground_patch,
    sample_sphere_surface,
    sample_vertical_cylinder,
)

GROUND_HEIGHT = -1.5


@dataclass
class SyntheticScene:
    """Host-space points of a scene and the primitive hidden in it."""
    points: np.ndarray                          # (N, 3) host coordinates
    truth: Dict = field(default_factory=dict)

    @property
    def point_count(self) -> int:
        return len(self.points)

    def to_raw(self, rng: Optional[np.random.Generator] = None) -> np.ndarray:
        """Sensor-layout frame: flat float32, 4 channels (x, y, z, intensity)."""
        rng = rng or np.random.default_rng(0)
        raw = np.empty((self.point_count, 4), dtype=np.float32)
        raw[:, :3] = host_to_sensor(self.points)
        raw[:, 3] = rng.uniform(0.0, 1.0, size=self.point_count)
        return raw.reshape(-1)


def sample_background(rng: np.random.Generator, count: int, min_radius: float = 10.0,
                      max_radius: float = 15.0) -> np.ndarray:
    """Far-away clutter, outside every admissible region by default."""
    angles = rng.uniform(0.0, 2.0 * np.pi, size=count)
    radii = rng.uniform(min_radius, max_radius, size=count)
    return np.stack([
        radii * np.cos(angles),
        rng.uniform(1.5, 3.0, size=count),
        radii * np.sin(angles),
    ], axis=1)


def _fill(rng: np.random.Generator, parts, point_count: int) -> np.ndarray:
    points = np.concatenate(parts, axis=0)
    if len(points) > point_count:
        raise ValueError(f"Scene needs {len(points)} points, frame holds {point_count}")
    points = np.concatenate([points, sample_background(rng, point_count - len(points))])
    return points[rng.permutation(point_count)]


def sphere_scene(
    rng: np.random.Generator,
    point_count: int,
    center=(0.0, 0.0, -2.5),
    radius: float = 0.3,
    surface_points: int = 1500,
    ground_points: int = 3000,
    noise: float = 0.002
) -> SyntheticScene:
    """A ball in front of the sensor above a ground patch."""
    center = np.asarray(center, dtype=np.float64)
    surface = sample_sphere_surface(rng, surface_points, center, radius)
    surface += rng.normal(scale=noise, size=surface.shape)
    ground = sample_ground_patch(rng, ground_points, GROUND_HEIGHT, (-8.0, 8.0), (-8.0, 8.0))

    points = _fill(rng, [surface, ground], point_count)
    return SyntheticScene(points, {"mode": "sphere", "center": center.tolist(), "radius": radius})


def cylinder_scene(
    rng: np.random.Generator,
    point_count: int,
    base_center=(5.0, GROUND_HEIGHT, 0.0),
    radius: float = 0.4,
    height: float = 1.2,
    wall_points: int = 1200,
    ring_points: int = 300,
    ground_points: int = 1500,
    noise: float = 0.003
) -> SyntheticScene:
    """
    A post standing on the ground.

    The foot of the post (ring_points on the ground circle) is what the
    cylinder stage samples from; the wall is what it scores against.
    """
    base_center = np.asarray(base_center, dtype=np.float64)
    wall = sample_vertical_cylinder(rng, wall_points, base_center, radius, height, min_offset=0.1)
    wall += rng.normal(scale=noise, size=wall.shape)
    ring = sample_vertical_cylinder(rng, ring_points, base_center, radius, 0.0)
    ring[:, [0, 2]] += rng.normal(scale=noise, size=(ring_points, 2))
    ground = sample_ground_patch(rng, ground_points, base_center[1], (-8.0, 8.0), (-8.0, 8.0))

    points = _fill(rng, [wall, ring, ground], point_count)
    return SyntheticScene(points, {
        "mode": "cylinder",
        "base_center": base_center.tolist(),
        "radius": radius,
        "axis": [0.0, 1.0, 0.0],
    })

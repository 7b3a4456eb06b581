"""Geometry utilities for point-cloud frames and primitive hypotheses."""

import numpy as np
from typing import Tuple, Optional


def sensor_to_host(raw: np.ndarray) -> np.ndarray:
    """
    Convert sensor-space points to host (render) space.

    The sensor reports points as (a, b, c) with Z up.
    Host space is Y up, so a point becomes (a, c, -b).

    Args:
        raw: Array of shape (N, >=3), sensor coordinates in the first 3 columns

    Returns:
        Array of shape (N, 3) in host coordinates
    """
    raw = np.asarray(raw)
    if raw.ndim != 2 or raw.shape[1] < 3:
        raise ValueError(f"Expected (N, >=3) array, got shape {raw.shape}")
    return np.stack([raw[:, 0], raw[:, 2], -raw[:, 1]], axis=1)


def host_to_sensor(points: np.ndarray) -> np.ndarray:
    """Inverse of sensor_to_host: host (x, y, z) -> sensor (x, -z, y)."""
    points = np.asarray(points)
    if points.ndim != 2 or points.shape[1] != 3:
        raise ValueError(f"Expected (N, 3) array, got shape {points.shape}")
    return np.stack([points[:, 0], -points[:, 2], points[:, 1]], axis=1)


def planar_distance(points: np.ndarray) -> np.ndarray:
    """Distance from the vertical (Y) axis through the sensor origin."""
    points = np.asarray(points)
    return np.hypot(points[..., 0], points[..., 2])


# Normalised edge volume below which 4 points count as coplanar
DEGENERATE_TOLERANCE = 1e-4


def spheres_from_quads(quads: np.ndarray, tolerance: float = DEGENERATE_TOLERANCE) -> np.ndarray:
    """
    Solve the sphere through each set of 4 points.

    Taking the first point p0 as origin, with edges e_i = p_i - p0, the
    center offset u = c - p0 satisfies 2 e_i.u = |e_i|^2 for i = 1..3 and
    the radius is |u|. The 3x3 system is solved with Cramer's rule.

    A quad is degenerate when |det(E)| <= tolerance * |e1| |e2| |e3|. The
    ratio is 1 for orthogonal edges and 0 for coplanar ones, whatever the
    scale of the quad or where its plane lies. Degenerate quads get NaN
    parameters.

    Args:
        quads: Array of shape (K, 4, 3)
        tolerance: Normalised volume at or below which a quad is degenerate

    Returns:
        Array of shape (K, 4) holding (cx, cy, cz, r)
    """
    quads = np.asarray(quads, dtype=np.float64)
    if quads.ndim != 3 or quads.shape[1:] != (4, 3):
        raise ValueError(f"Expected (K, 4, 3) array, got shape {quads.shape}")

    origin = quads[:, 0]
    edges = quads[:, 1:] - origin[:, None]
    system = 2.0 * edges
    rhs = np.einsum('kij,kij->ki', edges, edges)

    with np.errstate(invalid='ignore'):
        det = np.linalg.det(system)
        volume = np.prod(np.linalg.norm(system, axis=2), axis=1)
        degenerate = ~(np.abs(det) > tolerance * volume)
        det = np.where(degenerate, 1.0, det)

        offset = np.empty(quads.shape[:1] + (3,), dtype=np.float64)
        for col in range(3):
            replaced = system.copy()
            replaced[:, :, col] = rhs
            offset[:, col] = np.linalg.det(replaced) / det

    result = np.empty(quads.shape[:1] + (4,), dtype=np.float64)
    result[:, :3] = origin + offset
    result[:, 3] = np.linalg.norm(offset, axis=1)
    result[degenerate] = np.nan
    return result


def planes_from_triples(triples: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Plane through each set of 3 points.

    Returns:
        Tuple of (points, unit_normals), each of shape (K, 3).
        Collinear triples produce NaN normals.
    """
    triples = np.asarray(triples, dtype=np.float64)
    if triples.ndim != 3 or triples.shape[1:] != (3, 3):
        raise ValueError(f"Expected (K, 3, 3) array, got shape {triples.shape}")

    p0 = triples[:, 0]
    normal = np.cross(triples[:, 1] - p0, triples[:, 2] - p0)
    norm = np.linalg.norm(normal, axis=1, keepdims=True)
    with np.errstate(divide='ignore', invalid='ignore'):
        normal = np.where(norm > 0, normal / norm, np.nan)
    return p0.copy(), normal


def project_onto_plane(
    points: np.ndarray,
    plane_point: np.ndarray,
    plane_normal: np.ndarray
) -> np.ndarray:
    """Orthogonal projection of points onto a plane (normal must be unit length)."""
    offset = np.asarray(points, dtype=np.float64) - plane_point
    height = offset @ plane_normal
    return np.asarray(points, dtype=np.float64) - height[..., None] * plane_normal


def circles_from_triples(triples: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Circumscribed circle of each triangle.

    Args:
        triples: Array of shape (K, 3, 3)

    Returns:
        Tuple of (centers (K, 3), radii (K,)); collinear triples give NaN
    """
    triples = np.asarray(triples, dtype=np.float64)
    p0 = triples[:, 0]
    a = triples[:, 1] - p0
    b = triples[:, 2] - p0
    axb = np.cross(a, b)
    denom = 2.0 * np.einsum('ki,ki->k', axb, axb)

    numer = (
        np.einsum('ki,ki->k', a, a)[:, None] * np.cross(b, axb)
        + np.einsum('ki,ki->k', b, b)[:, None] * np.cross(axb, a)
    )
    with np.errstate(divide='ignore', invalid='ignore'):
        offset = np.where(denom[:, None] > 0, numer / denom[:, None], np.nan)
    centers = p0 + offset
    radii = np.linalg.norm(offset, axis=1)
    return centers, radii


def distance_to_sphere(points: np.ndarray, center: np.ndarray, radius: float) -> np.ndarray:
    """Unsigned distance of points to a sphere surface."""
    return np.abs(np.linalg.norm(np.asarray(points) - center, axis=-1) - radius)


def distance_to_axis(
    points: np.ndarray,
    axis_point: np.ndarray,
    axis_dir: np.ndarray
) -> np.ndarray:
    """Perpendicular distance of points to an infinite line (axis_dir unit length)."""
    offset = np.asarray(points, dtype=np.float64) - axis_point
    along = offset @ axis_dir
    perpendicular = offset - along[..., None] * axis_dir
    return np.linalg.norm(perpendicular, axis=-1)


# Synthetic scene helpers


def sample_sphere_surface(
    rng: np.random.Generator,
    count: int,
    center: Optional[np.ndarray] = None,
    radius: float = 1.0
) -> np.ndarray:
    """Uniform samples on a sphere surface."""
    center = np.zeros(3) if center is None else np.asarray(center, dtype=np.float64)
    directions = rng.normal(size=(count, 3))
    directions /= np.linalg.norm(directions, axis=1, keepdims=True)
    return center + radius * directions


def sample_vertical_cylinder(
    rng: np.random.Generator,
    count: int,
    base_center: np.ndarray,
    radius: float,
    height: float,
    min_offset: float = 0.0
) -> np.ndarray:
    """
    Samples on the wall of a Y-aligned cylinder standing on base_center.

    Heights are drawn uniformly from [min_offset, height] above the base.
    """
    base_center = np.asarray(base_center, dtype=np.float64)
    angles = rng.uniform(0.0, 2.0 * np.pi, size=count)
    heights = rng.uniform(min_offset, height, size=count)
    return np.stack([
        base_center[0] + radius * np.cos(angles),
        base_center[1] + heights,
        base_center[2] + radius * np.sin(angles),
    ], axis=1)


def sample_ground_patch(
    rng: np.random.Generator,
    count: int,
    height: float,
    x_range: Tuple[float, float],
    z_range: Tuple[float, float]
) -> np.ndarray:
    """Uniform samples on a horizontal rectangle at y = height."""
    return np.stack([
        rng.uniform(*x_range, size=count),
        np.full(count, height),
        rng.uniform(*z_range, size=count),
    ], axis=1)

"""
Accelerator kernels.

Every kernel has the signature ``kernel(ctx, *args)`` where ``ctx.gid`` is an
open grid of lane ids (one broadcastable array per dimension of the launch)
and ``args`` are buffer arrays and scalars. Lanes are independent: each lane
reads its inputs and writes only its own outputs, except for inlier counters
which are accumulated with atomic-add semantics.

Point and hypothesis rows are float4: (x, y, z, w). In the position buffer
the 4th component is scratch space holding the inlier mark of the point.
"""

from typing import Callable, Dict
import numpy as np

from utils.geometry import (
    spheres_from_quads,
    planes_from_triples,
    project_onto_plane,
    circles_from_triples,
)

MARK_NONE = 0.0
MARK_PLANE = 1.0
MARK_PRIMITIVE = 2.0

KERNELS: Dict[str, Callable] = {}


def kernel(kernel_id: str):
    """Register a function in the default kernel table."""
    def register(fn):
        KERNELS[kernel_id] = fn
        return fn
    return register


def _atomic_count(counter: np.ndarray, lane: np.ndarray, hit: np.ndarray):
    """counter[lane] += 1 for every lane pair that hit."""
    rows = np.broadcast_to(lane, hit.shape)[hit]
    counter += np.bincount(rows, minlength=len(counter))[:len(counter)].astype(counter.dtype)


def _columns(points: np.ndarray, index):
    """x, y, z of points[index] as float64 arrays."""
    rows = points[index]
    return (
        rows[..., 0].astype(np.float64),
        rows[..., 1].astype(np.float64),
        rows[..., 2].astype(np.float64),
    )


# Sphere


@kernel("calc_sphere")
def calc_sphere(ctx, candidates, samples, spheres, max_radius):
    """One lane per hypothesis: sphere through 4 sampled candidates.

    Degenerate samples and spheres wider than max_radius get NaN parameters.
    """
    (i,) = ctx.gid
    quads = candidates[samples[i], :3]
    fitted = spheres_from_quads(quads)
    fitted[~(fitted[:, 3] <= max_radius)] = np.nan
    spheres[i] = fitted


@kernel("fit_sphere")
def fit_sphere(ctx, points, spheres, inliers, epsilon):
    """One lane per (hypothesis, point): count points near the sphere surface."""
    i, j = ctx.gid
    px, py, pz = _columns(points, j)
    cx, cy, cz = _columns(spheres, i)
    radius = spheres[i, 3].astype(np.float64)
    with np.errstate(invalid='ignore'):
        dist = np.sqrt((px - cx) ** 2 + (py - cy) ** 2 + (pz - cz) ** 2)
        hit = np.abs(dist - radius) < epsilon
    _atomic_count(inliers, i, hit)


@kernel("fill_sphere")
def fill_sphere(ctx, positions, spheres, epsilon):
    """One lane per point: mark inliers of the best sphere (row 0)."""
    (j,) = ctx.gid
    px, py, pz = _columns(positions, j)
    cx, cy, cz, radius = spheres[0].astype(np.float64)
    with np.errstate(invalid='ignore'):
        dist = np.sqrt((px - cx) ** 2 + (py - cy) ** 2 + (pz - cz) ** 2)
        hit = np.abs(dist - radius) < epsilon
    positions[j, 3] = np.where(hit, MARK_PRIMITIVE, MARK_NONE)


# Plane


@kernel("calc_plane")
def calc_plane(ctx, positions, samples, plane_points, plane_normals):
    """One lane per hypothesis: plane through 3 sampled frame points."""
    (i,) = ctx.gid
    triples = positions[samples[i], :3]
    point, normal = planes_from_triples(triples)
    plane_points[i, :3] = point
    plane_points[i, 3] = 0.0
    plane_normals[i, :3] = normal
    plane_normals[i, 3] = 0.0


def _plane_distance(points, index, plane_points, plane_normals, lane):
    px, py, pz = _columns(points, index)
    ox, oy, oz = _columns(plane_points, lane)
    nx, ny, nz = _columns(plane_normals, lane)
    with np.errstate(invalid='ignore'):
        return np.abs((px - ox) * nx + (py - oy) * ny + (pz - oz) * nz)


@kernel("fit_plane")
def fit_plane(ctx, positions, plane_points, plane_normals, inliers, epsilon):
    """One lane per (hypothesis, point): count points near the plane."""
    i, j = ctx.gid
    dist = _plane_distance(positions, j, plane_points, plane_normals, i)
    with np.errstate(invalid='ignore'):
        hit = dist < epsilon
    _atomic_count(inliers, i, hit)


@kernel("fill_plane")
def fill_plane(ctx, positions, plane_points, plane_normals, epsilon):
    """One lane per point: mark inliers of the best plane (row 0)."""
    (j,) = ctx.gid
    dist = _plane_distance(positions, j, plane_points, plane_normals, np.zeros(1, dtype=np.intp))
    with np.errstate(invalid='ignore'):
        hit = dist < epsilon
    positions[j, 3] = np.where(hit, MARK_PLANE, MARK_NONE)


# Cylinder


@kernel("calc_cylinder")
def calc_cylinder(ctx, samples, plane_pts, plane_points, plane_normals, cylinders):
    """
    One lane per hypothesis: cylinder standing on the best plane.

    The 3 sampled plane points are projected onto the plane; the axis passes
    through the centre of their circumscribed circle along the plane normal.
    """
    (i,) = ctx.gid
    origin = plane_points[0, :3].astype(np.float64)
    normal = plane_normals[0, :3].astype(np.float64)
    triples = project_onto_plane(plane_pts[samples[i], :3], origin, normal)
    centers, radii = circles_from_triples(triples)
    cylinders[i, :3] = centers
    cylinders[i, 3] = radii


def _axis_distance(points, index, cylinders, lane, plane_normals):
    px, py, pz = _columns(points, index)
    cx, cy, cz = _columns(cylinders, lane)
    nx, ny, nz = plane_normals[0, :3].astype(np.float64)
    ox, oy, oz = px - cx, py - cy, pz - cz
    with np.errstate(invalid='ignore'):
        along = ox * nx + oy * ny + oz * nz
        perpendicular_sq = ox * ox + oy * oy + oz * oz - along * along
        return np.sqrt(np.maximum(perpendicular_sq, 0.0))


@kernel("fit_cylinder")
def fit_cylinder(ctx, points, cylinders, plane_normals, inliers, epsilon):
    """One lane per (hypothesis, point): count points near the cylinder wall."""
    i, j = ctx.gid
    dist = _axis_distance(points, j, cylinders, i, plane_normals)
    radius = cylinders[i, 3].astype(np.float64)
    with np.errstate(invalid='ignore'):
        hit = np.abs(dist - radius) < epsilon
    _atomic_count(inliers, i, hit)


@kernel("fill_cylinder")
def fill_cylinder(ctx, positions, cylinders, plane_normals, epsilon):
    """One lane per point: mark inliers of the best cylinder (row 0)."""
    (j,) = ctx.gid
    best = np.zeros(1, dtype=np.intp)
    dist = _axis_distance(positions, j, cylinders, best, plane_normals)
    with np.errstate(invalid='ignore'):
        hit = np.abs(dist - np.float64(cylinders[0, 3])) < epsilon
    positions[j[hit], 3] = MARK_PRIMITIVE


# Reduction


@kernel("reduce_max")
def reduce_max(ctx, scores, lanes, remaining, *payload):
    """
    One work-group per local_size lanes: keep the best entry of the group.

    The winner of group g is written to row g of scores, lanes and every
    payload buffer. Ties go to the lowest initial lane id.
    """
    (gid,) = ctx.gid
    group_size = ctx.local_size
    groups = gid.reshape(-1, group_size)
    first_group = int(groups[0, 0]) // group_size

    valid = groups < remaining
    source = np.minimum(groups, remaining - 1)
    group_scores = np.where(valid, scores[source], np.iinfo(np.int64).min)
    best = group_scores.max(axis=1)
    contenders = np.where(
        valid & (group_scores == best[:, None]),
        lanes[source],
        np.iinfo(np.int64).max,
    )
    winners = source[np.arange(len(groups)), np.argmin(contenders, axis=1)]

    target = np.arange(first_group, first_group + len(groups))
    scores[target] = scores[winners]
    lanes[target] = lanes[winners]
    for buffer in payload:
        buffer[target] = buffer[winners]

"""
Polygon triangulation for building meshes.

Two modes:
- Detailed: each planar 3D surface (exterior + holes) is flattened onto
  its own plane basis, triangulated with earcut in 2D, and lifted back.
  Triangles are wound so their normals agree with the surface's Newell
  normal (CityGML rings are counter-clockwise seen from outside).
- Massing: the footprint is extruded from z=0 to the building height as
  a closed prism (top cap, reversed bottom cap, two triangles per side).
"""

from dataclasses import dataclass
from typing import Optional, Sequence

import mapbox_earcut as earcut
import numpy as np
from numpy.typing import NDArray

from .models import MeshBuffer


EPSILON = 1e-9


def compute_face_normal(vertices: np.ndarray) -> np.ndarray:
    """
    Normal of a (possibly non-planar) ring by Newell's method.

    Args:
        vertices: Nx3 array of ring vertices (open ring)

    Returns:
        Unit normal, or a zero vector when the ring has no area
    """
    v = np.asarray(vertices, dtype=np.float64)
    if len(v) < 3:
        return np.zeros(3)

    nxt = np.roll(v, -1, axis=0)
    normal = np.array([
        np.sum((v[:, 1] - nxt[:, 1]) * (v[:, 2] + nxt[:, 2])),
        np.sum((v[:, 2] - nxt[:, 2]) * (v[:, 0] + nxt[:, 0])),
        np.sum((v[:, 0] - nxt[:, 0]) * (v[:, 1] + nxt[:, 1])),
    ])

    length = np.linalg.norm(normal)
    if length < EPSILON:
        return np.zeros(3)
    return normal / length


@dataclass
class PlaneBasis:
    """Orthonormal 2D frame (u, v) on a surface plane through origin."""

    origin: NDArray[np.float64]
    u: NDArray[np.float64]
    v: NDArray[np.float64]
    normal: NDArray[np.float64]

    def to_2d(self, points: NDArray[np.float64]) -> NDArray[np.float64]:
        d = np.asarray(points, dtype=np.float64) - self.origin
        return np.column_stack([d @ self.u, d @ self.v])

    def to_3d(self, uv: NDArray[np.float64]) -> NDArray[np.float64]:
        uv = np.asarray(uv, dtype=np.float64)
        return self.origin + np.outer(uv[:, 0], self.u) + np.outer(uv[:, 1], self.v)


def fit_plane(ring: NDArray[np.float64]) -> Optional[PlaneBasis]:
    """
    Plane basis from the first ring vertex.

    u follows the first non-degenerate edge direction from the origin;
    v is built from the first vertex not colinear with u. Returns None
    when the ring is degenerate (all points coincide or are colinear).
    """
    pts = np.asarray(ring, dtype=np.float64)
    if len(pts) < 3:
        return None

    origin = pts[0]
    offsets = pts[1:] - origin
    lengths = np.linalg.norm(offsets, axis=1)
    scale = max(float(lengths.max()), 1.0)

    nonzero = np.nonzero(lengths > EPSILON * scale)[0]
    if not len(nonzero):
        return None
    u = offsets[nonzero[0]] / lengths[nonzero[0]]

    crosses = np.cross(u, offsets)
    cross_len = np.linalg.norm(crosses, axis=1)
    spread = np.nonzero(cross_len > EPSILON * scale)[0]
    if not len(spread):
        return None

    normal = crosses[spread[0]] / cross_len[spread[0]]
    v = np.cross(normal, u)
    v /= np.linalg.norm(v)
    return PlaneBasis(origin=origin, u=u, v=v, normal=normal)


def earcut_rings(rings_2d: Sequence[NDArray[np.float64]]) -> NDArray[np.uint32]:
    """
    Triangulate 2D rings (exterior first, then holes) into an (n, 3) index array.

    Rings are flattened into one coordinate buffer; hole k starts at the
    sum of the lengths of all rings before it. earcut takes the matching
    end offsets.
    """
    coords = np.vstack([np.asarray(r, dtype=np.float64).reshape(-1, 2) for r in rings_2d])
    ring_ends = np.cumsum([len(r) for r in rings_2d]).astype(np.uint32)
    indices = earcut.triangulate_float64(coords, ring_ends)
    return np.asarray(indices, dtype=np.uint32).reshape(-1, 3)


def orient_faces(
    vertices: NDArray[np.float64],
    faces: NDArray[np.uint32],
    reference: NDArray[np.float64],
) -> NDArray[np.uint32]:
    """Flip triangles whose normal points against the reference direction."""
    if not len(faces):
        return faces
    a = vertices[faces[:, 0]]
    b = vertices[faces[:, 1]]
    c = vertices[faces[:, 2]]
    normals = np.cross(b - a, c - a)
    flip = normals @ reference < 0
    out = faces.copy()
    out[flip] = out[flip][:, [0, 2, 1]]
    return out


def compact(vertices: NDArray[np.float64], faces: NDArray[np.uint32]) -> MeshBuffer:
    """Drop vertices no triangle references and remap indices."""
    used, inverse = np.unique(faces.ravel(), return_inverse=True)
    return MeshBuffer(vertices[used].ravel(), inverse.astype(np.uint32))


def triangulate_surface(rings: Sequence[Sequence[Sequence[float]]]) -> Optional[MeshBuffer]:
    """
    Triangulate one planar 3D surface (exterior ring first, then holes).

    Returns None for degenerate input: fewer than 3 points, colinear
    points, or no triangles out of earcut.
    """
    if not rings:
        return None
    rings_3d = [np.asarray(r, dtype=np.float64).reshape(-1, 3) for r in rings]
    exterior = rings_3d[0]

    basis = fit_plane(exterior)
    if basis is None:
        return None

    outward = compute_face_normal(exterior)
    if not outward.any():
        outward = basis.normal

    faces = earcut_rings([basis.to_2d(r) for r in rings_3d])
    if not len(faces):
        return None

    vertices = basis.to_3d(np.vstack([basis.to_2d(r) for r in rings_3d]))
    faces = orient_faces(vertices, faces, outward)
    return compact(vertices, faces)


def signed_area(ring: NDArray[np.float64]) -> float:
    """Shoelace area; positive for counter-clockwise rings."""
    x = ring[:, 0]
    y = ring[:, 1]
    return 0.5 * float(np.sum(x * np.roll(y, -1) - np.roll(x, -1) * y))


def extrude_footprint(
    footprint: Sequence[Sequence[float]],
    height: float,
) -> Optional[MeshBuffer]:
    """
    Closed prism from an open 2D footprint ring.

    Vertices 0..n-1 are the ring at z=height, n..2n-1 the ring at z=0.
    Triangles: top cap (n-2), bottom cap reversed (n-2), two per side
    edge (2n). All normals face outward.
    """
    ring = np.asarray(footprint, dtype=np.float64)[:, :2]
    n = len(ring)
    if n < 3:
        return None

    area = signed_area(ring)
    if abs(area) < EPSILON:
        return None
    if area < 0:
        ring = ring[::-1]

    cap = earcut_rings([ring])
    if not len(cap):
        return None

    # earcut winding is not guaranteed; force every cap triangle CCW
    up = np.array([0.0, 0.0, 1.0])
    flat = np.column_stack([ring, np.zeros(n)])
    cap = orient_faces(flat, cap, up)

    top = np.column_stack([ring, np.full(n, float(height))])
    bottom = np.column_stack([ring, np.zeros(n)])
    vertices = np.vstack([top, bottom])

    i = np.arange(n, dtype=np.int64)
    j = (i + 1) % n
    # aT=i, bT=j, aB=n+i, bB=n+j
    sides = np.concatenate([
        np.column_stack([n + i, n + j, j]),
        np.column_stack([n + i, j, i]),
    ])

    faces = np.concatenate([
        cap.astype(np.int64),
        cap[:, ::-1].astype(np.int64) + n,
        sides,
    ])
    return MeshBuffer(vertices.ravel(), faces.astype(np.uint32))

"""
Core data types shared by the extraction pipeline.

- SurfaceRole / SurfaceFragment: rings recovered from the document tree
- MeshBuffer: flat triangle-list geometry
- Building: the emitted unit (id, footprint, height, optional mesh)
- ExtractionStats: counters for every recoverable event in a run
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Sequence

import numpy as np
from numpy.typing import NDArray


Point2 = tuple[float, float]
Point3 = tuple[float, float, float]

MIN_RING_POINTS = 3


class SurfaceRole(Enum):
    """Structural role a polygon was found under."""

    ROOF = "roof"
    WALL = "wall"
    GROUND = "ground"
    FOOTPRINT = "footprint"  # lod0 footprint hint
    UNTYPED = "untyped"


def open_ring(points: Sequence[Sequence[float]]) -> list[tuple]:
    """Drop repeated consecutive points and the duplicated closing point.

    Idempotent: an already-open ring comes back unchanged.
    """
    out: list[tuple] = []
    for p in points:
        t = tuple(float(v) for v in p)
        if out and out[-1] == t:
            continue
        out.append(t)
    while len(out) >= 2 and out[0] == out[-1]:
        out.pop()
    return out


def is_valid_ring(ring: Sequence[Sequence[float]]) -> bool:
    """A ring needs at least three distinct points."""
    return len(ring) >= MIN_RING_POINTS and len(set(map(tuple, ring))) >= MIN_RING_POINTS


@dataclass
class SurfaceFragment:
    """One extracted polygon: exterior ring plus holes, tagged by role.

    Rings are open (no closing point) and in source units.
    """

    exterior: list[Point3]
    interiors: list[list[Point3]] = field(default_factory=list)
    role: SurfaceRole = SurfaceRole.UNTYPED
    gml_id: Optional[str] = None

    @property
    def rings(self) -> list[list[Point3]]:
        return [self.exterior, *self.interiors]

    def z_range(self) -> tuple[float, float]:
        zs = [p[2] for ring in self.rings for p in ring]
        return min(zs), max(zs)


@dataclass(eq=False)
class MeshBuffer:
    """Triangle list geometry.

    positions: flat float array [x0, y0, z0, x1, ...] (3n values)
    indices: flat uint32 array, three entries per triangle
    """

    positions: NDArray[np.float64]
    indices: NDArray[np.uint32]

    def __post_init__(self) -> None:
        self.positions = np.ascontiguousarray(self.positions, dtype=np.float64).ravel()
        self.indices = np.ascontiguousarray(self.indices, dtype=np.uint32).ravel()
        if self.positions.size % 3:
            raise ValueError(f"positions length {self.positions.size} is not a multiple of 3")
        if self.indices.size % 3:
            raise ValueError(f"indices length {self.indices.size} is not a multiple of 3")
        if self.indices.size and int(self.indices.max()) >= self.vertex_count:
            raise ValueError("index out of range for position buffer")

    @property
    def vertex_count(self) -> int:
        return self.positions.size // 3

    @property
    def triangle_count(self) -> int:
        return self.indices.size // 3

    @property
    def vertices(self) -> NDArray[np.float64]:
        return self.positions.reshape(-1, 3)

    @property
    def faces(self) -> NDArray[np.uint32]:
        return self.indices.reshape(-1, 3)

    @classmethod
    def concatenate(cls, parts: Sequence["MeshBuffer"]) -> Optional["MeshBuffer"]:
        """Merge meshes, offsetting each part's indices past the previous vertices."""
        parts = [p for p in parts if p.triangle_count]
        if not parts:
            return None
        positions = []
        indices = []
        offset = 0
        for part in parts:
            positions.append(part.positions)
            indices.append(part.indices.astype(np.int64) + offset)
            offset += part.vertex_count
        return cls(np.concatenate(positions), np.concatenate(indices))


@dataclass(frozen=True, eq=False)
class Building:
    """A deduplicated building ready for output. Never mutated once emitted."""

    id: str
    footprint: tuple[Point2, ...]  # target units, open ring, >= 3 points
    height_m: float
    mesh: Optional[MeshBuffer] = None

    def footprint_key(self) -> str:
        return footprint_key(self.footprint)

    def bbox(self) -> tuple[float, float, float, float]:
        """(min_x, min_y, max_x, max_y) of the footprint."""
        xs = [p[0] for p in self.footprint]
        ys = [p[1] for p in self.footprint]
        return (min(xs), min(ys), max(xs), max(ys))


def footprint_key(footprint: Sequence[Sequence[float]]) -> str:
    """Exact serialized point sequence used for duplicate detection."""
    return json.dumps([[float(v) for v in p] for p in footprint], separators=(",", ":"))


@dataclass
class ExtractionStats:
    """Counters for one run (or one file, merged into the run totals)."""

    files: int = 0
    files_failed: int = 0
    files_empty: int = 0
    fragments: int = 0
    rings_skipped: int = 0
    fragments_dropped: int = 0
    groups: int = 0
    groups_without_footprint: int = 0
    degenerate_surfaces: int = 0
    buildings_without_mesh: int = 0
    duplicates: int = 0
    renamed_ids: int = 0
    buildings: int = 0
    truncated_poslists: int = 0

    def merge(self, other: "ExtractionStats") -> None:
        for name in self.__dataclass_fields__:
            setattr(self, name, getattr(self, name) + getattr(other, name))

"""
Group surface fragments into buildings.

Each fragment is assigned to a building by identity, in this order:
1. the gml:id of its enclosing Building (or top-level feature)
2. the fragment's own gml:id
3. a synthesized "<file-stem>:b<n>" id, one per anonymous enclosing
   element (or per standalone fragment), numbered in document order

For every group the assembler picks a footprint (lod0 hint first, else
the largest projected exterior ring), measures the height from the z
range of all its fragments, and builds a mesh. Footprints already
emitted earlier in the run are dropped as duplicates.
"""

from dataclasses import dataclass, field
from typing import Iterable, Optional

from shapely.geometry import Polygon
from tqdm import tqdm

from .config import ExtractConfig
from .extractor import LocatedFragment
from .models import (
    Building,
    ExtractionStats,
    MeshBuffer,
    Point2,
    Point3,
    SurfaceFragment,
    SurfaceRole,
    footprint_key,
    is_valid_ring,
    open_ring,
)
from .reproject import Reprojector
from .triangulate import extrude_footprint, triangulate_surface


@dataclass
class BuildingGroup:
    """Fragments sharing one resolved identity."""

    key: str
    fragments: list[SurfaceFragment] = field(default_factory=list)
    hint: Optional[list[Point3]] = None
    z_min: float = float("inf")
    z_max: float = float("-inf")

    def add(self, fragment: SurfaceFragment) -> None:
        self.fragments.append(fragment)
        # Every fragment counts toward height, footprint hints included
        lo, hi = fragment.z_range()
        self.z_min = min(self.z_min, lo)
        self.z_max = max(self.z_max, hi)
        if fragment.role is SurfaceRole.FOOTPRINT and self.hint is None:
            self.hint = fragment.exterior

    @property
    def surfaces(self) -> list[SurfaceFragment]:
        """Fragments that make up the building shell (hints excluded)."""
        return [f for f in self.fragments if f.role is not SurfaceRole.FOOTPRINT]

    def raw_height(self) -> float:
        if self.z_max < self.z_min:
            return 0.0
        return self.z_max - self.z_min


class FootprintRegistry:
    """
    Run-wide record of emitted footprints and ids.

    The first building to claim a footprint keeps it; later buildings
    with the identical point sequence are duplicates. An id that was
    already emitted for a different footprint gets a "#2", "#3", ...
    suffix so every output id is unique.
    """

    def __init__(self):
        self._by_key: dict[str, str] = {}
        self._id_uses: dict[str, int] = {}
        self.duplicates: list[tuple[str, str]] = []  # (kept_id, dropped_id)

    def __len__(self) -> int:
        return len(self._by_key)

    def owner(self, key: str) -> Optional[str]:
        return self._by_key.get(key)

    def register(self, key: str, building_id: str) -> str:
        """Claim a footprint; returns the (possibly suffixed) id to emit."""
        if key in self._by_key:
            raise ValueError(f"Footprint already claimed by {self._by_key[key]}")
        uses = self._id_uses.get(building_id, 0) + 1
        self._id_uses[building_id] = uses
        final_id = building_id if uses == 1 else f"{building_id}#{uses}"
        while uses > 1 and final_id in self._id_uses:
            uses += 1
            final_id = f"{building_id}#{uses}"
        if final_id != building_id:
            self._id_uses[final_id] = 1
        self._by_key[key] = final_id
        return final_id


def polygon_area(ring: list[Point2]) -> float:
    if len(ring) < 3:
        return 0.0
    return Polygon(ring).area


class BuildingAssembler:
    """Collects located fragments for one document and emits Buildings."""

    def __init__(
        self,
        reprojector: Reprojector,
        config: Optional[ExtractConfig] = None,
        registry: Optional[FootprintRegistry] = None,
        stats: Optional[ExtractionStats] = None,
        scope: str = "doc",
    ):
        self.reprojector = reprojector
        self.config = config or ExtractConfig()
        self.registry = registry if registry is not None else FootprintRegistry()
        self.stats = stats if stats is not None else ExtractionStats()
        self.scope = scope

        self.groups: dict[str, BuildingGroup] = {}
        self._synthesized: dict[object, str] = {}

    def _synthesize(self, token: object) -> str:
        if token not in self._synthesized:
            self._synthesized[token] = f"{self.scope}:b{len(self._synthesized)}"
        return self._synthesized[token]

    def resolve_identity(self, located: LocatedFragment) -> str:
        if located.building_id:
            return located.building_id
        if located.fragment.gml_id:
            return located.fragment.gml_id
        if located.container is not None:
            return self._synthesize(("container", located.container))
        return self._synthesize(("fragment", id(located.fragment)))

    def add(self, located: LocatedFragment) -> None:
        key = self.resolve_identity(located)
        group = self.groups.get(key)
        if group is None:
            group = self.groups[key] = BuildingGroup(key)
        group.add(located.fragment)

    def add_all(self, fragments: Iterable[LocatedFragment]) -> None:
        for located in fragments:
            self.add(located)

    def select_footprint(self, group: BuildingGroup) -> Optional[list[Point2]]:
        """lod0 hint if usable after projection, else the largest exterior ring."""
        if group.hint is not None:
            ring = open_ring(self.reprojector.project_ring_2d(group.hint))
            if is_valid_ring(ring):
                return ring

        best: Optional[list[Point2]] = None
        best_area = 0.0
        for fragment in group.surfaces:
            ring = open_ring(self.reprojector.project_ring_2d(fragment.exterior))
            if not is_valid_ring(ring):
                continue
            area = polygon_area(ring)
            if best is None or area > best_area:
                best, best_area = ring, area
        return best

    def build_mesh(
        self,
        group: BuildingGroup,
        footprint: list[Point2],
        height: float,
    ) -> Optional[MeshBuffer]:
        if not self.config.detailed:
            return extrude_footprint(footprint, height)

        parts = []
        for fragment in group.surfaces:
            rings = [self.reprojector.project_points(r) for r in fragment.rings]
            mesh = triangulate_surface(rings)
            if mesh is None:
                self.stats.degenerate_surfaces += 1
                continue
            parts.append(mesh)
        return MeshBuffer.concatenate(parts)

    def build_building(self, group: BuildingGroup) -> Optional[Building]:
        footprint = self.select_footprint(group)
        if footprint is None:
            self.stats.groups_without_footprint += 1
            if self.config.verbose:
                tqdm.write(f"  [assemble] {group.key}: no usable footprint, skipped")
            return None

        key = footprint_key(footprint)
        owner = self.registry.owner(key)
        if owner is not None:
            self.stats.duplicates += 1
            self.registry.duplicates.append((owner, group.key))
            tqdm.write(f"  [assemble] duplicate footprint: kept {owner}, dropped {group.key}")
            return None

        building_id = self.registry.register(key, group.key)
        if building_id != group.key:
            self.stats.renamed_ids += 1
            if self.config.verbose:
                tqdm.write(f"  [assemble] id {group.key} reused, emitted as {building_id}")

        height = round(max(0.0, group.raw_height() * self.reprojector.z_to_meters), 2)

        mesh = self.build_mesh(group, footprint, height)
        if mesh is None:
            self.stats.buildings_without_mesh += 1

        return Building(
            id=building_id,
            footprint=tuple(footprint),
            height_m=height,
            mesh=mesh,
        )

    def assemble(self) -> list[Building]:
        """Emit buildings in first-seen group order."""
        self.stats.groups += len(self.groups)
        buildings = []
        for group in tqdm(
            self.groups.values(),
            desc="Assembling",
            unit="bldg",
            leave=False,
            disable=len(self.groups) < 100,
        ):
            building = self.build_building(group)
            if building is not None:
                buildings.append(building)
        self.stats.buildings += len(buildings)
        return buildings

"""
Recover surface fragments from a normalized CityGML tree.

Walks the typed tree once, carrying the structural context down:
- the outermost enclosing Building (BuildingPart merges into its parent)
- the top-level feature below a cityObjectMember
- the nearest boundary-surface role (roof, wall, ground, lod0 footprint)

Every Polygon becomes one SurfaceFragment (exterior + holes). Rings with
fewer than 3 distinct points are skipped; a polygon whose exterior is
skipped is dropped.

Coordinates come from gml:posList (or a sequence of gml:pos). The tuple
size is taken from the nearest srsDimension attribute (default 3);
2D input gets z = 0.
"""

from dataclasses import dataclass
from typing import Iterator, Optional

import numpy as np
from lxml import etree
from tqdm import tqdm

from .gml_tree import GmlNode, MalformedPosListError, NodeKind, local_name
from .models import (
    ExtractionStats,
    Point3,
    SurfaceFragment,
    SurfaceRole,
    is_valid_ring,
    open_ring,
)


DEFAULT_DIMENSION = 3

EXTERIOR_NAMES = {"exterior", "outerBoundaryIs"}
INTERIOR_NAMES = {"interior", "innerBoundaryIs"}


@dataclass
class LocatedFragment:
    """A fragment plus the structural context it was found in."""

    fragment: SurfaceFragment

    # gml:id of the enclosing Building or top-level feature, if any
    building_id: Optional[str] = None

    # Opaque token for the enclosing Building / feature element (None: standalone)
    container: Optional[int] = None


def srs_dimension(element: etree._Element) -> int:
    """Nearest srsDimension on the element or its ancestors."""
    current = element
    while current is not None:
        for key, value in current.attrib.items():
            if local_name(key) == "srsDimension":
                try:
                    dim = int(value)
                except ValueError:
                    break
                if dim in (2, 3):
                    return dim
                break
        current = current.getparent()
    return DEFAULT_DIMENSION


def parse_pos_list(
    text: Optional[str],
    dimension: int = DEFAULT_DIMENSION,
    strict: bool = False,
) -> tuple[list[Point3], bool]:
    """
    Parse a whitespace-separated coordinate list into 3D points.

    A non-numeric token ends the list. A trailing partial tuple is dropped
    (returned flag is True), or raises MalformedPosListError when strict.

    Returns:
        (points, truncated)
    """
    if not text:
        return [], False

    tokens = text.split()
    try:
        values = np.asarray(tokens, dtype=np.float64)
    except ValueError:
        # Keep the numeric prefix
        parsed = []
        for token in tokens:
            try:
                parsed.append(float(token))
            except ValueError:
                break
        values = np.asarray(parsed, dtype=np.float64)

    remainder = values.size % dimension
    truncated = remainder != 0
    if truncated:
        if strict:
            raise MalformedPosListError(
                f"posList has {values.size} values, not a multiple of {dimension}"
            )
        values = values[: values.size - remainder]

    coords = values.reshape(-1, dimension)
    if dimension == 2:
        coords = np.column_stack([coords, np.zeros(len(coords))])

    return [tuple(p) for p in coords.tolist()], truncated


def _children_named(element: etree._Element, names: set[str]) -> list[etree._Element]:
    return [c for c in element if local_name(c.tag) in names]


def _first_descendant(element: etree._Element, name: str) -> Optional[etree._Element]:
    for el in element.iter():
        if local_name(el.tag) == name:
            return el
    return None


class GeometryExtractor:
    """Turns Polygon nodes into SurfaceFragments, counting what gets skipped."""

    def __init__(
        self,
        strict: bool = False,
        stats: Optional[ExtractionStats] = None,
        verbose: bool = False,
    ):
        self.strict = strict
        self.stats = stats if stats is not None else ExtractionStats()
        self.verbose = verbose

    def _skipped(self, node: GmlNode, what: str) -> None:
        self.stats.rings_skipped += 1
        if self.verbose:
            label = node.gml_id or f"line {node.element.sourceline}"
            tqdm.write(f"  [extract] {label}: {what} has fewer than 3 distinct points, skipped")

    def read_ring(self, boundary: etree._Element) -> list[Point3]:
        """Read one ring from an exterior/interior (or LinearRing) element."""
        pos_list = _first_descendant(boundary, "posList")
        if pos_list is not None:
            points, truncated = parse_pos_list(
                pos_list.text, srs_dimension(pos_list), self.strict
            )
            if truncated:
                self.stats.truncated_poslists += 1
            return open_ring(points)

        points: list[Point3] = []
        for el in boundary.iter():
            if local_name(el.tag) != "pos":
                continue
            parsed, truncated = parse_pos_list(el.text, srs_dimension(el), self.strict)
            if truncated:
                self.stats.truncated_poslists += 1
            points.extend(parsed[:1])
        return open_ring(points)

    def read_polygon(
        self, node: GmlNode, role: SurfaceRole = SurfaceRole.UNTYPED
    ) -> Optional[SurfaceFragment]:
        element = node.element
        exteriors = _children_named(element, EXTERIOR_NAMES)
        if exteriors:
            exterior = self.read_ring(exteriors[0])
        else:
            # Only a posList directly on the polygon, never one from a hole
            bare = _children_named(element, {"posList"})
            exterior = self.read_ring(bare[0]) if bare else []
        if not is_valid_ring(exterior):
            self._skipped(node, "exterior ring")
            self.stats.fragments_dropped += 1
            return None

        interiors = []
        for boundary in _children_named(element, INTERIOR_NAMES):
            ring = self.read_ring(boundary)
            if is_valid_ring(ring):
                interiors.append(ring)
            else:
                self._skipped(node, "interior ring")

        self.stats.fragments += 1
        return SurfaceFragment(
            exterior=exterior,
            interiors=interiors,
            role=role,
            gml_id=node.gml_id,
        )

    def iter_fragments(self, root: GmlNode) -> Iterator[LocatedFragment]:
        """Yield every fragment in document order with its building context."""
        # (node, building_id, container, in_building, role, parent_is_member)
        stack = [(root, None, None, False, SurfaceRole.UNTYPED, False)]
        while stack:
            node, building_id, container, in_building, role, under_member = stack.pop()

            if node.kind is NodeKind.POLYGON:
                fragment = self.read_polygon(node, role)
                if fragment is not None:
                    yield LocatedFragment(fragment, building_id, container)
                continue

            if node.kind is NodeKind.BUILDING and not in_building:
                # Outermost building wins; parts stay with their parent
                building_id = node.gml_id or building_id
                container = id(node)
                in_building = True
            elif under_member and container is None:
                building_id = node.gml_id
                container = id(node)

            if node.kind is NodeKind.SURFACE:
                role = node.role

            for child in reversed(node.children):
                stack.append(
                    (child, building_id, container, in_building, role, node.is_member)
                )


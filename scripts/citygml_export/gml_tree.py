"""
Typed view of a CityGML document.

The raw XML is parsed once with lxml and normalized into a tree of
GmlNode objects. Each node is classified a single time as a building,
a boundary surface, a polygon or "other"; everything downstream walks
this typed tree instead of probing element names again.

Subtrees that contain no building, surface or polygon are pruned, so the
typed tree stays small even for very large documents.

Usage:
    from .gml_tree import load_document, NodeKind

    root = load_document(Path("data/sample/DA1_3D_Buildings_Merged_Sample.gml"))
    for node in root.iter():
        if node.kind is NodeKind.POLYGON:
            ...
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterator, Optional, Union

from lxml import etree

from .models import SurfaceRole


class DocumentError(ValueError):
    """An input document could not be read or parsed."""


class MalformedPosListError(DocumentError):
    """A coordinate list has a trailing partial tuple (strict mode only)."""


class NodeKind(Enum):
    BUILDING = "building"
    SURFACE = "surface"
    POLYGON = "polygon"
    OTHER = "other"


BUILDING_NAMES = {"Building", "BuildingPart"}

SURFACE_ROLES = {
    "RoofSurface": SurfaceRole.ROOF,
    "WallSurface": SurfaceRole.WALL,
    "GroundSurface": SurfaceRole.GROUND,
    "lod0FootPrint": SurfaceRole.FOOTPRINT,
    # Remaining CityGML boundary surfaces carry geometry but no role we use
    "ClosureSurface": SurfaceRole.UNTYPED,
    "OuterCeilingSurface": SurfaceRole.UNTYPED,
    "OuterFloorSurface": SurfaceRole.UNTYPED,
    "CeilingSurface": SurfaceRole.UNTYPED,
    "FloorSurface": SurfaceRole.UNTYPED,
    "InteriorWallSurface": SurfaceRole.UNTYPED,
}

# Elements whose direct child is a top-level feature
MEMBER_NAMES = {"cityObjectMember", "featureMember", "member"}


def local_name(tag: object) -> str:
    """Element name without namespace URI or prefix.

    '{http://www.opengis.net/gml}Polygon' -> 'Polygon'
    'gml:Polygon' -> 'Polygon'
    """
    if not isinstance(tag, str):
        return ""
    return tag.rsplit("}", 1)[-1].rsplit(":", 1)[-1]


def element_id(element: etree._Element) -> Optional[str]:
    """gml:id (any namespace) or a plain id attribute."""
    for key, value in element.attrib.items():
        if local_name(key) == "id" and value:
            return value
    return None


@dataclass(eq=False)
class GmlNode:
    """One classified node of the normalized tree."""

    kind: NodeKind
    name: str
    element: etree._Element
    role: Optional[SurfaceRole] = None
    gml_id: Optional[str] = None
    children: list["GmlNode"] = field(default_factory=list)

    def iter(self) -> Iterator["GmlNode"]:
        """Depth-first, pre-order traversal."""
        stack = [self]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))

    @property
    def is_member(self) -> bool:
        return self.name in MEMBER_NAMES


def classify(element: etree._Element) -> tuple[NodeKind, Optional[SurfaceRole]]:
    name = local_name(element.tag)
    if name == "Polygon":
        return NodeKind.POLYGON, None
    if name in SURFACE_ROLES:
        return NodeKind.SURFACE, SURFACE_ROLES[name]
    if name in BUILDING_NAMES:
        return NodeKind.BUILDING, None
    return NodeKind.OTHER, None


def normalize(element: etree._Element) -> Optional[GmlNode]:
    """Build the typed tree for an element; None if nothing of interest is inside."""
    if not isinstance(element.tag, str):
        return None

    kind, role = classify(element)
    node = GmlNode(
        kind=kind,
        name=local_name(element.tag),
        element=element,
        role=role,
        gml_id=element_id(element),
    )

    # Polygons don't nest; their rings are read straight from the element
    if kind is NodeKind.POLYGON:
        return node

    for child in element:
        child_node = normalize(child)
        if child_node is not None:
            node.children.append(child_node)

    if kind is NodeKind.OTHER and not node.children:
        return None
    return node


def _parser() -> etree.XMLParser:
    return etree.XMLParser(
        huge_tree=True,
        remove_comments=True,
        remove_pis=True,
        resolve_entities=False,
        no_network=True,
    )


def parse_document(source: Union[Path, str, bytes]) -> etree._Element:
    """Parse a document from a path or from raw XML bytes/text."""
    try:
        if isinstance(source, Path):
            return etree.parse(str(source), _parser()).getroot()
        if isinstance(source, str):
            source = source.encode("utf-8")
        return etree.fromstring(source, _parser())
    except OSError as e:
        raise DocumentError(f"Cannot read {source}: {e}") from e
    except etree.XMLSyntaxError as e:
        raise DocumentError(f"Invalid XML: {e}") from e


def load_document(source: Union[Path, str, bytes]) -> GmlNode:
    """Parse and normalize a document. The root node is always returned."""
    root = parse_document(source)
    node = normalize(root)
    if node is None:
        return GmlNode(
            kind=NodeKind.OTHER,
            name=local_name(root.tag),
            element=root,
            gml_id=element_id(root),
        )
    return node

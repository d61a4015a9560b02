#!/usr/bin/env python3
"""Pytest configuration and shared fixtures."""
import pytest
import tempfile
import sys
from pathlib import Path
from types import SimpleNamespace

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from citygml_export.config import ProjectionConfig
from citygml_export.reproject import Reprojector


# Midtown Manhattan in NY Long Island State Plane (US feet)
ORIGIN_X = 987000.0
ORIGIN_Y = 211000.0

CITY_MODEL_OPEN = (
    '<?xml version="1.0" encoding="UTF-8"?>\n'
    '<core:CityModel'
    ' xmlns:core="http://www.opengis.net/citygml/2.0"'
    ' xmlns:bldg="http://www.opengis.net/citygml/building/2.0"'
    ' xmlns:gml="http://www.opengis.net/gml">\n'
    '<!-- generated for tests -->\n'
    '<gml:boundedBy><gml:Envelope srsName="EPSG:2263" srsDimension="3">'
    '<gml:lowerCorner>0 0 0</gml:lowerCorner><gml:upperCorner>1 1 1</gml:upperCorner>'
    '</gml:Envelope></gml:boundedBy>\n'
)
CITY_MODEL_CLOSE = '</core:CityModel>\n'


def pos_list(points, close=True, dimension=3):
    """posList text for a ring, repeating the first point at the end."""
    pts = list(points)
    if close:
        pts.append(pts[0])
    return " ".join(" ".join(repr(float(v)) for v in p[:dimension]) for p in pts)


def polygon(points, gml_id=None, holes=()):
    attr = f' gml:id="{gml_id}"' if gml_id else ""
    xml = (
        f'<gml:Polygon{attr}><gml:exterior><gml:LinearRing>'
        f'<gml:posList>{pos_list(points)}</gml:posList>'
        f'</gml:LinearRing></gml:exterior>'
    )
    for hole in holes:
        xml += (
            f'<gml:interior><gml:LinearRing>'
            f'<gml:posList>{pos_list(hole)}</gml:posList>'
            f'</gml:LinearRing></gml:interior>'
        )
    return xml + '</gml:Polygon>'


def surface(kind, points, gml_id=None):
    """One boundary surface (RoofSurface, WallSurface, ...) with a single polygon."""
    return (
        f'<bldg:boundedBy><bldg:{kind}><bldg:lod2MultiSurface><gml:MultiSurface>'
        f'<gml:surfaceMember>{polygon(points, gml_id)}</gml:surfaceMember>'
        f'</gml:MultiSurface></bldg:lod2MultiSurface></bldg:{kind}></bldg:boundedBy>'
    )


def box_rings(x, y, size, z0, z1):
    """Rings of an axis-aligned box, each counter-clockwise seen from outside."""
    x1 = x + size
    y1 = y + size
    return {
        "ground": [(x, y, z0), (x, y1, z0), (x1, y1, z0), (x1, y, z0)],
        "roof": [(x, y, z1), (x1, y, z1), (x1, y1, z1), (x, y1, z1)],
        "walls": [
            [(x, y, z0), (x1, y, z0), (x1, y, z1), (x, y, z1)],
            [(x1, y, z0), (x1, y1, z0), (x1, y1, z1), (x1, y, z1)],
            [(x1, y1, z0), (x, y1, z0), (x, y1, z1), (x1, y1, z1)],
            [(x, y1, z0), (x, y, z0), (x, y, z1), (x, y1, z1)],
        ],
    }


def box_surfaces(x, y, size=100.0, z0=10.0, z1=110.0):
    rings = box_rings(x, y, size, z0, z1)
    xml = surface("GroundSurface", rings["ground"])
    xml += surface("RoofSurface", rings["roof"])
    for wall in rings["walls"]:
        xml += surface("WallSurface", wall)
    return xml


def footprint_hint(points):
    return (
        f'<bldg:lod0FootPrint><gml:MultiSurface><gml:surfaceMember>'
        f'{polygon(points)}'
        f'</gml:surfaceMember></gml:MultiSurface></bldg:lod0FootPrint>'
    )


def building(
    gml_id,
    x,
    y,
    size=100.0,
    z0=10.0,
    z1=110.0,
    hint=True,
    hint_z=None,
    tag="Building",
    extra="",
):
    """A box-shaped building with an optional lod0 footprint."""
    attr = f' gml:id="{gml_id}"' if gml_id else ""
    body = ""
    if hint:
        hz = z0 if hint_z is None else hint_z
        body += footprint_hint([
            (x, y, hz), (x + size, y, hz), (x + size, y + size, hz), (x, y + size, hz)
        ])
    body += box_surfaces(x, y, size, z0, z1)
    body += extra
    return f'<bldg:{tag}{attr}><bldg:measuredHeight uom="ft">{z1 - z0}</bldg:measuredHeight>{body}</bldg:{tag}>'


def member(content):
    return f'<core:cityObjectMember>{content}</core:cityObjectMember>\n'


def city_model(*members):
    return CITY_MODEL_OPEN + "".join(member(m) for m in members) + CITY_MODEL_CLOSE


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def gml():
    """Builders for small CityGML documents."""
    return SimpleNamespace(
        x=ORIGIN_X,
        y=ORIGIN_Y,
        pos_list=pos_list,
        polygon=polygon,
        surface=surface,
        box_rings=box_rings,
        box_surfaces=box_surfaces,
        footprint_hint=footprint_hint,
        building=building,
        member=member,
        city_model=city_model,
    )


@pytest.fixture
def sample_citygml(gml):
    """Three distinct buildings plus one exact duplicate of the first."""
    return gml.city_model(
        gml.building("bldg_1", ORIGIN_X, ORIGIN_Y),
        gml.building("bldg_2", ORIGIN_X + 500, ORIGIN_Y, z1=60.0),
        gml.building("bldg_3", ORIGIN_X, ORIGIN_Y + 500, size=50.0, z1=210.0),
        gml.building("bldg_dup", ORIGIN_X, ORIGIN_Y),
    )


@pytest.fixture
def sample_gml_file(temp_dir, sample_citygml):
    """sample_citygml written to disk as sample.gml."""
    path = temp_dir / "input" / "sample.gml"
    path.parent.mkdir(parents=True)
    path.write_text(sample_citygml, encoding="utf-8")
    return path


@pytest.fixture
def reprojector():
    """Default NYC State Plane -> Web Mercator reprojector."""
    return Reprojector(ProjectionConfig())

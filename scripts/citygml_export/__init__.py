"""
CityGML Web Export

Turns municipal CityGML building models into three artifacts for a
browser 3D viewer:
- footprints.geojson: one Polygon per building with id and height_m
- index.bin + ids.json: packed Hilbert R-tree over footprint boxes
- buildings.glb: one mesh per building (extruded massing or LOD2 surfaces)

Source coordinates (NYC State Plane, US feet) are reprojected to
Web Mercator meters. Buildings with identical footprints are emitted once.

Usage:
    # Extract a directory of .gml files
    python -m citygml_export.cli extract --in data/sample --out out/sample

    # Detailed LOD2 surfaces
    python -m citygml_export.cli extract --in data/sample --out out/sample --lod2

    # Validate the output
    python -m citygml_export.cli validate out/sample --strict
"""

from .config import (
    ExportConfig,
    ExtractConfig,
    OutputConfig,
    ProjectionConfig,
)
from .models import (
    Building,
    ExtractionStats,
    MeshBuffer,
    SurfaceFragment,
    SurfaceRole,
)
from .gml_tree import DocumentError, MalformedPosListError, load_document
from .extractor import GeometryExtractor, parse_pos_list
from .reproject import Reprojector
from .triangulate import extrude_footprint, triangulate_surface
from .assembler import BuildingAssembler, FootprintRegistry
from .spatial_index import StaticIndex, load_index, write_index
from .glb_writer import build_glb, write_glb
from .footprints import write_footprints
from .pipeline import NoBuildingsError, run_export

__all__ = [
    # Configuration
    "ExportConfig",
    "ExtractConfig",
    "OutputConfig",
    "ProjectionConfig",
    # Data model
    "Building",
    "ExtractionStats",
    "MeshBuffer",
    "SurfaceFragment",
    "SurfaceRole",
    # Components
    "DocumentError",
    "MalformedPosListError",
    "load_document",
    "GeometryExtractor",
    "parse_pos_list",
    "Reprojector",
    "extrude_footprint",
    "triangulate_surface",
    "BuildingAssembler",
    "FootprintRegistry",
    "StaticIndex",
    "load_index",
    "write_index",
    "build_glb",
    "write_glb",
    "write_footprints",
    # Pipeline
    "NoBuildingsError",
    "run_export",
]

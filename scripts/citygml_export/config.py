"""
Export configuration dataclasses.

Centralizes the projection parameters, extraction switches and output
layout. The CLI builds one ExportConfig at startup and hands the pieces
to the components that need them.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


# NYC 3D building model: New York Long Island State Plane, US survey feet
SOURCE_CRS = "EPSG:2263"
# Web Mercator meters, what the browser viewer uses
TARGET_CRS = "EPSG:3857"
FT_TO_M = 0.3048


@dataclass
class ProjectionConfig:
    """Source → target reference system settings."""

    source_crs: str = SOURCE_CRS
    target_crs: str = TARGET_CRS

    # Vertical units are not touched by the planar projection
    z_to_meters: float = FT_TO_M

    # Optional (x, y) in source units; reprojected and subtracted from output
    recenter_origin: Optional[tuple[float, float]] = None

    def __post_init__(self) -> None:
        if self.z_to_meters <= 0:
            raise ValueError(f"z_to_meters must be positive, got {self.z_to_meters}")
        if self.recenter_origin is not None and len(self.recenter_origin) != 2:
            raise ValueError("recenter_origin must be an (x, y) pair")


@dataclass
class ExtractConfig:
    """Extraction and mesh construction switches."""

    # True: triangulate roof/wall/ground surfaces; False: extruded massing
    detailed: bool = False

    # Raise on posLists whose length is not a multiple of the dimension
    strict_poslist: bool = False

    # Print every skipped/duplicate event, not just the totals
    verbose: bool = False


@dataclass
class OutputConfig:
    """Output artifact names and index settings."""

    output_dir: Path = field(default_factory=lambda: Path("out/sample"))
    footprints_name: str = "footprints.geojson"
    index_name: str = "index.bin"
    ids_name: str = "ids.json"
    glb_name: str = "buildings.glb"
    index_node_size: int = 16

    def __post_init__(self) -> None:
        if not 2 <= self.index_node_size <= 65535:
            raise ValueError(f"index_node_size must be in [2, 65535], got {self.index_node_size}")

    @property
    def footprints_path(self) -> Path:
        return self.output_dir / self.footprints_name

    @property
    def index_path(self) -> Path:
        return self.output_dir / self.index_name

    @property
    def ids_path(self) -> Path:
        return self.output_dir / self.ids_name

    @property
    def glb_path(self) -> Path:
        return self.output_dir / self.glb_name


@dataclass
class ExportConfig:
    """Master configuration for one export run."""

    projection: ProjectionConfig = field(default_factory=ProjectionConfig)
    extract: ExtractConfig = field(default_factory=ExtractConfig)
    output: OutputConfig = field(default_factory=OutputConfig)

    # Process only the first input file (name order)
    single: bool = False

"""
End-to-end export: CityGML files -> footprints, spatial index, GLB.

Steps per run:
1. Enumerate input documents (one file, or every *.gml in a directory,
   sorted by name)
2. Per document: parse, extract fragments, assemble buildings. A
   document that fails to parse is reported and skipped.
3. Duplicate footprints are dropped across the whole run
4. Write footprints.geojson, index.bin + ids.json, buildings.glb

Usage:
    from .config import ExportConfig
    from .pipeline import run_export

    result = run_export(Path("data/sample"), ExportConfig())
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from tqdm import tqdm

from .assembler import BuildingAssembler, FootprintRegistry
from .config import ExportConfig, ExtractConfig, OutputConfig
from .extractor import GeometryExtractor
from .footprints import write_footprints
from .glb_writer import GlbSummary, write_glb
from .gml_tree import DocumentError, load_document
from .models import Building, ExtractionStats
from .reproject import Reprojector
from .spatial_index import write_index


GML_SUFFIX = ".gml"


class NoBuildingsError(RuntimeError):
    """The run produced zero buildings; nothing is written."""


@dataclass
class ExportResult:
    buildings: list[Building]
    stats: ExtractionStats
    files: list[Path] = field(default_factory=list)
    failed: list[tuple[Path, str]] = field(default_factory=list)
    per_file: list[tuple[Path, int]] = field(default_factory=list)
    detailed: bool = False
    glb: Optional[GlbSummary] = None


def find_input_files(input_path: Path) -> list[Path]:
    """A single .gml file, or all .gml files in a directory sorted by name."""
    if input_path.is_file():
        return [input_path]
    if input_path.is_dir():
        files = sorted(
            p for p in input_path.iterdir()
            if p.is_file() and p.suffix.lower() == GML_SUFFIX
        )
        if not files:
            raise FileNotFoundError(f"No {GML_SUFFIX} files found in {input_path}")
        return files
    raise FileNotFoundError(f"Input not found: {input_path}")


def process_file(
    path: Path,
    reprojector: Reprojector,
    config: ExtractConfig,
    registry: FootprintRegistry,
) -> tuple[list[Building], ExtractionStats]:
    """
    Extract the buildings of one document.

    Raises:
        DocumentError: the document cannot be read or parsed (or a
            malformed posList was found in strict mode)
    """
    stats = ExtractionStats(files=1)
    root = load_document(path)

    extractor = GeometryExtractor(
        strict=config.strict_poslist,
        stats=stats,
        verbose=config.verbose,
    )
    assembler = BuildingAssembler(
        reprojector,
        config,
        registry=registry,
        stats=stats,
        scope=path.stem,
    )
    assembler.add_all(extractor.iter_fragments(root))
    return assembler.assemble(), stats


def write_outputs(
    buildings: list[Building],
    output: OutputConfig,
    crs_name: str,
) -> GlbSummary:
    """Write every artifact; all four share the same building order."""
    output.output_dir.mkdir(parents=True, exist_ok=True)

    count = write_footprints(buildings, output.footprints_path, crs_name)
    print(f"[export] Wrote {count} footprints to {output.footprints_path}")

    index = write_index(buildings, output.index_path, output.ids_path, output.index_node_size)
    print(f"[index] Wrote {index.num_items} items ({index.num_nodes} nodes) to {output.index_path}")
    print(f"[index] Wrote ids to {output.ids_path}")

    glb = write_glb(buildings, output.glb_path)
    print(
        f"[glb] Wrote {glb.nodes} meshes, {glb.triangles:,} triangles "
        f"({glb.byte_length / 1024 / 1024:.1f} MB) to {glb.path}"
    )
    return glb


def print_summary(result: ExportResult) -> None:
    stats = result.stats
    print("\n=== Summary ===")
    print(f"Files processed: {stats.files}")
    if stats.files_failed:
        print(f"Files failed: {stats.files_failed}")
        for path, reason in result.failed:
            print(f"  ✗ {path.name}: {reason}")
    if stats.files_empty:
        print(f"Files without buildings: {stats.files_empty}")
    for path, count in result.per_file:
        print(f"  {path.name}: {count:,} buildings")
    print(f"Mesh mode: {'detailed surfaces' if result.detailed else 'extruded massing'}")
    print(f"Surface fragments: {stats.fragments:,}")
    print(f"Building groups: {stats.groups:,}")
    print(f"Buildings written: {len(result.buildings):,}")
    if result.buildings:
        heights = [b.height_m for b in result.buildings]
        points = sum(len(b.footprint) for b in result.buildings)
        print(f"Average height: {sum(heights) / len(heights):.2f} m")
        print(f"Footprint points: {points:,}")
    if result.glb is not None:
        print(f"Meshes written: {result.glb.nodes:,}")
    print(f"Duplicates dropped: {stats.duplicates:,}")
    if stats.renamed_ids:
        print(f"Ids renamed: {stats.renamed_ids:,}")
    if stats.groups_without_footprint:
        print(f"Groups without footprint: {stats.groups_without_footprint:,}")
    if stats.rings_skipped:
        print(f"Rings skipped (< 3 points): {stats.rings_skipped:,}")
    if stats.truncated_poslists:
        print(f"Truncated posLists: {stats.truncated_poslists:,}")
    if stats.degenerate_surfaces:
        print(f"Degenerate surfaces: {stats.degenerate_surfaces:,}")
    if stats.buildings_without_mesh:
        print(f"Buildings without mesh: {stats.buildings_without_mesh:,}")


def run_export(input_path: Path, config: ExportConfig) -> ExportResult:
    """
    Run the whole export.

    Raises:
        FileNotFoundError: no input documents
        NoBuildingsError: nothing extracted from any document
    """
    files = find_input_files(input_path)
    if config.single:
        files = files[:1]

    print(f"[extract] {len(files)} input file(s)")

    reprojector = Reprojector(config.projection)
    registry = FootprintRegistry()
    result = ExportResult(
        buildings=[],
        stats=ExtractionStats(),
        files=files,
        detailed=config.extract.detailed,
    )

    for path in tqdm(files, desc="Files", unit="file", disable=len(files) < 2):
        tqdm.write(f"[extract] Parsing {path.name}...")
        try:
            buildings, stats = process_file(path, reprojector, config.extract, registry)
        except DocumentError as e:
            tqdm.write(f"[extract] ✗ {path.name}: {e}")
            result.stats.files += 1
            result.stats.files_failed += 1
            result.failed.append((path, str(e)))
            continue

        if not buildings:
            stats.files_empty += 1
            tqdm.write(f"[extract] {path.name}: no buildings found")
        else:
            tqdm.write(f"[extract] {path.name}: {len(buildings):,} buildings")

        result.stats.merge(stats)
        result.buildings.extend(buildings)
        result.per_file.append((path, len(buildings)))

    if not result.buildings:
        print_summary(result)
        raise NoBuildingsError(f"No buildings extracted from {input_path}")

    result.glb = write_outputs(
        result.buildings,
        config.output,
        config.projection.target_crs,
    )
    print_summary(result)
    return result

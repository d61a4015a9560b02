"""
Validate an export directory before publishing it to the viewer.

Checks:
- footprints.geojson is a FeatureCollection of closed Polygons, each with
  an id and a non-negative height_m
- Building ids are unique and no two footprints are identical
- index.bin loads, and ids.json lists the same ids in the same order
- buildings.glb header length matches the file size, chunks are 4-byte
  aligned, and the scene loads with one mesh per node
"""

import json
from pathlib import Path
from typing import Optional

import trimesh

from .config import OutputConfig
from .glb_writer import CHUNK_BIN, CHUNK_JSON, read_glb_chunks
from .models import footprint_key, open_ring
from .spatial_index import StaticIndex


MAX_ERRORS = 100


class ValidationError:
    def __init__(self, feature_id: str, issue: str, details: str = ""):
        self.feature_id = feature_id
        self.issue = issue
        self.details = details

    def __str__(self):
        if self.details:
            return f"[{self.feature_id}] {self.issue}: {self.details}"
        return f"[{self.feature_id}] {self.issue}"


def validate_feature(feature: dict, index: int) -> list[ValidationError]:
    """Validate a single footprint feature."""
    errors = []
    props = feature.get("properties") or {}
    feature_id = props.get("id", f"feature_{index}")

    if not isinstance(props.get("id"), str) or not props.get("id"):
        errors.append(ValidationError(feature_id, "Missing id"))

    height = props.get("height_m")
    if not isinstance(height, (int, float)) or isinstance(height, bool):
        errors.append(ValidationError(feature_id, "Invalid height_m", repr(height)))
    elif height < 0:
        errors.append(ValidationError(feature_id, "Negative height_m", str(height)))

    geom = feature.get("geometry")
    if not geom:
        errors.append(ValidationError(feature_id, "Missing geometry"))
        return errors

    if geom.get("type") != "Polygon":
        errors.append(ValidationError(
            feature_id,
            "Unexpected geometry type",
            f"Got {geom.get('type')}, expected Polygon"
        ))
        return errors

    coords = geom.get("coordinates") or []
    if len(coords) != 1:
        errors.append(ValidationError(feature_id, "Expected exactly one ring", str(len(coords))))
        return errors

    ring = coords[0]
    if len(ring) < 4:
        errors.append(ValidationError(feature_id, "Ring too short", f"{len(ring)} positions"))
    elif ring[0] != ring[-1]:
        errors.append(ValidationError(feature_id, "Ring not closed"))

    for coord in ring:
        if len(coord) < 2 or not all(isinstance(v, (int, float)) for v in coord[:2]):
            errors.append(ValidationError(feature_id, "Invalid coordinate", str(coord)))
            break

    return errors


def validate_footprints(filepath: Path) -> tuple[list[str], list[ValidationError]]:
    """
    Validate footprints.geojson.

    Returns:
        (feature ids in file order, list of errors)
    """
    if not filepath.exists():
        return [], [ValidationError("footprints", "File not found", str(filepath))]

    try:
        with open(filepath, 'r') as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        return [], [ValidationError("footprints", "Invalid JSON", str(e))]

    if data.get("type") != "FeatureCollection":
        return [], [ValidationError("footprints", "Not a FeatureCollection")]

    if "features" not in data or not isinstance(data["features"], list):
        return [], [ValidationError("footprints", "Missing or invalid features array")]

    errors = []
    ids = []
    seen_ids: set[str] = set()
    seen_footprints: dict[str, str] = {}

    for index, feature in enumerate(data["features"]):
        feature_errors = validate_feature(feature, index)
        errors.extend(feature_errors)

        feature_id = (feature.get("properties") or {}).get("id", f"feature_{index}")
        ids.append(feature_id)

        if feature_id in seen_ids:
            errors.append(ValidationError(feature_id, "Duplicate id"))
        seen_ids.add(feature_id)

        if not feature_errors:
            key = footprint_key(open_ring(feature["geometry"]["coordinates"][0]))
            if key in seen_footprints:
                errors.append(ValidationError(
                    feature_id,
                    "Duplicate footprint",
                    f"same as {seen_footprints[key]}"
                ))
            else:
                seen_footprints[key] = feature_id

        if len(errors) > MAX_ERRORS:
            errors.append(ValidationError(
                "validation",
                "Too many errors",
                f"Stopping after {MAX_ERRORS} errors"
            ))
            break

    return ids, errors


def validate_index(
    index_path: Path,
    ids_path: Path,
    feature_ids: Optional[list[str]] = None,
) -> list[ValidationError]:
    """index.bin loads and ids.json lines up with it (and with the footprints)."""
    for path in (index_path, ids_path):
        if not path.exists():
            return [ValidationError("index", "File not found", str(path))]

    try:
        index = StaticIndex.from_bytes(index_path.read_bytes())
    except ValueError as e:
        return [ValidationError("index", "Unreadable index", str(e))]

    try:
        with open(ids_path, 'r') as f:
            ids = json.load(f)
    except json.JSONDecodeError as e:
        return [ValidationError("ids", "Invalid JSON", str(e))]

    errors = []
    if not isinstance(ids, list):
        return [ValidationError("ids", "Expected a JSON array")]

    if len(ids) != index.num_items:
        errors.append(ValidationError(
            "ids",
            "Length mismatch",
            f"{len(ids)} ids, {index.num_items} indexed items"
        ))

    if feature_ids is not None and ids != feature_ids:
        errors.append(ValidationError(
            "ids",
            "Order mismatch",
            "ids.json does not match footprint order"
        ))

    return errors


def validate_glb(glb_path: Path, feature_ids: Optional[list[str]] = None) -> list[ValidationError]:
    """Container structure plus a full load through trimesh."""
    if not glb_path.exists():
        return [ValidationError("glb", "File not found", str(glb_path))]

    data = glb_path.read_bytes()
    try:
        chunks = read_glb_chunks(data)
    except ValueError as e:
        return [ValidationError("glb", "Malformed container", str(e))]

    if not chunks or chunks[0][0] != CHUNK_JSON:
        return [ValidationError("glb", "First chunk is not JSON")]

    errors = []
    gltf = json.loads(chunks[0][1].decode("utf-8"))
    nodes = gltf.get("nodes", [])

    declared = sum(b.get("byteLength", 0) for b in gltf.get("buffers", []))
    bin_chunks = [payload for kind, payload in chunks if kind == CHUNK_BIN]
    if declared and (not bin_chunks or len(bin_chunks[0]) < declared):
        errors.append(ValidationError("glb", "BIN chunk shorter than declared buffer"))

    if feature_ids is not None:
        known = set(feature_ids)
        unknown = [n.get("name") for n in nodes if n.get("name") not in known]
        if unknown:
            errors.append(ValidationError(
                "glb",
                "Nodes without footprint",
                ", ".join(str(u) for u in unknown[:5])
            ))

    if not nodes:
        return errors

    scene = trimesh.load(str(glb_path), file_type="glb", force="scene")
    mesh_nodes = len(scene.graph.nodes_geometry)
    if mesh_nodes != len(nodes):
        errors.append(ValidationError(
            "glb",
            "Node count mismatch",
            f"{len(nodes)} nodes declared, {mesh_nodes} loaded with geometry"
        ))

    return errors


def validate_output(output: OutputConfig) -> tuple[bool, list[ValidationError]]:
    """
    Validate all export artifacts in one directory.

    Returns:
        (is_valid, list of errors)
    """
    print(f"Validating {output.footprints_path}...")
    feature_ids, errors = validate_footprints(output.footprints_path)
    print(f"  {len(feature_ids)} features")

    print(f"Validating {output.index_path} + {output.ids_path.name}...")
    errors.extend(validate_index(output.index_path, output.ids_path, feature_ids or None))

    print(f"Validating {output.glb_path}...")
    errors.extend(validate_glb(output.glb_path, feature_ids or None))

    return len(errors) == 0, errors


def print_summary(output_dir: Path, is_valid: bool, errors: list[ValidationError]) -> None:
    """Print validation summary."""
    print(f"\n{'='*60}")
    print(f"Directory: {output_dir}")
    print(f"Status: {'✓ VALID' if is_valid else '✗ INVALID'}")

    if errors:
        print(f"\nFound {len(errors)} issues:")
        for error in errors[:20]:  # Show first 20
            print(f"  • {error}")
        if len(errors) > 20:
            print(f"  ... and {len(errors) - 20} more")

    print(f"{'='*60}\n")

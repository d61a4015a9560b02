#!/usr/bin/env python3
"""
Command-line interface for the CityGML web export.

Usage:
    # Extruded massing for every .gml in a directory
    python -m citygml_export.cli extract --in data/sample --out out/sample

    # Detailed roof/wall/ground surfaces, first file only
    python -m citygml_export.cli extract --in data/sample --out out/sample --lod2 --single

    # Recenter output around a source-unit origin
    python -m citygml_export.cli extract --in data/sample --out out/sample --recenter 987000 211000

    # Check an export directory
    python -m citygml_export.cli validate out/sample --strict

    # Ids of buildings in a Web Mercator box
    python -m citygml_export.cli query out/sample --bbox -8238000 4970000 -8237000 4971000
"""

import argparse
import sys
from pathlib import Path

from .config import ExportConfig, ExtractConfig, OutputConfig, ProjectionConfig
from .pipeline import NoBuildingsError, run_export
from .spatial_index import load_index, query_ids
from .validate import print_summary, validate_output


def cmd_extract(args: argparse.Namespace) -> int:
    """Extract buildings and write all artifacts."""
    try:
        config = ExportConfig(
            projection=ProjectionConfig(
                recenter_origin=tuple(args.recenter) if args.recenter else None,
            ),
            extract=ExtractConfig(
                detailed=args.lod2,
                strict_poslist=args.strict_poslist,
                verbose=args.verbose,
            ),
            output=OutputConfig(
                output_dir=args.out,
                index_node_size=args.node_size,
            ),
            single=args.single,
        )
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    print(f"Input: {args.input}")
    print(f"Output: {args.out}")
    print(f"Mode: {'LOD2 surfaces' if args.lod2 else 'extruded massing'}")

    try:
        run_export(args.input, config)
    except NoBuildingsError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except (FileNotFoundError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        if args.verbose:
            import traceback
            traceback.print_exc()
        return 1
    except KeyboardInterrupt:
        print("\nCancelled")
        return 130

    print("\n✓ Export complete")
    return 0


def cmd_validate(args: argparse.Namespace) -> int:
    """Validate an export directory."""
    output = OutputConfig(output_dir=args.dir)
    is_valid, errors = validate_output(output)
    print_summary(args.dir, is_valid, errors)

    if args.strict and not is_valid:
        return 1
    return 0


def cmd_query(args: argparse.Namespace) -> int:
    """Print ids of buildings whose boxes intersect --bbox."""
    output = OutputConfig(output_dir=args.dir)
    try:
        index, ids = load_index(output.index_path, output.ids_path)
    except (OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    min_x, min_y, max_x, max_y = args.bbox
    if min_x > max_x or min_y > max_y:
        print("Error: --bbox must be minX minY maxX maxY", file=sys.stderr)
        return 2

    matches = query_ids(index, ids, (min_x, min_y, max_x, max_y))
    for building_id in matches:
        print(building_id)
    print(f"{len(matches)} of {index.num_items} buildings", file=sys.stderr)
    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Export CityGML buildings for a browser 3D viewer",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Extract command
    extract_parser = subparsers.add_parser(
        "extract", help="Extract footprints, spatial index and GLB meshes"
    )
    extract_parser.add_argument("--in", dest="input", type=Path, required=True,
                                help="CityGML file or directory of .gml files")
    extract_parser.add_argument("--out", type=Path, default=Path("out/sample"),
                                help="Output directory (default: out/sample)")
    extract_parser.add_argument("--lod2", action="store_true",
                                help="Triangulate roof/wall/ground surfaces instead of extruding footprints")
    extract_parser.add_argument("--single", action="store_true",
                                help="Process only the first input file (name order)")
    extract_parser.add_argument("--recenter", type=float, nargs=2, metavar=("X", "Y"),
                                help="Source-unit origin subtracted from all output coordinates")
    extract_parser.add_argument("--strict-poslist", action="store_true",
                                help="Fail a file on posLists with a trailing partial coordinate")
    extract_parser.add_argument("--node-size", type=int, default=16,
                                help="Spatial index node size (default: 16)")
    extract_parser.add_argument("-v", "--verbose", action="store_true",
                                help="Print every skipped ring and renamed id")

    # Validate command
    validate_parser = subparsers.add_parser("validate", help="Validate an export directory")
    validate_parser.add_argument("dir", type=Path, help="Export directory")
    validate_parser.add_argument("--strict", action="store_true",
                                 help="Exit with error code if validation fails")

    # Query command
    query_parser = subparsers.add_parser("query", help="Query the spatial index by bounding box")
    query_parser.add_argument("dir", type=Path, help="Export directory")
    query_parser.add_argument("--bbox", type=float, nargs=4, required=True,
                              metavar=("MIN_X", "MIN_Y", "MAX_X", "MAX_Y"),
                              help="Query box in output coordinates")

    args = parser.parse_args()

    if args.command == "extract":
        return cmd_extract(args)
    elif args.command == "validate":
        return cmd_validate(args)
    elif args.command == "query":
        return cmd_query(args)
    else:
        parser.print_help()
        return 0


if __name__ == "__main__":
    sys.exit(main())

"""
Write building footprints as a GeoJSON FeatureCollection.

Each feature carries the building id and height in meters; polygon
rings are closed on output (first point repeated at the end).
"""

import json
from pathlib import Path
from typing import Sequence

from .config import TARGET_CRS
from .models import Building


def building_to_feature(building: Building) -> dict:
    """GeoJSON Feature for one building."""
    ring = [list(p) for p in building.footprint]
    # Close the polygon (first point = last point)
    if ring[0] != ring[-1]:
        ring.append(list(ring[0]))

    return {
        "type": "Feature",
        "properties": {
            "id": building.id,
            "height_m": round(building.height_m, 2),
        },
        "geometry": {
            "type": "Polygon",
            "coordinates": [ring]  # GeoJSON: [[ring]]
        }
    }


def write_footprints(
    buildings: Sequence[Building],
    output_path: Path,
    crs_name: str = TARGET_CRS,
) -> int:
    """
    Write footprints.geojson.

    Args:
        buildings: Buildings in output order
        output_path: Output GeoJSON file path
        crs_name: Reference system of the coordinates

    Returns:
        Number of features written
    """
    geojson = {
        "type": "FeatureCollection",
        "crs": {
            "type": "name",
            "properties": {
                "name": crs_name
            }
        },
        "features": [building_to_feature(b) for b in buildings]
    }

    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, 'w') as f:
        json.dump(geojson, f)

    return len(geojson["features"])

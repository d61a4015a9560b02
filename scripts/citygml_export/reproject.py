"""
Reproject source coordinates to the output reference system.

Defaults to NYC State Plane (EPSG:2263, US feet) -> Web Mercator
(EPSG:3857, meters). Vertical values are never projected; they are only
scaled to meters.
"""

from typing import Sequence

import numpy as np
from numpy.typing import NDArray
from pyproj import Transformer
from pyproj.enums import TransformDirection
from pyproj.exceptions import CRSError

from .config import ProjectionConfig
from .models import Point2, Point3


class Reprojector:
    """Planar source -> target transform with an optional recentering offset."""

    def __init__(self, config: ProjectionConfig):
        self.config = config
        try:
            self.transformer = Transformer.from_crs(
                config.source_crs,
                config.target_crs,
                always_xy=True,  # x=easting, y=northing on both sides
            )
        except CRSError as e:
            raise ValueError(
                f"Unknown reference system {config.source_crs} -> {config.target_crs}: {e}"
            ) from e

        self.offset = (0.0, 0.0)
        if config.recenter_origin is not None:
            ox, oy = self.transformer.transform(*config.recenter_origin)
            self.offset = (float(ox), float(oy))

    @property
    def z_to_meters(self) -> float:
        return self.config.z_to_meters

    def forward_xy(self, x: float, y: float) -> Point2:
        """Transform one planar coordinate."""
        tx, ty = self.transformer.transform(x, y)
        return (float(tx) - self.offset[0], float(ty) - self.offset[1])

    def inverse_xy(self, x: float, y: float) -> Point2:
        """Target -> source, undoing the recentering offset first."""
        sx, sy = self.transformer.transform(
            x + self.offset[0],
            y + self.offset[1],
            direction=TransformDirection.INVERSE,
        )
        return (float(sx), float(sy))

    def project_ring_2d(self, ring: Sequence[Sequence[float]]) -> list[Point2]:
        """Transform a ring, keeping x/y only."""
        if not ring:
            return []
        arr = np.asarray(ring, dtype=np.float64)
        xs, ys = self.transformer.transform(arr[:, 0], arr[:, 1])
        xs = np.asarray(xs, dtype=np.float64) - self.offset[0]
        ys = np.asarray(ys, dtype=np.float64) - self.offset[1]
        return list(zip(xs.tolist(), ys.tolist()))

    def project_points(self, points: Sequence[Point3]) -> NDArray[np.float64]:
        """Transform 3D points to an (n, 3) array; z is scaled to meters."""
        arr = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        if not len(arr):
            return arr
        xs, ys = self.transformer.transform(arr[:, 0], arr[:, 1])
        return np.column_stack([
            np.asarray(xs, dtype=np.float64) - self.offset[0],
            np.asarray(ys, dtype=np.float64) - self.offset[1],
            arr[:, 2] * self.z_to_meters,
        ])

"""
Static packed Hilbert R-tree, byte-compatible with Flatbush v3.

The browser loads index.bin with `Flatbush.from(buffer)` and maps the
returned item numbers to building ids through ids.json (same order).

Binary layout (little endian):
    Header (8 bytes):
        0   uint8    magic 0xFB
        1   uint8    (version << 4) | array type (8 = Float64Array)
        2   uint16   node size
        4   uint32   number of items
    Boxes:   float64[num_nodes * 4]   (minX, minY, maxX, maxY) per node
    Indices: uint16[num_nodes] if num_nodes < 16384 else uint32[num_nodes]

Leaves come first (sorted by Hilbert value of their box centers), then
each parent level; the root is the last node. A leaf's index entry is
the original item number; a parent's entry is the box offset (in
floats) of its first child.

Usage:
    index = StaticIndex(len(buildings))
    for b in buildings:
        index.add(*b.bbox())
    index.finish()
    Path("index.bin").write_bytes(index.to_bytes())
"""

import json
import struct
from bisect import bisect_right
from pathlib import Path
from typing import Optional, Sequence

import numpy as np
from numpy.typing import NDArray

from .models import Building


MAGIC = 0xFB
VERSION = 3
FLOAT64_ARRAY_TYPE = 8
HEADER_SIZE = 8
HILBERT_MAX = (1 << 16) - 1
DEFAULT_NODE_SIZE = 16
MAX_UINT16_NODES = 16384


def hilbert(x: NDArray, y: NDArray) -> NDArray[np.uint32]:
    """Hilbert curve distance of 16-bit (x, y) grid cells, vectorized."""
    x = np.asarray(x, dtype=np.int64)
    y = np.asarray(y, dtype=np.int64)

    a = x ^ y
    b = 0xFFFF ^ a
    c = 0xFFFF ^ (x | y)
    d = x & (y ^ 0xFFFF)

    A = a | (b >> 1)
    B = (a >> 1) ^ a
    C = ((c >> 1) ^ (b & (d >> 1))) ^ c
    D = ((a & (c >> 1)) ^ (d >> 1)) ^ d

    a, b, c, d = A, B, C, D
    A = (a & (a >> 2)) ^ (b & (b >> 2))
    B = (a & (b >> 2)) ^ (b & ((a ^ b) >> 2))
    C = c ^ ((a & (c >> 2)) ^ (b & (d >> 2)))
    D = d ^ ((b & (c >> 2)) ^ ((a ^ b) & (d >> 2)))

    a, b, c, d = A, B, C, D
    A = (a & (a >> 4)) ^ (b & (b >> 4))
    B = (a & (b >> 4)) ^ (b & ((a ^ b) >> 4))
    C = c ^ ((a & (c >> 4)) ^ (b & (d >> 4)))
    D = d ^ ((b & (c >> 4)) ^ ((a ^ b) & (d >> 4)))

    a, b, c, d = A, B, C, D
    C = c ^ ((a & (c >> 8)) ^ (b & (d >> 8)))
    D = d ^ ((b & (c >> 8)) ^ ((a ^ b) & (d >> 8)))

    a = C ^ (C >> 1)
    b = D ^ (D >> 1)

    i0 = x ^ y
    i1 = b | (0xFFFF ^ (i0 | a))

    i0 = (i0 | (i0 << 8)) & 0x00FF00FF
    i0 = (i0 | (i0 << 4)) & 0x0F0F0F0F
    i0 = (i0 | (i0 << 2)) & 0x33333333
    i0 = (i0 | (i0 << 1)) & 0x55555555

    i1 = (i1 | (i1 << 8)) & 0x00FF00FF
    i1 = (i1 | (i1 << 4)) & 0x0F0F0F0F
    i1 = (i1 | (i1 << 2)) & 0x33333333
    i1 = (i1 | (i1 << 1)) & 0x55555555

    return (((i1 << 1) | i0) & 0xFFFFFFFF).astype(np.uint32)


def level_bounds(num_items: int, node_size: int) -> list[int]:
    """End offset (in floats) of each tree level, leaves first."""
    n = num_items
    num_nodes = n
    bounds = [n * 4]
    while True:
        n = -(-n // node_size)
        num_nodes += n
        bounds.append(num_nodes * 4)
        if n == 1:
            break
    return bounds


class StaticIndex:
    """Packed R-tree over a fixed number of 2D boxes."""

    def __init__(self, num_items: int, node_size: int = DEFAULT_NODE_SIZE):
        if num_items <= 0:
            raise ValueError(f"num_items must be greater than zero, got {num_items}")
        if not 2 <= node_size <= 65535:
            raise ValueError(f"node_size must be in [2, 65535], got {node_size}")

        self.num_items = num_items
        self.node_size = node_size
        self.level_bounds = level_bounds(num_items, node_size)
        self.num_nodes = self.level_bounds[-1] // 4

        index_dtype = np.uint16 if self.num_nodes < MAX_UINT16_NODES else np.uint32
        self.boxes = np.zeros(self.num_nodes * 4, dtype=np.float64)
        self.indices = np.zeros(self.num_nodes, dtype=index_dtype)

        self._pos = 0
        self.finished = False
        self.min_x = np.inf
        self.min_y = np.inf
        self.max_x = -np.inf
        self.max_y = -np.inf

    def add(self, min_x: float, min_y: float, max_x: float, max_y: float) -> int:
        """Add one box; returns its item number (insertion order)."""
        if self.finished:
            raise ValueError("Index is already finished")
        index = self._pos >> 2
        if index >= self.num_items:
            raise ValueError(f"Added more than {self.num_items} items")

        self.indices[index] = index
        self.boxes[self._pos:self._pos + 4] = (min_x, min_y, max_x, max_y)
        self._pos += 4

        self.min_x = min(self.min_x, min_x)
        self.min_y = min(self.min_y, min_y)
        self.max_x = max(self.max_x, max_x)
        self.max_y = max(self.max_y, max_y)
        return index

    def finish(self) -> "StaticIndex":
        """Sort leaves along the Hilbert curve and build the parent levels."""
        if self.finished:
            raise ValueError("Index is already finished")
        if self._pos >> 2 != self.num_items:
            raise ValueError(
                f"Added {self._pos >> 2} items when expected {self.num_items}"
            )

        n = self.num_items
        boxes = self.boxes

        if n <= self.node_size:
            # Single root over all leaves
            boxes[self._pos:self._pos + 4] = (self.min_x, self.min_y, self.max_x, self.max_y)
            self._pos += 4
            self.finished = True
            return self

        width = (self.max_x - self.min_x) or 1.0
        height = (self.max_y - self.min_y) or 1.0

        leaves = boxes[:n * 4].reshape(n, 4)
        cx = np.floor(HILBERT_MAX * ((leaves[:, 0] + leaves[:, 2]) / 2 - self.min_x) / width)
        cy = np.floor(HILBERT_MAX * ((leaves[:, 1] + leaves[:, 3]) / 2 - self.min_y) / height)
        values = hilbert(cx.astype(np.int64), cy.astype(np.int64))

        order = np.argsort(values, kind="stable")
        leaves[:] = leaves[order]
        self.indices[:n] = self.indices[:n][order]

        start = 0
        for end in self.level_bounds[:-1]:
            children = boxes[start:end].reshape(-1, 4)
            starts = np.arange(0, len(children), self.node_size)

            parents = np.column_stack([
                np.minimum.reduceat(children[:, 0], starts),
                np.minimum.reduceat(children[:, 1], starts),
                np.maximum.reduceat(children[:, 2], starts),
                np.maximum.reduceat(children[:, 3], starts),
            ])

            first = self._pos >> 2
            self.indices[first:first + len(starts)] = start + starts * 4
            boxes[self._pos:self._pos + parents.size] = parents.ravel()
            self._pos += parents.size
            start = end

        self.finished = True
        return self

    def search(
        self,
        min_x: float,
        min_y: float,
        max_x: float,
        max_y: float,
    ) -> list[int]:
        """Item numbers whose boxes intersect the query box (edges inclusive)."""
        if not self.finished:
            raise ValueError("Data not yet indexed - call index.finish()")

        boxes = self.boxes
        leaf_end = self.num_items * 4
        node_index: Optional[int] = len(boxes) - 4
        queue: list[int] = []
        results: list[int] = []

        while node_index is not None:
            upper = self.level_bounds[bisect_right(self.level_bounds, node_index)]
            end = min(node_index + self.node_size * 4, upper)

            for pos in range(node_index, end, 4):
                if (
                    max_x < boxes[pos]
                    or max_y < boxes[pos + 1]
                    or min_x > boxes[pos + 2]
                    or min_y > boxes[pos + 3]
                ):
                    continue
                index = int(self.indices[pos >> 2])
                if node_index >= leaf_end:
                    queue.append(index)
                else:
                    results.append(index)

            node_index = queue.pop() if queue else None

        return results

    def to_bytes(self) -> bytes:
        if not self.finished:
            raise ValueError("Data not yet indexed - call index.finish()")
        header = struct.pack(
            "<BBHI",
            MAGIC,
            (VERSION << 4) | FLOAT64_ARRAY_TYPE,
            self.node_size,
            self.num_items,
        )
        index_dtype = "<u2" if self.indices.dtype == np.uint16 else "<u4"
        return (
            header
            + self.boxes.astype("<f8").tobytes()
            + self.indices.astype(index_dtype).tobytes()
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> "StaticIndex":
        """Load a serialized index (the inverse of to_bytes)."""
        if len(data) < HEADER_SIZE:
            raise ValueError("Data is too short for an index header")

        magic, version_type, node_size, num_items = struct.unpack_from("<BBHI", data, 0)
        if magic != MAGIC:
            raise ValueError("Data does not appear to be in a packed R-tree format")
        if version_type >> 4 != VERSION:
            raise ValueError(f"Got v{version_type >> 4} data when expected v{VERSION}")
        if version_type & 0x0F != FLOAT64_ARRAY_TYPE:
            raise ValueError(f"Unsupported box array type {version_type & 0x0F}")

        index = cls(num_items, node_size)
        boxes_size = index.num_nodes * 4 * 8
        index_dtype = "<u2" if index.indices.dtype == np.uint16 else "<u4"
        expected = HEADER_SIZE + boxes_size + index.num_nodes * np.dtype(index_dtype).itemsize
        if len(data) != expected:
            raise ValueError(f"Index data is {len(data)} bytes, expected {expected}")

        index.boxes = np.frombuffer(
            data, dtype="<f8", count=index.num_nodes * 4, offset=HEADER_SIZE
        ).astype(np.float64)
        index.indices = np.frombuffer(
            data, dtype=index_dtype, count=index.num_nodes, offset=HEADER_SIZE + boxes_size
        ).astype(index.indices.dtype)
        index._pos = index.num_nodes * 4
        index.min_x, index.min_y, index.max_x, index.max_y = (float(v) for v in index.boxes[-4:])
        index.finished = True
        return index


def build_index(buildings: Sequence[Building], node_size: int = DEFAULT_NODE_SIZE) -> StaticIndex:
    """Index building footprint boxes; item i is buildings[i]."""
    index = StaticIndex(len(buildings), node_size)
    for building in buildings:
        index.add(*building.bbox())
    return index.finish()


def write_index(
    buildings: Sequence[Building],
    index_path: Path,
    ids_path: Path,
    node_size: int = DEFAULT_NODE_SIZE,
) -> StaticIndex:
    """
    Write index.bin and its companion ids.json.

    ids.json is a JSON array where position i holds the id of item i.
    """
    index = build_index(buildings, node_size)

    index_path.parent.mkdir(parents=True, exist_ok=True)
    index_path.write_bytes(index.to_bytes())

    ids_path.parent.mkdir(parents=True, exist_ok=True)
    with open(ids_path, 'w') as f:
        json.dump([b.id for b in buildings], f)

    return index


def load_index(index_path: Path, ids_path: Path) -> tuple[StaticIndex, list[str]]:
    """Read an index and its id list, checking they line up."""
    index = StaticIndex.from_bytes(index_path.read_bytes())
    with open(ids_path, 'r') as f:
        ids = json.load(f)
    if len(ids) != index.num_items:
        raise ValueError(
            f"{ids_path.name} has {len(ids)} ids but the index has {index.num_items} items"
        )
    return index, ids


def query_ids(
    index: StaticIndex,
    ids: Sequence[str],
    bbox: tuple[float, float, float, float],
) -> list[str]:
    """Ids of buildings whose footprint boxes intersect bbox, sorted by item number."""
    return [ids[i] for i in sorted(index.search(*bbox))]

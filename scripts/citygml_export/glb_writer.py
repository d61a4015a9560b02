"""
Write building meshes into a single binary glTF 2.0 (GLB) container.

One mesh + one node per building. Each building's vertices are stored
relative to its own centroid, and the centroid goes into the node's
translation; this keeps float32 positions precise at Web Mercator
magnitudes (~1e7 m).

GLB layout (little endian):
    Header (12 bytes):  magic "glTF", version 2, total length
    JSON chunk:         length, type "JSON", UTF-8 JSON padded with spaces
    BIN chunk:          length, type "BIN\\0", buffer padded with zeros

Buffer views are packed back to back in building order:
    positions_0, indices_0, positions_1, indices_1, ...
Positions are float32 VEC3 (with min/max), indices uint32 SCALAR.
"""

import json
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

import numpy as np

from .models import Building


GLB_MAGIC = 0x46546C67  # "glTF"
GLB_VERSION = 2
GLB_HEADER_SIZE = 12
CHUNK_HEADER_SIZE = 8
CHUNK_JSON = 0x4E4F534A  # "JSON"
CHUNK_BIN = 0x004E4942  # "BIN\0"

# glTF enums
COMPONENT_FLOAT = 5126
COMPONENT_UNSIGNED_INT = 5125
TARGET_ARRAY_BUFFER = 34962
TARGET_ELEMENT_ARRAY_BUFFER = 34963
MODE_TRIANGLES = 4


def pad4(length: int) -> int:
    return (length + 3) & ~3


class BufferWriter:
    """Append-only byte buffer that reports where each block landed."""

    def __init__(self):
        self._parts: list[bytes] = []
        self.length = 0

    def append(self, data: bytes) -> tuple[int, int]:
        """Returns (byte_offset, byte_length) of the appended block."""
        offset = self.length
        self._parts.append(data)
        self.length += len(data)
        return offset, len(data)

    def align(self, boundary: int = 4) -> None:
        remainder = self.length % boundary
        if remainder:
            self.append(b"\x00" * (boundary - remainder))

    def getvalue(self) -> bytes:
        return b"".join(self._parts)


@dataclass
class GlbSummary:
    path: Path
    nodes: int
    vertices: int
    triangles: int
    byte_length: int


def mesh_buildings(buildings: Sequence[Building]) -> list[Building]:
    """Buildings that actually carry triangles."""
    return [b for b in buildings if b.mesh is not None and b.mesh.triangle_count]


def build_gltf(buildings: Sequence[Building]) -> tuple[dict, bytes]:
    """Assemble the glTF JSON document and its binary buffer."""
    buffer = BufferWriter()
    gltf = {
        "asset": {"version": "2.0", "generator": "citygml-export"},
        "scene": 0,
        "scenes": [{"nodes": []}],
        "nodes": [],
        "meshes": [],
        "accessors": [],
        "bufferViews": [],
        "buffers": [],
    }

    for building in mesh_buildings(buildings):
        mesh = building.mesh
        vertices = mesh.vertices
        center = vertices.mean(axis=0)
        local = (vertices - center).astype(np.float32)

        # positions (float32 VEC3, 12 bytes per vertex keeps 4-byte alignment)
        pos_offset, pos_length = buffer.append(local.astype("<f4").tobytes())
        gltf["bufferViews"].append({
            "buffer": 0,
            "byteOffset": pos_offset,
            "byteLength": pos_length,
            "target": TARGET_ARRAY_BUFFER,
        })
        gltf["accessors"].append({
            "bufferView": len(gltf["bufferViews"]) - 1,
            "componentType": COMPONENT_FLOAT,
            "count": mesh.vertex_count,
            "type": "VEC3",
            "min": [float(v) for v in local.min(axis=0)],
            "max": [float(v) for v in local.max(axis=0)],
        })
        position_accessor = len(gltf["accessors"]) - 1

        idx_offset, idx_length = buffer.append(mesh.indices.astype("<u4").tobytes())
        gltf["bufferViews"].append({
            "buffer": 0,
            "byteOffset": idx_offset,
            "byteLength": idx_length,
            "target": TARGET_ELEMENT_ARRAY_BUFFER,
        })
        gltf["accessors"].append({
            "bufferView": len(gltf["bufferViews"]) - 1,
            "componentType": COMPONENT_UNSIGNED_INT,
            "count": int(mesh.indices.size),
            "type": "SCALAR",
        })
        index_accessor = len(gltf["accessors"]) - 1

        gltf["meshes"].append({
            "name": building.id,
            "primitives": [{
                "attributes": {"POSITION": position_accessor},
                "indices": index_accessor,
                "mode": MODE_TRIANGLES,
            }],
        })
        gltf["nodes"].append({
            "name": building.id,
            "mesh": len(gltf["meshes"]) - 1,
            "translation": [float(v) for v in center],
        })
        gltf["scenes"][0]["nodes"].append(len(gltf["nodes"]) - 1)

    binary = buffer.getvalue()
    if binary:
        gltf["buffers"].append({"byteLength": len(binary)})
    else:
        # Empty scene: glTF forbids empty arrays
        for key in ("nodes", "meshes", "accessors", "bufferViews", "buffers"):
            del gltf[key]
        del gltf["scenes"][0]["nodes"]

    return gltf, binary


def encode_glb(gltf: dict, binary: bytes) -> bytes:
    """Pack a glTF document and buffer into GLB bytes."""
    json_bytes = json.dumps(gltf, separators=(",", ":")).encode("utf-8")
    json_bytes += b" " * (pad4(len(json_bytes)) - len(json_bytes))

    chunks = bytearray()
    chunks.extend(struct.pack("<II", len(json_bytes), CHUNK_JSON))
    chunks.extend(json_bytes)

    if binary:
        bin_bytes = binary + b"\x00" * (pad4(len(binary)) - len(binary))
        chunks.extend(struct.pack("<II", len(bin_bytes), CHUNK_BIN))
        chunks.extend(bin_bytes)

    total = GLB_HEADER_SIZE + len(chunks)
    header = struct.pack("<III", GLB_MAGIC, GLB_VERSION, total)
    return header + bytes(chunks)


def build_glb(buildings: Sequence[Building]) -> bytes:
    gltf, binary = build_gltf(buildings)
    return encode_glb(gltf, binary)


def write_glb(buildings: Sequence[Building], output_path: Path) -> GlbSummary:
    """
    Write buildings.glb.

    Buildings without a mesh are left out of the scene but stay in the
    footprints and index outputs.
    """
    meshed = mesh_buildings(buildings)
    data = build_glb(meshed)

    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_bytes(data)

    return GlbSummary(
        path=output_path,
        nodes=len(meshed),
        vertices=sum(b.mesh.vertex_count for b in meshed),
        triangles=sum(b.mesh.triangle_count for b in meshed),
        byte_length=len(data),
    )


def read_glb_header(data: bytes) -> tuple[int, int, int]:
    """(magic, version, declared length) of a GLB blob."""
    if len(data) < GLB_HEADER_SIZE:
        raise ValueError("Data is too short for a GLB header")
    return struct.unpack_from("<III", data, 0)


def read_glb_chunks(data: bytes) -> list[tuple[int, bytes]]:
    """Split a GLB blob into (chunk_type, payload) pairs."""
    magic, version, length = read_glb_header(data)
    if magic != GLB_MAGIC:
        raise ValueError("Not a GLB file (bad magic)")
    if version != GLB_VERSION:
        raise ValueError(f"Unsupported GLB version {version}")
    if length != len(data):
        raise ValueError(f"GLB header declares {length} bytes, file has {len(data)}")

    chunks = []
    offset = GLB_HEADER_SIZE
    while offset < length:
        if offset + CHUNK_HEADER_SIZE > length:
            raise ValueError(f"Truncated chunk header at byte {offset}")
        chunk_length, chunk_type = struct.unpack_from("<II", data, offset)
        if chunk_length % 4:
            raise ValueError(f"Chunk at byte {offset} has unaligned length {chunk_length}")
        start = offset + CHUNK_HEADER_SIZE
        end = start + chunk_length
        if end > length:
            raise ValueError(f"Chunk at byte {offset} runs past end of file")
        chunks.append((chunk_type, data[start:end]))
        offset = end
    return chunks

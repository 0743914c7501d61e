"""Flat triangle buffers exchanged with mesh import/export pipelines."""

from dataclasses import dataclass
from typing import Optional

import numpy as np
from numpy.typing import NDArray


@dataclass
class BufferGeometry:
    """Stores vertex attribute arrays for a triangle mesh.

    positions: flat float32 array (x,y,z per vertex)
    normals: flat float32 array, same layout as positions
    indices: triangle index array (uint32), optional for non-indexed geometry
    """
    positions: NDArray[np.float32]
    normals: Optional[NDArray[np.float32]] = None
    indices: Optional[NDArray[np.uint32]] = None
    vertex_count: int = 0

    def __post_init__(self):
        self.positions = np.asarray(self.positions, dtype=np.float32).ravel()
        if self.indices is not None:
            self.indices = np.asarray(self.indices, dtype=np.uint32).ravel()
        if self.vertex_count == 0:
            self.vertex_count = len(self.positions) // 3
        if self.normals is None:
            self.compute_normals()

    @property
    def triangle_count(self) -> int:
        if self.indices is not None:
            return len(self.indices) // 3
        return self.vertex_count // 3

    @property
    def has_indices(self) -> bool:
        return self.indices is not None and len(self.indices) > 0

    def triangles(self) -> NDArray[np.uint32]:
        """(T, 3) vertex indices, synthesised for non-indexed geometry."""
        if self.has_indices:
            return self.indices.reshape(-1, 3)
        return np.arange(self.vertex_count - self.vertex_count % 3, dtype=np.uint32).reshape(-1, 3)

    def compute_normals(self) -> None:
        """Area-weighted per-vertex normals accumulated from triangle normals."""
        pos = self.positions.reshape(-1, 3).astype(np.float64)
        norms = np.zeros_like(pos)
        tris = self.triangles()
        if len(tris):
            v0, v1, v2 = pos[tris[:, 0]], pos[tris[:, 1]], pos[tris[:, 2]]
            face_normals = np.cross(v1 - v0, v2 - v0)
            for corner in range(3):
                np.add.at(norms, tris[:, corner], face_normals)

        lengths = np.linalg.norm(norms, axis=1, keepdims=True)
        lengths = np.maximum(lengths, 1e-10)
        norms /= lengths
        self.normals = norms.ravel().astype(np.float32)


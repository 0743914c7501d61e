"""BMesh polygon mesh with non-manifold topology navigation."""

from skelforge.mesh.bmesh import BMesh, Edge, Face, Loop, Vertex

__all__ = ["BMesh", "Edge", "Face", "Loop", "Vertex"]

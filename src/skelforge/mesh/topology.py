"""Topological navigation over a :class:`BMesh`.

Functions accept element ids or the element records themselves.  Stale
ids (pointing at removed or never-created elements) are dropped rather
than raising, and ring walks stop on the first revisit so a malformed
mesh cannot loop forever.
"""

import logging
from typing import Optional, Union

from skelforge.mesh.bmesh import BMesh, Edge, Face, Loop, Vertex

logger = logging.getLogger(__name__)

EdgeRef = Union[int, Edge]
FaceRef = Union[int, Face]
VertexRef = Union[int, Vertex]


def _edge(mesh: BMesh, edge: EdgeRef) -> Optional[Edge]:
    return edge if isinstance(edge, Edge) else mesh.get_edge(edge)


def _face(mesh: BMesh, face: FaceRef) -> Optional[Face]:
    return face if isinstance(face, Face) else mesh.get_face(face)


def _vertex(mesh: BMesh, vertex: VertexRef) -> Optional[Vertex]:
    return vertex if isinstance(vertex, Vertex) else mesh.get_vertex(vertex)


def _walk(mesh: BMesh, start: Optional[int], pointer: str) -> tuple[list[Loop], bool]:
    """Follow ``pointer`` from loop ``start``; returns (loops, closed_ring)."""
    loops: list[Loop] = []
    seen: set[int] = set()
    lid = start
    while lid is not None and lid not in seen:
        loop = mesh.get_loop(lid)
        if loop is None:
            return loops, False
        seen.add(lid)
        loops.append(loop)
        lid = getattr(loop, pointer)
    return loops, lid == start


# ------------------------------------------------------------------
# Edges
# ------------------------------------------------------------------

def edge_loops(mesh: BMesh, edge: EdgeRef) -> list[Loop]:
    """Every loop using the edge, however many faces share it."""
    edge_id = edge.id if isinstance(edge, Edge) else edge
    return [loop for loop in mesh.loops.values() if loop.edge == edge_id]


def radial_loops(mesh: BMesh, loop: Union[int, Loop]) -> list[Loop]:
    """Loops around the edge of ``loop``, following ``radial_next``."""
    start = loop.id if isinstance(loop, Loop) else loop
    loops, _ = _walk(mesh, start, "radial_next")
    return loops


def edge_faces(mesh: BMesh, edge: EdgeRef) -> list[Face]:
    """Faces recorded on the edge; missing ids are skipped."""
    record = _edge(mesh, edge)
    if record is None:
        return []
    return [f for f in (mesh.get_face(fid) for fid in record.faces) if f is not None]


def is_edge_manifold(mesh: BMesh, edge: EdgeRef) -> bool:
    record = _edge(mesh, edge)
    return record is not None and len(record.faces) == 2


def is_edge_boundary(mesh: BMesh, edge: EdgeRef) -> bool:
    record = _edge(mesh, edge)
    return record is not None and len(record.faces) == 1


def is_edge_non_manifold(mesh: BMesh, edge: EdgeRef) -> bool:
    record = _edge(mesh, edge)
    return record is not None and len(record.faces) > 2


def boundary_edges(mesh: BMesh) -> list[int]:
    return [eid for eid, edge in mesh.edges.items() if len(edge.faces) == 1]


def non_manifold_edges(mesh: BMesh) -> list[int]:
    return [eid for eid, edge in mesh.edges.items() if len(edge.faces) > 2]


# ------------------------------------------------------------------
# Vertices
# ------------------------------------------------------------------

def vertex_faces(mesh: BMesh, vertex: VertexRef) -> list[Face]:
    vertex_id = vertex.id if isinstance(vertex, Vertex) else vertex
    return [face for face in mesh.faces.values() if vertex_id in face.vertices]


def vertex_edges(mesh: BMesh, vertex: VertexRef) -> list[Edge]:
    record = _vertex(mesh, vertex)
    if record is None:
        return []
    return [e for e in (mesh.get_edge(eid) for eid in record.edges) if e is not None]


# ------------------------------------------------------------------
# Faces
# ------------------------------------------------------------------

def face_loops(mesh: BMesh, face: FaceRef) -> list[Loop]:
    """Loops of the face boundary in ``next`` order, from its first loop.

    Stops at the first revisited or missing loop and returns what was
    collected so far.
    """
    record = _face(mesh, face)
    if record is None or not record.loops:
        return []
    loops, closed = _walk(mesh, record.loops[0], "next")
    if not closed:
        logger.warning("Face %d has a malformed loop ring (%d loops walked)",
                       record.id, len(loops))
    return loops


def face_vertices_ordered(mesh: BMesh, face: FaceRef) -> list[int]:
    return [loop.vertex for loop in face_loops(mesh, face)]

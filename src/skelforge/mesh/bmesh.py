"""BMesh: half-edge style polygon mesh with non-manifold support.

A mesh holds four id-keyed tables:

* vertices - position, attribute bag, ids of connected edges
* edges    - unordered vertex pair, ids of adjacent faces (any number)
* loops    - one per face corner: vertex, outgoing edge, face, the
             ``next``/``prev`` ring around the face and the
             ``radial_next``/``radial_prev`` ring around the edge
* faces    - ordered vertex list (n-gons allowed), edges, loops, normal

Ids come from per-table counters and are never reused.  Per-corner data
such as UVs lives on loops, so a vertex shared by faces with different UV
islands needs no splitting.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

import numpy as np
from numpy.typing import NDArray

from skelforge.core.mesh import BufferGeometry

logger = logging.getLogger(__name__)

Position = tuple[float, float, float]


def _as_position(value) -> Position:
    x, y, z = (float(c) for c in value)
    return (x, y, z)


@dataclass
class Vertex:
    id: int
    position: Position
    edges: list[int] = field(default_factory=list)
    attributes: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if len(self.position) != 3:
            raise ValueError(f"Vertex position needs 3 components, got {len(self.position)}")
        self.position = _as_position(self.position)

    def get_attribute(self, name: str) -> Any:
        return self.attributes.get(name)

    def set_attribute(self, name: str, value: Any) -> None:
        self.attributes[name] = value

    def add_edge(self, edge_id: int) -> None:
        if edge_id not in self.edges:
            self.edges.append(edge_id)

    def remove_edge(self, edge_id: int) -> None:
        if edge_id in self.edges:
            self.edges.remove(edge_id)


@dataclass
class Edge:
    id: int
    vertices: tuple[int, int]
    faces: list[int] = field(default_factory=list)
    attributes: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if len(self.vertices) != 2:
            raise ValueError(f"Edge needs exactly 2 vertices, got {len(self.vertices)}")
        self.vertices = (self.vertices[0], self.vertices[1])

    def get_attribute(self, name: str) -> Any:
        return self.attributes.get(name)

    def set_attribute(self, name: str, value: Any) -> None:
        self.attributes[name] = value

    def add_face(self, face_id: int) -> None:
        if face_id not in self.faces:
            self.faces.append(face_id)

    def remove_face(self, face_id: int) -> None:
        if face_id in self.faces:
            self.faces.remove(face_id)

    def connects_to(self, vertex_id: int) -> bool:
        return vertex_id in self.vertices

    def other_vertex(self, vertex_id: int) -> Optional[int]:
        v1, v2 = self.vertices
        if vertex_id == v1:
            return v2
        if vertex_id == v2:
            return v1
        return None


@dataclass
class Loop:
    """A face corner; ``edge`` leaves ``vertex`` towards the next corner."""
    id: int
    vertex: int
    edge: int
    face: int
    next: Optional[int] = None
    prev: Optional[int] = None
    radial_next: Optional[int] = None
    radial_prev: Optional[int] = None
    attributes: dict[str, Any] = field(default_factory=dict)

    def get_attribute(self, name: str) -> Any:
        return self.attributes.get(name)

    def set_attribute(self, name: str, value: Any) -> None:
        self.attributes[name] = value


@dataclass
class Face:
    id: int
    vertices: list[int]
    edges: list[int] = field(default_factory=list)
    loops: list[int] = field(default_factory=list)
    normal: Optional[Position] = None
    attributes: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if len(self.vertices) < 3:
            raise ValueError(f"Face needs at least 3 vertices, got {len(self.vertices)}")
        self.vertices = list(self.vertices)

    @property
    def degree(self) -> int:
        return len(self.vertices)

    def is_triangle(self) -> bool:
        return len(self.vertices) == 3

    def is_quad(self) -> bool:
        return len(self.vertices) == 4

    def is_ngon(self) -> bool:
        return len(self.vertices) > 4

    def get_attribute(self, name: str) -> Any:
        return self.attributes.get(name)

    def set_attribute(self, name: str, value: Any) -> None:
        self.attributes[name] = value

    def add_edge(self, edge_id: int) -> None:
        if edge_id not in self.edges:
            self.edges.append(edge_id)

    def add_loop(self, loop_id: int) -> None:
        if loop_id not in self.loops:
            self.loops.append(loop_id)

    def set_normal(self, normal) -> None:
        self.normal = _as_position(normal)


class BMesh:
    """Mutable mesh container; ``add_*`` methods return the new element id."""

    def __init__(self):
        self.vertices: dict[int, Vertex] = {}
        self.edges: dict[int, Edge] = {}
        self.loops: dict[int, Loop] = {}
        self.faces: dict[int, Face] = {}
        self.next_vertex_id = 0
        self.next_edge_id = 0
        self.next_loop_id = 0
        self.next_face_id = 0

    # ------------------------------------------------------------------
    # Element allocation
    # ------------------------------------------------------------------

    def add_vertex(self, position, attributes: Optional[dict] = None) -> int:
        vid = self.next_vertex_id
        self.vertices[vid] = Vertex(vid, position, attributes=dict(attributes or {}))
        self.next_vertex_id += 1
        return vid

    def add_edge(self, vertices: Sequence[int], attributes: Optional[dict] = None) -> int:
        """Add an edge and register it on both endpoint vertices."""
        eid = self.next_edge_id
        edge = Edge(eid, tuple(vertices), attributes=dict(attributes or {}))
        for vid in edge.vertices:
            vertex = self.vertices.get(vid)
            if vertex is not None:
                vertex.add_edge(eid)
        self.edges[eid] = edge
        self.next_edge_id += 1
        return eid

    def add_loop(
        self, vertex: int, edge: int, face: int, attributes: Optional[dict] = None, **links,
    ) -> int:
        """Add a loop; ``links`` may set next/prev/radial_next/radial_prev."""
        lid = self.next_loop_id
        self.loops[lid] = Loop(lid, vertex, edge, face, attributes=dict(attributes or {}), **links)
        self.next_loop_id += 1
        return lid

    def add_face(
        self,
        vertices: Sequence[int],
        normal=None,
        attributes: Optional[dict] = None,
    ) -> int:
        """Add a face over ``vertices`` (at least 3), kept in the given order."""
        fid = self.next_face_id
        face = Face(fid, list(vertices), attributes=dict(attributes or {}))
        if normal is not None:
            face.set_normal(normal)
        self.faces[fid] = face
        self.next_face_id += 1
        return fid

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get_vertex(self, vertex_id: int) -> Optional[Vertex]:
        return self.vertices.get(vertex_id)

    def get_edge(self, edge_id: int) -> Optional[Edge]:
        return self.edges.get(edge_id)

    def get_loop(self, loop_id: int) -> Optional[Loop]:
        return self.loops.get(loop_id)

    def get_face(self, face_id: int) -> Optional[Face]:
        return self.faces.get(face_id)

    def vertices_list(self) -> list[Vertex]:
        return list(self.vertices.values())

    def edges_list(self) -> list[Edge]:
        return list(self.edges.values())

    def loops_list(self) -> list[Loop]:
        return list(self.loops.values())

    def faces_list(self) -> list[Face]:
        return list(self.faces.values())

    def counts(self) -> dict[str, int]:
        return {
            "vertices": len(self.vertices),
            "edges": len(self.edges),
            "loops": len(self.loops),
            "faces": len(self.faces),
        }

    def find_edge(self, v1: int, v2: int) -> Optional[int]:
        """Id of an edge joining ``v1`` and ``v2`` in either direction."""
        vertex = self.vertices.get(v1)
        if vertex is None:
            return None
        for eid in vertex.edges:
            edge = self.edges.get(eid)
            if edge is not None and edge.other_vertex(v1) == v2:
                return eid
        return None

    # ------------------------------------------------------------------
    # Navigation rings
    # ------------------------------------------------------------------

    def link_face_loops(self, face_id: int) -> None:
        """Close the face's loops into a next/prev ring in face order."""
        loop_ids = self.faces[face_id].loops
        n = len(loop_ids)
        for i, lid in enumerate(loop_ids):
            loop = self.loops.get(lid)
            if loop is None:
                continue
            loop.next = loop_ids[(i + 1) % n]
            loop.prev = loop_ids[(i - 1) % n]

    def link_radial_loops(self) -> None:
        """Link all loops sharing an edge into a radial_next/radial_prev ring.

        Any number of loops may share an edge, so non-manifold fans form
        one ring.  A lone loop points at itself.
        """
        by_edge: dict[int, list[int]] = {}
        for lid, loop in self.loops.items():
            by_edge.setdefault(loop.edge, []).append(lid)
        for loop_ids in by_edge.values():
            n = len(loop_ids)
            for i, lid in enumerate(loop_ids):
                loop = self.loops[lid]
                loop.radial_next = loop_ids[(i + 1) % n]
                loop.radial_prev = loop_ids[(i - 1) % n]

    # ------------------------------------------------------------------
    # Geometry
    # ------------------------------------------------------------------

    def compute_face_normal(self, face_id: int) -> Position:
        """Newell's method normal of the face polygon; stored on the face."""
        face = self.faces[face_id]
        pts = np.array([self.vertices[v].position for v in face.vertices], dtype=np.float64)
        nxt = np.roll(pts, -1, axis=0)
        normal = np.array([
            np.sum((pts[:, 1] - nxt[:, 1]) * (pts[:, 2] + nxt[:, 2])),
            np.sum((pts[:, 2] - nxt[:, 2]) * (pts[:, 0] + nxt[:, 0])),
            np.sum((pts[:, 0] - nxt[:, 0]) * (pts[:, 1] + nxt[:, 1])),
        ])
        length = np.linalg.norm(normal)
        if length > 1e-12:
            normal /= length
        face.set_normal(normal)
        return face.normal

    def triangulate(self, distinct_anchors: bool = False) -> NDArray[np.uint32]:
        """Fan-triangulate every face in id order; (T, 3) array of vertex ids.

        Each fan starts at its anchor vertex, so every triangle of a face
        reads ``[anchor, v_k, v_k+1]``.  By default the anchor is the face's
        first vertex.  With ``distinct_anchors`` it is the lowest vertex id
        that differs from the previous face's anchor, which lets
        :meth:`from_triangle_fans` tell consecutive faces apart.
        """
        tris: list[int] = []
        prev_anchor = None
        for fid in sorted(self.faces):
            fv = self.faces[fid].vertices
            start = 0
            if distinct_anchors:
                candidates = [v for v in fv if v != prev_anchor]
                if not candidates:
                    raise ValueError(f"Face {fid} has no anchor distinct from {prev_anchor}")
                start = fv.index(min(candidates))
            n = len(fv)
            for k in range(1, n - 1):
                tris.extend([fv[start], fv[(start + k) % n], fv[(start + k + 1) % n]])
            prev_anchor = fv[start]
        return np.array(tris, dtype=np.uint32).reshape(-1, 3)

    # ------------------------------------------------------------------
    # Construction / conversion
    # ------------------------------------------------------------------

    @classmethod
    def from_polygons(
        cls,
        positions,
        polygons: Sequence[Sequence[int]],
        loop_attributes: Optional[dict[str, Sequence]] = None,
    ) -> "BMesh":
        """Build a fully linked mesh from positions and polygon index lists.

        Polygon indices refer to rows of ``positions``.  Shared edges are
        created once.  ``loop_attributes`` maps an attribute name to one
        value per polygon corner, in polygon order.
        """
        mesh = cls()
        for p in np.asarray(positions, dtype=np.float64).reshape(-1, 3):
            mesh.add_vertex(p)

        edge_lookup: dict[tuple[int, int], int] = {}
        corner = 0
        for polygon in polygons:
            verts = list(polygon)
            fid = mesh.add_face(verts)
            face = mesh.faces[fid]
            n = len(verts)
            for i, v in enumerate(verts):
                w = verts[(i + 1) % n]
                key = (min(v, w), max(v, w))
                eid = edge_lookup.get(key)
                if eid is None:
                    eid = mesh.add_edge(key)
                    edge_lookup[key] = eid
                mesh.edges[eid].add_face(fid)
                face.add_edge(eid)

                attrs = {}
                if loop_attributes:
                    attrs = {name: values[corner] for name, values in loop_attributes.items()}
                face.add_loop(mesh.add_loop(v, eid, fid, attrs))
                corner += 1
            mesh.link_face_loops(fid)
            mesh.compute_face_normal(fid)

        mesh.link_radial_loops()
        logger.debug("Built BMesh: %s", mesh.counts())
        return mesh

    @classmethod
    def from_triangle_fans(cls, positions, triangles) -> "BMesh":
        """Rebuild polygons from fans written by ``triangulate(distinct_anchors=True)``.

        A triangle continues the current face when it shares the fan's
        anchor and picks up at the face's last vertex; anything else starts
        a new face.
        """
        polygons: list[list[int]] = []
        current: Optional[list[int]] = None
        rows = np.asarray(triangles, dtype=np.int64).reshape(-1, 3).tolist()
        for a, b, c in rows:
            if current is not None and a == current[0] and b == current[-1] and c not in current:
                current.append(c)
            else:
                current = [a, b, c]
                polygons.append(current)
        logger.debug("Rebuilt %d polygons from %d triangles", len(polygons), len(rows))
        return cls.from_polygons(positions, polygons)

    @classmethod
    def from_buffer_geometry(cls, geometry: BufferGeometry, rebuild_polygons: bool = False) -> "BMesh":
        """BMesh from indexed or non-indexed buffer geometry.

        Every triangle becomes a face unless ``rebuild_polygons`` is set, in
        which case triangle fans are merged back into their polygons.
        """
        positions = geometry.positions.reshape(-1, 3)
        triangles = geometry.triangles()
        if rebuild_polygons:
            mesh = cls.from_triangle_fans(positions, triangles)
        else:
            mesh = cls.from_polygons(positions, triangles.tolist())
        normals = geometry.normals.reshape(-1, 3) if geometry.normals is not None else None
        if normals is not None and len(normals) == len(positions):
            for vid, normal in enumerate(normals):
                mesh.vertices[vid].set_attribute("NORMAL", tuple(float(c) for c in normal))
        return mesh

    def to_buffer_geometry(self) -> BufferGeometry:
        """Indexed triangle buffers; vertices are packed in id order.

        Faces are written as fans with distinct anchors, so
        ``from_buffer_geometry(..., rebuild_polygons=True)`` recovers them.
        """
        ids = sorted(self.vertices)
        remap = {vid: i for i, vid in enumerate(ids)}
        positions = np.array([self.vertices[v].position for v in ids], dtype=np.float32)
        tris = self.triangulate(distinct_anchors=True)
        indices = np.array([remap[v] for v in tris.ravel()], dtype=np.uint32)
        return BufferGeometry(
            positions=positions.reshape(-1),
            indices=indices,
            vertex_count=len(ids),
        )

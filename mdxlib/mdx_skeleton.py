from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np
import pyrr

from mdxlib.debug_console import DebugConsole
from mdxlib.mdx_parser import ModelDocument, NodeFlags
from mdxlib.mdx_tracks import IDENTITY_QUAT, UNIT_SCALE, ZERO_VEC3, normalize_quat, sample_track

INHERITANCE_MASK = (NodeFlags.DontInheritTranslation
                    | NodeFlags.DontInheritScaling
                    | NodeFlags.DontInheritRotation)

_UNVISITED, _IN_PROGRESS, _DONE = 0, 1, 2


@dataclass
class NodeTransforms:
    """
    World-space transforms of every node in a document at one instant.

    Matrices use pyrr's row-vector convention: a point is moved with
    ``[x, y, z, 1] @ world_matrices[i]``.
    """
    time_ms: int
    world_matrices: np.ndarray
    world_translations: np.ndarray
    world_rotations: np.ndarray
    world_scales: np.ndarray
    inverse_world_matrices: np.ndarray
    inverse_world_translations: np.ndarray
    inverse_world_rotations: np.ndarray
    inverse_world_scales: np.ndarray
    cycle_nodes: List[int] = field(default_factory=list)

    def __len__(self):
        return len(self.world_matrices)

    def transform_point(self, node_index, point) -> np.ndarray:
        p = np.append(np.asarray(point, dtype=np.float64), 1.0)
        return (p @ self.world_matrices[node_index])[:3]


def rotation_matrix(quat) -> np.ndarray:
    """
    Row-vector rotation matrix for ``quat``.

    pyrr builds the transpose of what ``p @ M`` needs, so the matrix is made
    from the inverse quaternion. It then turns points the same way as
    ``pyrr.quaternion.apply_to_vector(quat, p)``.
    """
    return pyrr.matrix44.create_from_quaternion(pyrr.quaternion.inverse(quat))


def local_matrix(pivot, translation, rotation, scale) -> np.ndarray:
    """Pivot-centred scale, then rotation, then translation."""
    return (pyrr.matrix44.create_from_translation(-np.asarray(pivot, dtype=np.float64))
            @ pyrr.matrix44.create_from_scale(scale)
            @ rotation_matrix(rotation)
            @ pyrr.matrix44.create_from_translation(pivot)
            @ pyrr.matrix44.create_from_translation(translation))


def _safe_inverse(matrix):
    try:
        return np.linalg.inv(matrix)
    except np.linalg.LinAlgError:
        return np.identity(4)


def _safe_reciprocal(scale):
    out = np.zeros(3)
    nonzero = np.abs(scale) > 1e-8
    out[nonzero] = 1.0 / scale[nonzero]
    return out


def evaluate_transforms(doc: ModelDocument, time_ms) -> NodeTransforms:
    """
    Samples every node at ``time_ms`` and composes it with its parent chain.

    Parents are resolved with an explicit stack. A parent loop is broken by
    forcing every node on it to identity; those indices end up in
    ``cycle_nodes``.
    """
    nodes = doc.nodes
    count = len(nodes)
    gs = doc.global_sequences

    world = np.tile(np.identity(4), (count, 1, 1))
    rotations = np.tile(IDENTITY_QUAT, (count, 1))
    scales = np.ones((count, 3))
    state = [_UNVISITED] * count
    cycle_nodes = []

    def compute(i, parent):
        node = nodes[i]
        t = sample_track(node.translation, time_ms, ZERO_VEC3, gs)
        r = sample_track(node.rotation, time_ms, IDENTITY_QUAT, gs)
        s = sample_track(node.scaling, time_ms, UNIT_SCALE, gs)
        pivot = node.pivot if node.pivot is not None else ZERO_VEC3
        local = local_matrix(pivot, t, r, s)

        if parent is None:
            world[i] = local
            rotations[i] = r
            scales[i] = s
            return

        flags = node.flags & INHERITANCE_MASK
        parent_scale = UNIT_SCALE if flags & NodeFlags.DontInheritScaling else scales[parent]
        parent_rot = IDENTITY_QUAT if flags & NodeFlags.DontInheritRotation else rotations[parent]
        if not flags:
            parent_matrix = world[parent]
        else:
            parent_pos = ZERO_VEC3 if flags & NodeFlags.DontInheritTranslation else world[parent][3, :3]
            parent_matrix = (pyrr.matrix44.create_from_scale(parent_scale)
                             @ rotation_matrix(parent_rot)
                             @ pyrr.matrix44.create_from_translation(parent_pos))

        world[i] = local @ parent_matrix
        rotations[i] = normalize_quat(pyrr.quaternion.cross(parent_rot, r))
        scales[i] = np.asarray(s) * parent_scale

    for root in range(count):
        if state[root] == _DONE:
            continue
        stack = [root]
        while stack:
            i = stack[-1]
            if state[i] == _DONE:
                stack.pop()
                continue
            state[i] = _IN_PROGRESS
            parent_id = nodes[i].parent_id
            parent = parent_id if 0 <= parent_id < count else None

            if parent is not None and state[parent] == _UNVISITED:
                stack.append(parent)
                continue
            if parent is not None and state[parent] == _IN_PROGRESS:
                loop = stack[stack.index(parent):]
                DebugConsole.warn(f"Parent cycle through nodes {loop}; using identity")
                for j in loop:
                    state[j] = _DONE
                    cycle_nodes.append(j)
                stack = stack[:stack.index(parent)]
                continue

            compute(i, parent)
            state[i] = _DONE
            stack.pop()

    pivots = np.array([ZERO_VEC3 if n.pivot is None else n.pivot for n in nodes],
                      dtype=np.float64).reshape(count, 3)
    homogeneous = np.concatenate([pivots, np.ones((count, 1))], axis=1)
    translations = np.einsum("ni,nij->nj", homogeneous, world)[:, :3]

    return NodeTransforms(
        time_ms=time_ms,
        world_matrices=world,
        world_translations=translations,
        world_rotations=rotations,
        world_scales=scales,
        inverse_world_matrices=np.array([_safe_inverse(m) for m in world]).reshape(count, 4, 4),
        inverse_world_translations=-translations,
        inverse_world_rotations=np.array(
            [pyrr.quaternion.conjugate(q) for q in rotations]).reshape(count, 4),
        inverse_world_scales=np.array([_safe_reciprocal(s) for s in scales]).reshape(count, 3),
        cycle_nodes=cycle_nodes,
    )


class TransformCache:
    """Opt-in memo of ``evaluate_transforms`` per time, owned by one caller."""

    def __init__(self, doc: ModelDocument, max_entries=64):
        self.doc = doc
        self.max_entries = max_entries
        self._entries: Dict[int, NodeTransforms] = {}

    def get(self, time_ms) -> NodeTransforms:
        cached: Optional[NodeTransforms] = self._entries.get(time_ms)
        if cached is None:
            if len(self._entries) >= self.max_entries:
                self._entries.pop(next(iter(self._entries)))
            cached = evaluate_transforms(self.doc, time_ms)
            self._entries[time_ms] = cached
        return cached

    def clear(self):
        self._entries.clear()

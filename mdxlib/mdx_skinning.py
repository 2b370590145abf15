from dataclasses import dataclass
from enum import Enum
from typing import Sequence

import numpy as np

from mdxlib.debug_console import DebugConsole
from mdxlib.mdx_parser import ModelDocument, SkinGroup, VertexBuffer
from mdxlib.mdx_skeleton import NodeTransforms

UP_NORMAL = np.array([0.0, 0.0, 1.0])


class BoneIndexSpace(Enum):
    BONE_ORDER = "bone_order"  # MATS entries index doc.bones
    NODE_ID = "node_id"  # MATS entries index doc.nodes directly


@dataclass
class PosedVertices:
    positions: np.ndarray
    normals: np.ndarray
    skinned: np.ndarray  # bool per vertex, False where the bind pose was kept

    def __len__(self):
        return len(self.positions)


def detect_bone_index_space(doc: ModelDocument) -> BoneIndexSpace:
    """
    Guesses what the skin-group indices refer to.

    Bone order is assumed only when bones were declared with node ids
    0..n-1 in order and no group index reaches past the bone list. There is
    no marker in the file for this; anything else is read as raw node ids.
    """
    bone_ids = doc.bone_node_ids
    if not bone_ids or any(node_id != i for i, node_id in enumerate(bone_ids)):
        return BoneIndexSpace.NODE_ID
    for group in doc.skin_groups:
        if any(index >= len(bone_ids) for index in group.bone_indices):
            return BoneIndexSpace.NODE_ID
    return BoneIndexSpace.BONE_ORDER


def max_bones_for(group: SkinGroup):
    return 8 if len(group.bone_indices) > 4 else 4


def blend_group_matrices(skin_groups: Sequence[SkinGroup], matrices: np.ndarray):
    """
    Averages each group's bone matrices.

    Returns ``(blended (G, 4, 4), usable (G,) bool)``. Duplicate and
    out-of-range indices are skipped and do not count towards the average.
    """
    blended = np.tile(np.identity(4), (len(skin_groups), 1, 1))
    usable = np.zeros(len(skin_groups), dtype=bool)
    for g, group in enumerate(skin_groups):
        seen = []
        for index in group.bone_indices[:max_bones_for(group)]:
            if index in seen or not 0 <= index < len(matrices):
                continue
            seen.append(index)
        if seen:
            blended[g] = matrices[seen].mean(axis=0)
            usable[g] = True
    return blended, usable


def skin_vertices(bind_vertices: VertexBuffer, vertex_groups: np.ndarray,
                  skin_groups: Sequence[SkinGroup], matrices: np.ndarray) -> PosedVertices:
    """Poses the bind mesh with one averaged matrix per skin group."""
    positions = bind_vertices.positions.astype(np.float64)
    normals = bind_vertices.normals.astype(np.float64)
    count = len(positions)
    if count == 0 or not len(skin_groups):
        return PosedVertices(positions, normals, np.zeros(count, dtype=bool))

    blended, usable = blend_group_matrices(skin_groups, np.asarray(matrices, dtype=np.float64))
    groups = np.asarray(vertex_groups[:count], dtype=np.int64)
    if len(groups) < count:
        # vertices without a group id keep the bind pose
        groups = np.concatenate([groups, np.full(count - len(groups), -1)])
    in_range = (groups >= 0) & (groups < len(skin_groups))
    skinned = in_range.copy()
    skinned[in_range] = usable[groups[in_range]]

    per_vertex = blended[groups[skinned]]
    homogeneous = np.concatenate([positions[skinned], np.ones((skinned.sum(), 1))], axis=1)
    out_positions = positions.copy()
    out_positions[skinned] = np.einsum("ni,nij->nj", homogeneous, per_vertex)[:, :3]

    out_normals = normals.copy()
    moved = np.einsum("ni,nij->nj", normals[skinned], per_vertex[:, :3, :3])
    lengths = np.linalg.norm(moved, axis=1, keepdims=True)
    degenerate = lengths[:, 0] <= 1e-8
    moved[~degenerate] /= lengths[~degenerate]
    moved[degenerate] = UP_NORMAL
    out_normals[skinned] = moved

    return PosedVertices(out_positions, out_normals, skinned)


class SkinningEvaluator:
    """Skins one document; the index-space guess is made once, up front."""

    def __init__(self, doc: ModelDocument):
        self.doc = doc
        self.index_space = detect_bone_index_space(doc)
        DebugConsole.log(f"Skin indices for {doc.name!r} read as {self.index_space.value}")

    def matrix_table(self, transforms: NodeTransforms) -> np.ndarray:
        if self.index_space == BoneIndexSpace.NODE_ID:
            return transforms.world_matrices
        ids = [i for i in self.doc.bone_node_ids if 0 <= i < len(transforms)]
        return transforms.world_matrices[ids].reshape(-1, 4, 4)

    def skin(self, transforms: NodeTransforms) -> PosedVertices:
        return skin_vertices(self.doc.bind_vertices, self.doc.vertex_groups,
                             self.doc.skin_groups, self.matrix_table(transforms))

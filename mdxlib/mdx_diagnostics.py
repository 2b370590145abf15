"""
Read-only summaries of a parsed document, for tooling and the batch preview
"""
from collections import Counter

from mdxlib.mdx_parser import ModelDocument
from mdxlib.mdx_skinning import detect_bone_index_space


def group_size_histogram(doc: ModelDocument):
    """How many skin groups have 0, 1, 2, ... bone entries."""
    return dict(sorted(Counter(len(g.bone_indices) for g in doc.skin_groups).items()))


def describe_model(doc: ModelDocument) -> dict:
    diag = doc.diagnostics
    return {
        "name": doc.name,
        "version": doc.version,
        "vertices": len(doc.vertices),
        "triangles": doc.triangle_count,
        "sub_meshes": len(doc.sub_meshes),
        "materials": len(doc.materials),
        "textures": [t.file_name for t in doc.textures],
        "sequences": [(s.name, s.start_ms, s.end_ms) for s in doc.sequences],
        "nodes": len(doc.nodes),
        "bones": len(doc.bones),
        "particle_emitters": len(doc.particle_emitters),
        "bone_index_space": detect_bone_index_space(doc).value,
        "group_size_histogram": group_size_histogram(doc),
        "geosets": [
            {
                "vertices": g.vertex_count,
                "triangles": g.triangle_count,
                "groups": g.group_count,
                "material_id": g.material_id,
                "max_vertex_group": g.max_vertex_group,
                "group_size_histogram": dict(sorted(Counter(g.group_sizes).items())),
                "dropped_triangles": g.dropped_triangles,
                "unsupported_primitive": g.unsupported_primitive,
            }
            for g in diag.geosets
        ],
        "unknown_chunks": list(diag.unknown_chunks),
        "dropped_chunks": list(diag.dropped_chunks),
        "unknown_track_tags": list(diag.unknown_track_tags),
    }


def format_summary(doc: ModelDocument) -> str:
    info = describe_model(doc)
    lines = [
        f"{info['name'] or '<unnamed>'} (v{info['version']}): "
        f"{info['vertices']} vertices, {info['triangles']} triangles, "
        f"{info['nodes']} nodes, {info['particle_emitters']} emitters",
        f"  skin indices: {info['bone_index_space']}, group sizes: {info['group_size_histogram']}",
    ]
    for i, g in enumerate(info["geosets"]):
        lines.append(f"  geoset {i}: {g['vertices']} verts, {g['triangles']} tris, "
                     f"{g['groups']} groups, material {g['material_id']}")
    if info["dropped_chunks"]:
        lines.append(f"  dropped: {', '.join(info['dropped_chunks'])}")
    return "\n".join(lines)

import os
import struct
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np

from mdxlib.debug_console import DebugConsole
from mdxlib.mdx_tracks import Interpolation, KIND_COMPONENTS, Track, TrackKey, TrackKind


# ==========================================================================
# 1. ENUMS, Errors and Helper Classes
# ==========================================================================
MDX_MAGIC = b"MDLX"
DEFAULT_VERSION = 800


class MdxChunk:
    Version = "VERS"
    Model = "MODL"
    Sequences = "SEQS"
    GlobalSequences = "GLBS"
    Textures = "TEXS"
    Materials = "MTLS"
    Geosets = "GEOS"
    Bones = "BONE"
    Helpers = "HELP"
    Attachments = "ATCH"
    Lights = "LITE"
    EventObjects = "EVTS"
    CollisionShapes = "CLID"
    ParticleEmitters2 = "PRE2"
    Pivots = "PIVT"


class NodeKind:
    Bone = "BONE"
    Helper = "HELP"
    Attachment = "ATCH"
    Light = "LITE"
    EventObject = "EVTS"
    CollisionShape = "CLID"
    ParticleEmitter2 = "PRE2"
    Implicit = "NONE"  # id present in PIVT but never declared


class NodeFlags:
    DontInheritTranslation = 0x1
    DontInheritScaling = 0x2
    DontInheritRotation = 0x4
    Billboarded = 0x8
    BillboardedLockX = 0x10
    BillboardedLockY = 0x20
    BillboardedLockZ = 0x40
    CameraAnchored = 0x80


class Emitter2Flags:
    Unshaded = 0x8000
    SortPrimsFarZ = 0x10000
    LineEmitter = 0x20000
    Unfogged = 0x40000
    ModelSpace = 0x80000
    XYQuad = 0x100000


class LayerShading:
    Unshaded = 0x1
    SphereEnvMap = 0x2
    TwoSided = 0x10
    Unfogged = 0x20
    NoDepthTest = 0x40
    NoDepthSet = 0x80
    Unlit = 0x100


class PrimitiveType:
    Triangles = 4
    TriangleStrip = 5
    TriangleFan = 6
    Quads = 7


class CollisionShapeType:
    Box = 0
    Plane = 1
    Sphere = 2
    Cylinder = 3


# Vertices stored per collision shape type
COLLISION_SHAPE_VERTICES = {
    CollisionShapeType.Box: 2,
    CollisionShapeType.Plane: 2,
    CollisionShapeType.Sphere: 1,
    CollisionShapeType.Cylinder: 2,
}

# Embedded keyframe tracks we know how to decode, by tag
TRACK_TAG_KINDS = {
    "KGTR": TrackKind.VEC3,
    "KGRT": TrackKind.QUAT,
    "KGSC": TrackKind.VEC3,
    "KATV": TrackKind.FLOAT,
    "KLAS": TrackKind.FLOAT,
    "KLAE": TrackKind.FLOAT,
    "KLAC": TrackKind.VEC3,
    "KLAI": TrackKind.FLOAT,
    "KLBI": TrackKind.FLOAT,
    "KLBC": TrackKind.VEC3,
    "KLAV": TrackKind.FLOAT,
    "KP2S": TrackKind.FLOAT,
    "KP2R": TrackKind.FLOAT,
    "KP2L": TrackKind.FLOAT,
    "KP2G": TrackKind.FLOAT,
    "KP2E": TrackKind.FLOAT,
    "KP2N": TrackKind.FLOAT,
    "KP2W": TrackKind.FLOAT,
    "KP2V": TrackKind.FLOAT,
    "KP2Z": TrackKind.FLOAT,
    "KMTF": TrackKind.INT,
    "KMTA": TrackKind.FLOAT,
    "KMTE": TrackKind.FLOAT,
}

SEQUENCE_RECORD_SIZE = 132
TEXTURE_RECORD_SIZE = 268
MAX_NODE_ID = 0xFFFF
MAX_VERTEX_GROUP = 0xFFFF  # merged vertex_groups are uint16


class MdxParseError(Exception):
    """Base class for everything the MDX parser raises."""


class BadMagicError(MdxParseError):
    """The buffer does not start with the MDLX tag."""


class TruncatedDataError(MdxParseError, EOFError):
    """A read or a declared size runs past the end of its enclosing record."""


OutOfBoundsError = TruncatedDataError


class BinaryReader:
    """Bounds-checked little-endian cursor over an immutable buffer."""

    def __init__(self, data, start=0, end=None, endian="<"):
        self.data = data if isinstance(data, memoryview) else memoryview(bytes(data))
        self.pos = start
        self.end = len(self.data) if end is None else end
        self.endian = endian

    def remaining(self):
        return max(0, self.end - self.pos)

    def is_eof(self):
        return self.pos >= self.end

    def tell(self):
        return self.pos

    def seek(self, offset):
        if offset < 0 or offset > self.end:
            raise TruncatedDataError(f"Seek to {offset} outside record ending at {self.end}.")
        self.pos = offset

    def _require(self, num_bytes):
        if num_bytes < 0 or num_bytes > self.remaining():
            raise TruncatedDataError(
                f"Tried to read {num_bytes} bytes at offset {self.pos}, "
                f"but only {self.remaining()} remain."
            )

    def skip(self, num_bytes):
        self._require(num_bytes)
        self.pos += num_bytes

    def read_bytes(self, num_bytes):
        self._require(num_bytes)
        data = bytes(self.data[self.pos:self.pos + num_bytes])
        self.pos += num_bytes
        return data

    def read_struct(self, fmt, num_bytes):
        self._require(num_bytes)
        values = struct.unpack_from(self.endian + fmt, self.data, self.pos)
        self.pos += num_bytes
        return values

    def read_u8(self):
        return self.read_struct("B", 1)[0]

    def read_i8(self):
        return self.read_struct("b", 1)[0]

    def read_u16(self):
        return self.read_struct("H", 2)[0]

    def read_i16(self):
        return self.read_struct("h", 2)[0]

    def read_u32(self):
        return self.read_struct("I", 4)[0]

    def read_i32(self):
        return self.read_struct("i", 4)[0]

    def read_f32(self):
        return self.read_struct("f", 4)[0]

    def read_vec3(self) -> Tuple[float, ...]:
        return self.read_struct("fff", 12)

    def read_quat(self) -> Tuple[float, ...]:
        return self.read_struct("ffff", 16)

    def read_array(self, dtype, count) -> np.ndarray:
        """Reads ``count`` elements of a numpy dtype (e.g. ``"<f4"``) as a copy."""
        dtype = np.dtype(dtype)
        num_bytes = dtype.itemsize * count
        self._require(num_bytes)
        arr = np.frombuffer(self.data, dtype=dtype, count=count, offset=self.pos).copy()
        self.pos += num_bytes
        return arr

    def read_fixed_string(self, length):
        raw = self.read_bytes(length)
        return raw.split(b"\0", 1)[0].decode("utf-8", errors="ignore")

    def read_tag(self):
        return self.read_bytes(4).decode("ascii", errors="replace")

    def peek_tag(self):
        if self.remaining() < 4:
            return None
        return bytes(self.data[self.pos:self.pos + 4]).decode("ascii", errors="replace")

    def sub_reader(self, size) -> "BinaryReader":
        """Returns a reader over the next ``size`` bytes and moves past them."""
        self._require(size)
        child = BinaryReader(self.data, self.pos, self.pos + size, self.endian)
        self.pos += size
        return child


# ==========================================================================
# 2. MDX Data Structures
# ==========================================================================
@dataclass
class Extent:
    radius: float = 0.0
    minimum: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    maximum: Tuple[float, float, float] = (0.0, 0.0, 0.0)

    def is_empty(self):
        return self.radius == 0.0 and self.minimum == self.maximum


@dataclass
class VertexBuffer:
    positions: np.ndarray = field(default_factory=lambda: np.zeros((0, 3), dtype=np.float32))
    normals: np.ndarray = field(default_factory=lambda: np.zeros((0, 3), dtype=np.float32))
    uvs: np.ndarray = field(default_factory=lambda: np.zeros((0, 2), dtype=np.float32))

    def __len__(self):
        return len(self.positions)

    def copy(self, writeable=True) -> "VertexBuffer":
        out = VertexBuffer(self.positions.copy(), self.normals.copy(), self.uvs.copy())
        if not writeable:
            for arr in (out.positions, out.normals, out.uvs):
                arr.flags.writeable = False
        return out


@dataclass
class SubMesh:
    index_offset: int
    index_count: int
    material_id: int
    geoset_index: int = 0


@dataclass
class Texture:
    replaceable_id: int
    file_name: str
    flags: int = 0


@dataclass
class Layer:
    filter_mode: int = 0
    shading_flags: int = 0
    texture_id: int = 0
    texture_animation_id: int = -1
    coord_id: int = 0
    alpha: float = 1.0
    emissive_gain: Optional[float] = None
    fresnel_color: Optional[Tuple[float, float, float]] = None
    fresnel_opacity: Optional[float] = None
    fresnel_team_color: Optional[float] = None
    shader_id: Optional[int] = None
    alpha_track: Optional[Track] = None
    texture_id_track: Optional[Track] = None


@dataclass
class Material:
    priority_plane: int = 0
    flags: int = 0
    shader_name: str = ""
    layer: Layer = field(default_factory=Layer)
    layer_count: int = 0


@dataclass
class Sequence:
    name: str
    start_ms: int
    end_ms: int
    move_speed: float = 0.0
    flags: int = 0
    rarity: float = 0.0
    sync_point: int = 0
    extent: Extent = field(default_factory=Extent)

    @property
    def duration_ms(self):
        return max(0, self.end_ms - self.start_ms)


@dataclass
class Node:
    """Header shared by every skeleton object (bones, helpers, emitters, ...)."""
    name: str
    kind: str
    node_id: int
    parent_id: int = -1
    flags: int = 0
    pivot: Optional[np.ndarray] = None
    translation: Track = field(default_factory=lambda: Track(TrackKind.VEC3))
    rotation: Track = field(default_factory=lambda: Track(TrackKind.QUAT))
    scaling: Track = field(default_factory=lambda: Track(TrackKind.VEC3))
    extra_tracks: Dict[str, Track] = field(default_factory=dict)


@dataclass
class Bone:
    node: Node
    geoset_id: int = -1
    geoset_animation_id: int = -1


@dataclass
class Helper:
    node: Node


@dataclass
class Attachment:
    node: Node
    path: str = ""
    attachment_id: int = 0
    visibility: Optional[Track] = None


@dataclass
class Light:
    node: Node
    light_type: int = 0
    attenuation_start: float = 0.0
    attenuation_end: float = 0.0
    color: Tuple[float, float, float] = (1.0, 1.0, 1.0)
    intensity: float = 0.0
    ambient_color: Tuple[float, float, float] = (1.0, 1.0, 1.0)
    ambient_intensity: float = 0.0


@dataclass
class EventObject:
    node: Node
    global_sequence_id: int = -1
    times: List[int] = field(default_factory=list)


@dataclass
class CollisionShape:
    node: Node
    shape_type: int = CollisionShapeType.Box
    vertices: np.ndarray = field(default_factory=lambda: np.zeros((0, 3), dtype=np.float32))
    radius: Optional[float] = None


@dataclass
class ParticleEmitter2:
    node: Node
    speed: float = 0.0
    variation: float = 0.0
    latitude: float = 0.0
    gravity: float = 0.0
    lifespan: float = 0.0
    emission_rate: float = 0.0
    width: float = 0.0
    length: float = 0.0
    filter_mode: int = 0
    rows: int = 1
    columns: int = 1
    head_or_tail: int = 0  # 0=head, 1=tail, 2=both
    tail_length: float = 0.0
    time_middle: float = 0.5
    segment_colors: np.ndarray = field(default_factory=lambda: np.ones((3, 3)))
    segment_alphas: Tuple[int, int, int] = (255, 255, 255)
    segment_scaling: Tuple[float, float, float] = (100.0, 100.0, 100.0)  # percent
    head_intervals: np.ndarray = field(default_factory=lambda: np.zeros((2, 3), dtype=np.int64))
    tail_intervals: np.ndarray = field(default_factory=lambda: np.zeros((2, 3), dtype=np.int64))
    texture_id: int = -1
    squirt: int = 0
    priority_plane: int = 0
    replaceable_id: int = 0
    speed_track: Track = field(default_factory=Track)
    variation_track: Track = field(default_factory=Track)
    latitude_track: Track = field(default_factory=Track)
    gravity_track: Track = field(default_factory=Track)
    lifespan_track: Track = field(default_factory=Track)
    emission_rate_track: Track = field(default_factory=Track)
    width_track: Track = field(default_factory=Track)
    length_track: Track = field(default_factory=Track)
    visibility_track: Track = field(default_factory=Track)

    @property
    def node_id(self):
        return self.node.node_id


@dataclass
class SkinGroup:
    bone_indices: List[int] = field(default_factory=list)


@dataclass
class GeosetDiagnostics:
    vertex_count: int = 0
    triangle_count: int = 0
    group_count: int = 0
    material_id: int = 0
    base_vertex: int = 0
    index_offset: int = 0
    index_count: int = 0
    max_vertex_group: int = 0
    group_sizes: List[int] = field(default_factory=list)
    dropped_triangles: int = 0
    unsupported_primitive: Optional[int] = None
    had_normals: bool = True


@dataclass
class ChunkRecord:
    tag: str
    offset: int
    size: int
    end: int


@dataclass
class ParseDiagnostics:
    geoset_count: int = 0
    geosets: List[GeosetDiagnostics] = field(default_factory=list)
    chunks: List[ChunkRecord] = field(default_factory=list)
    unknown_chunks: List[str] = field(default_factory=list)
    dropped_chunks: List[str] = field(default_factory=list)
    unknown_track_tags: List[str] = field(default_factory=list)


@dataclass
class ModelDocument:
    version: int = DEFAULT_VERSION
    name: str = ""
    animation_file: str = ""
    bounds: Extent = field(default_factory=Extent)
    blend_time: int = 0
    vertices: VertexBuffer = field(default_factory=VertexBuffer)
    bind_vertices: VertexBuffer = field(default_factory=VertexBuffer)
    indices: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.uint32))
    sub_meshes: List[SubMesh] = field(default_factory=list)
    textures: List[Texture] = field(default_factory=list)
    materials: List[Material] = field(default_factory=list)
    sequences: List[Sequence] = field(default_factory=list)
    global_sequences: List[int] = field(default_factory=list)
    nodes: List[Node] = field(default_factory=list)
    bones: List[Bone] = field(default_factory=list)
    helpers: List[Helper] = field(default_factory=list)
    attachments: List[Attachment] = field(default_factory=list)
    lights: List[Light] = field(default_factory=list)
    event_objects: List[EventObject] = field(default_factory=list)
    collision_shapes: List[CollisionShape] = field(default_factory=list)
    particle_emitters: List[ParticleEmitter2] = field(default_factory=list)
    bone_node_ids: List[int] = field(default_factory=list)
    pivots: List[np.ndarray] = field(default_factory=list)
    skin_groups: List[SkinGroup] = field(default_factory=list)
    vertex_groups: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.uint16))
    diagnostics: ParseDiagnostics = field(default_factory=ParseDiagnostics)

    @property
    def triangle_count(self):
        return len(self.indices) // 3


@dataclass
class _GeosetData:
    positions: np.ndarray
    normals: Optional[np.ndarray]
    primitive_types: np.ndarray
    primitive_counts: np.ndarray
    index_pool: np.ndarray
    vertex_groups: np.ndarray
    group_sizes: np.ndarray
    group_indices: np.ndarray
    material_id: int = 0
    selection_group: int = 0
    selection_flags: int = 0
    lod: Optional[int] = None
    lod_name: str = ""
    extent: Extent = field(default_factory=Extent)
    uv_sets: List[np.ndarray] = field(default_factory=list)


# ==========================================================================
# 3. Geometry helpers
# ==========================================================================
def expand_primitives(types, counts, pool) -> Tuple[np.ndarray, Optional[int]]:
    """
    Turns PTYP/PCNT/PVTX into a flat triangle list of shape (T, 3).

    Counts are primitive counts: triangles for lists, strips and fans (a strip
    or fan of ``n`` triangles uses ``n + 2`` indices), quads for quad lists.
    Expansion stops at the first unsupported kind or when the pool runs out;
    the offending kind is returned alongside the triangles.
    """
    triangles = []
    cursor = 0
    pool = np.asarray(pool, dtype=np.int64)
    for kind, count in zip((int(t) for t in types), (int(c) for c in counts)):
        if kind == PrimitiveType.Triangles:
            need = count * 3
            if cursor + need > len(pool):
                break
            triangles.extend(pool[cursor:cursor + need].reshape(-1, 3).tolist())
        elif kind == PrimitiveType.TriangleStrip:
            need = count + 2 if count > 0 else 0
            if cursor + need > len(pool):
                break
            strip = pool[cursor:cursor + need]
            for i in range(count):
                if i % 2 == 0:
                    triangles.append([strip[i], strip[i + 1], strip[i + 2]])
                else:
                    triangles.append([strip[i + 1], strip[i], strip[i + 2]])
        elif kind == PrimitiveType.TriangleFan:
            need = count + 2 if count > 0 else 0
            if cursor + need > len(pool):
                break
            fan = pool[cursor:cursor + need]
            for i in range(count):
                triangles.append([fan[0], fan[i + 1], fan[i + 2]])
        elif kind == PrimitiveType.Quads:
            need = count * 4
            if cursor + need > len(pool):
                break
            for a, b, c, d in pool[cursor:cursor + need].reshape(-1, 4):
                triangles.append([a, b, c])
                triangles.append([a, c, d])
        else:
            return np.array(triangles, dtype=np.int64).reshape(-1, 3), kind
        cursor += need
    return np.array(triangles, dtype=np.int64).reshape(-1, 3), None


def compute_face_normals(positions: np.ndarray, triangles: np.ndarray) -> np.ndarray:
    """Area-weighted vertex normals accumulated from triangle faces."""
    normals = np.zeros((len(positions), 3), dtype=np.float64)
    if len(triangles):
        v0 = positions[triangles[:, 0]].astype(np.float64)
        v1 = positions[triangles[:, 1]].astype(np.float64)
        v2 = positions[triangles[:, 2]].astype(np.float64)
        face = np.cross(v1 - v0, v2 - v0)
        for corner in range(3):
            np.add.at(normals, triangles[:, corner], face)
    lengths = np.linalg.norm(normals, axis=1, keepdims=True)
    safe = lengths[:, 0] > 1e-12
    normals[safe] /= lengths[safe]
    return normals.astype(np.float32)


def compute_bounds(positions: np.ndarray) -> Extent:
    if len(positions) == 0:
        return Extent()
    mn = positions.min(axis=0)
    mx = positions.max(axis=0)
    radius = float(np.linalg.norm(mx - mn) * 0.5)
    return Extent(radius, tuple(float(v) for v in mn), tuple(float(v) for v in mx))


# ==========================================================================
# 4. MDX Parser
# ==========================================================================
class MDXParser:
    def __init__(self, data):
        self.reader = BinaryReader(data)
        self.doc = ModelDocument()
        self.diagnostics = self.doc.diagnostics
        self._declared_nodes: List[Node] = []
        self._positions: List[np.ndarray] = []
        self._normals: List[np.ndarray] = []
        self._uvs: List[np.ndarray] = []
        self._indices: List[np.ndarray] = []
        self._vertex_groups: List[np.ndarray] = []
        self._vertex_count = 0
        self._index_count = 0

    def parse(self) -> ModelDocument:
        if len(self.reader.data) < 4 or bytes(self.reader.data[:4]) != MDX_MAGIC:
            raise BadMagicError("Not an MDX file (missing MDLX header).")
        self.reader.skip(4)
        self._read_all_chunks()
        self._finalize()
        return self.doc

    def _read_all_chunks(self):
        reader = self.reader
        while reader.remaining() >= 8:
            offset = reader.tell()
            tag = reader.read_tag()
            size = reader.read_u32()
            try:
                chunk = reader.sub_reader(size)
            except TruncatedDataError:
                DebugConsole.warn(
                    f"Chunk {tag!r} at offset {offset} declares {size} bytes, "
                    f"only {reader.remaining()} left; stopping."
                )
                self.diagnostics.dropped_chunks.append(tag)
                if tag == MdxChunk.Version:
                    raise
                break

            handler = {
                MdxChunk.Version: self._read_version,
                MdxChunk.Model: self._read_model,
                MdxChunk.Sequences: self._read_sequences,
                MdxChunk.GlobalSequences: self._read_global_sequences,
                MdxChunk.Textures: self._read_textures,
                MdxChunk.Materials: self._read_materials,
                MdxChunk.Geosets: self._read_geosets,
                MdxChunk.Bones: self._read_bones,
                MdxChunk.Helpers: self._read_helpers,
                MdxChunk.Attachments: self._read_attachments,
                MdxChunk.Lights: self._read_lights,
                MdxChunk.EventObjects: self._read_event_objects,
                MdxChunk.CollisionShapes: self._read_collision_shapes,
                MdxChunk.ParticleEmitters2: self._read_particle_emitters2,
                MdxChunk.Pivots: self._read_pivots,
            }.get(tag, self._skip_chunk)

            try:
                handler(chunk, tag)
            except TruncatedDataError as e:
                if tag == MdxChunk.Version:
                    raise
                DebugConsole.warn(f"Dropping truncated {tag} chunk: {e}")
                self.diagnostics.dropped_chunks.append(tag)

            self.diagnostics.chunks.append(ChunkRecord(tag, offset + 8, size, reader.tell()))

        if reader.remaining():
            DebugConsole.log(f"Ignoring {reader.remaining()} trailing bytes")

    def _skip_chunk(self, chunk: BinaryReader, tag):
        DebugConsole.log(f"Skipping unknown/unhandled Chunk: {tag!r} ({chunk.remaining()} bytes)")
        self.diagnostics.unknown_chunks.append(tag)

    # ---- simple chunks ----
    def _read_version(self, chunk: BinaryReader, tag):
        self.doc.version = chunk.read_u32()

    def _read_extent(self, reader: BinaryReader) -> Extent:
        radius = reader.read_f32()
        return Extent(radius, reader.read_vec3(), reader.read_vec3())

    def _read_model(self, chunk: BinaryReader, tag):
        name = chunk.read_fixed_string(80)
        animation_file = chunk.read_fixed_string(260)
        extent = self._read_extent(chunk)
        blend_time = chunk.read_u32()
        self.doc.name = name
        self.doc.animation_file = animation_file
        self.doc.bounds = extent
        self.doc.blend_time = blend_time

    def _read_sequences(self, chunk: BinaryReader, tag):
        sequences = []
        while not chunk.is_eof():
            record = chunk.sub_reader(SEQUENCE_RECORD_SIZE)
            name = record.read_fixed_string(80)
            start_ms, end_ms = record.read_struct("II", 8)
            move_speed = record.read_f32()
            flags = record.read_u32()
            rarity = record.read_f32()
            sync_point = record.read_u32()
            sequences.append(Sequence(name, start_ms, end_ms, move_speed, flags, rarity,
                                      sync_point, self._read_extent(record)))
        self.doc.sequences.extend(sequences)

    def _read_global_sequences(self, chunk: BinaryReader, tag):
        durations = []
        while not chunk.is_eof():
            durations.append(chunk.read_u32())
        self.doc.global_sequences.extend(durations)

    def _read_textures(self, chunk: BinaryReader, tag):
        textures = []
        while not chunk.is_eof():
            record = chunk.sub_reader(TEXTURE_RECORD_SIZE)
            replaceable_id = record.read_u32()
            file_name = record.read_fixed_string(260)
            flags = record.read_u32()
            textures.append(Texture(replaceable_id, file_name, flags))
        self.doc.textures.extend(textures)

    def _read_pivots(self, chunk: BinaryReader, tag):
        pivots = []
        while not chunk.is_eof():
            pivots.append(np.array(chunk.read_vec3(), dtype=np.float64))
        self.doc.pivots.extend(pivots)

    # ---- tracks ----
    def _read_track(self, reader: BinaryReader, kind: TrackKind) -> Track:
        count = reader.read_u32()
        raw_interp = reader.read_u32()
        global_sequence_id = reader.read_i32()
        has_tangents = raw_interp > Interpolation.LINEAR
        try:
            interpolation = Interpolation(raw_interp)
        except ValueError:
            DebugConsole.warn(f"Unknown interpolation type {raw_interp}; sampling as step")
            interpolation = Interpolation.NONE

        width = KIND_COMPONENTS[kind]
        value_type = "<u4" if kind == TrackKind.INT else "<f4"
        fields = [("time", "<i4"), ("value", value_type, (width,))]
        if has_tangents:
            fields += [("in_tan", value_type, (width,)), ("out_tan", value_type, (width,))]
        records = reader.read_array(np.dtype(fields), count)

        track = Track(kind=kind, interpolation=interpolation,
                      global_sequence_id=global_sequence_id)
        for rec in records:
            track.keys.append(TrackKey(
                int(rec["time"]),
                self._track_value(kind, rec["value"]),
                self._track_value(kind, rec["in_tan"]) if has_tangents else None,
                self._track_value(kind, rec["out_tan"]) if has_tangents else None,
            ))
        return track

    @staticmethod
    def _track_value(kind, raw):
        if kind == TrackKind.INT:
            return int(raw[0])
        if kind == TrackKind.FLOAT:
            return float(raw[0])
        return np.array(raw, dtype=np.float64)

    def _read_tracks(self, reader: BinaryReader, owner) -> Dict[str, Track]:
        """Reads tagged tracks until the record ends or an unknown tag shows up."""
        tracks = {}
        while reader.remaining() >= 4:
            tag = reader.peek_tag()
            kind = TRACK_TAG_KINDS.get(tag)
            if kind is None:
                DebugConsole.warn(f"Unknown track tag {tag!r} in {owner!r}; ignoring rest of record")
                self.diagnostics.unknown_track_tags.append(tag)
                break
            reader.skip(4)
            tracks[tag] = self._read_track(reader, kind)
        return tracks

    # ---- nodes ----
    def _read_node(self, reader: BinaryReader, kind) -> Node:
        size = reader.read_u32()
        if size < 4:
            raise TruncatedDataError(f"Node record declares {size} bytes")
        body = reader.sub_reader(size - 4)
        name = body.read_fixed_string(80)
        node_id = body.read_i32()
        parent_id = body.read_i32()
        flags = body.read_u32()
        tracks = self._read_tracks(body, name)
        node = Node(name=name, kind=kind, node_id=node_id, parent_id=parent_id, flags=flags)
        node.translation = tracks.pop("KGTR", node.translation)
        node.rotation = tracks.pop("KGRT", node.rotation)
        node.scaling = tracks.pop("KGSC", node.scaling)
        node.extra_tracks = tracks
        return node

    def _read_sized_record(self, chunk: BinaryReader) -> BinaryReader:
        size = chunk.read_u32()
        if size < 4:
            raise TruncatedDataError(f"Record declares {size} bytes")
        return chunk.sub_reader(size - 4)

    def _read_bones(self, chunk: BinaryReader, tag):
        bones = []
        while not chunk.is_eof():
            node = self._read_node(chunk, NodeKind.Bone)
            geoset_id = chunk.read_i32()
            geoset_animation_id = chunk.read_i32()
            bones.append(Bone(node, geoset_id, geoset_animation_id))
        self.doc.bones.extend(bones)
        self.doc.bone_node_ids.extend(b.node.node_id for b in bones)
        self._declared_nodes.extend(b.node for b in bones)

    def _read_helpers(self, chunk: BinaryReader, tag):
        helpers = []
        while not chunk.is_eof():
            helpers.append(Helper(self._read_node(chunk, NodeKind.Helper)))
        self.doc.helpers.extend(helpers)
        self._declared_nodes.extend(h.node for h in helpers)

    def _read_attachments(self, chunk: BinaryReader, tag):
        attachments = []
        while not chunk.is_eof():
            record = self._read_sized_record(chunk)
            node = self._read_node(record, NodeKind.Attachment)
            path = record.read_fixed_string(260)
            attachment_id = record.read_u32()
            tracks = self._read_tracks(record, node.name)
            attachments.append(Attachment(node, path, attachment_id, tracks.get("KATV")))
        self.doc.attachments.extend(attachments)
        self._declared_nodes.extend(a.node for a in attachments)

    def _read_lights(self, chunk: BinaryReader, tag):
        lights = []
        while not chunk.is_eof():
            record = self._read_sized_record(chunk)
            node = self._read_node(record, NodeKind.Light)
            light = Light(
                node,
                light_type=record.read_u32(),
                attenuation_start=record.read_f32(),
                attenuation_end=record.read_f32(),
                color=record.read_vec3(),
                intensity=record.read_f32(),
                ambient_color=record.read_vec3(),
                ambient_intensity=record.read_f32(),
            )
            node.extra_tracks.update(self._read_tracks(record, node.name))
            lights.append(light)
        self.doc.lights.extend(lights)
        self._declared_nodes.extend(l.node for l in lights)

    def _read_event_objects(self, chunk: BinaryReader, tag):
        events = []
        while not chunk.is_eof():
            event = EventObject(self._read_node(chunk, NodeKind.EventObject))
            if chunk.peek_tag() == "KEVT":
                chunk.skip(4)
                count = chunk.read_u32()
                event.global_sequence_id = chunk.read_i32()
                event.times = chunk.read_array("<u4", count).tolist()
            events.append(event)
        self.doc.event_objects.extend(events)
        self._declared_nodes.extend(e.node for e in events)

    def _read_collision_shapes(self, chunk: BinaryReader, tag):
        shapes = []
        while not chunk.is_eof():
            node = self._read_node(chunk, NodeKind.CollisionShape)
            shape_type = chunk.read_u32()
            vertex_count = COLLISION_SHAPE_VERTICES.get(shape_type)
            if vertex_count is None:
                DebugConsole.warn(f"Unknown collision shape type {shape_type} on {node.name!r}")
                shapes.append(CollisionShape(node, shape_type))
                break
            shape = CollisionShape(node, shape_type,
                                   chunk.read_array("<f4", vertex_count * 3).reshape(-1, 3))
            if shape_type in (CollisionShapeType.Sphere, CollisionShapeType.Cylinder):
                shape.radius = chunk.read_f32()
            shapes.append(shape)
        self.doc.collision_shapes.extend(shapes)
        self._declared_nodes.extend(s.node for s in shapes)

    def _read_particle_emitters2(self, chunk: BinaryReader, tag):
        emitters = []
        while not chunk.is_eof():
            record = self._read_sized_record(chunk)
            node = self._read_node(record, NodeKind.ParticleEmitter2)
            e = ParticleEmitter2(node)
            (e.speed, e.variation, e.latitude, e.gravity,
             e.lifespan, e.emission_rate, e.width, e.length) = record.read_struct("8f", 32)
            e.filter_mode, e.rows, e.columns, e.head_or_tail = record.read_struct("4I", 16)
            e.tail_length, e.time_middle = record.read_struct("2f", 8)
            e.segment_colors = record.read_array("<f4", 9).astype(np.float64).reshape(3, 3)
            e.segment_alphas = record.read_struct("3B", 3)
            e.segment_scaling = record.read_struct("3f", 12)
            e.head_intervals = record.read_array("<u4", 6).astype(np.int64).reshape(2, 3)
            e.tail_intervals = record.read_array("<u4", 6).astype(np.int64).reshape(2, 3)
            e.texture_id = record.read_i32()
            e.squirt = record.read_u32()
            e.priority_plane = record.read_i32()
            e.replaceable_id = record.read_u32()

            tracks = self._read_tracks(record, node.name)
            e.speed_track = tracks.pop("KP2S", e.speed_track)
            e.variation_track = tracks.pop("KP2R", e.variation_track)
            e.latitude_track = tracks.pop("KP2L", e.latitude_track)
            e.gravity_track = tracks.pop("KP2G", e.gravity_track)
            e.emission_rate_track = tracks.pop("KP2E", e.emission_rate_track)
            e.length_track = tracks.pop("KP2N", e.length_track)
            e.width_track = tracks.pop("KP2W", e.width_track)
            e.visibility_track = tracks.pop("KP2V", e.visibility_track)
            node.extra_tracks.update(tracks)
            emitters.append(e)
        self.doc.particle_emitters.extend(emitters)
        self._declared_nodes.extend(e.node for e in emitters)

    # ---- materials ----
    def _read_layer(self, record: BinaryReader) -> Layer:
        layer = Layer(
            filter_mode=record.read_u32(),
            shading_flags=record.read_u32(),
            texture_id=record.read_i32(),
            texture_animation_id=record.read_i32(),
            coord_id=record.read_u32(),
            alpha=record.read_f32(),
        )
        if self.doc.version > 800:
            layer.emissive_gain = record.read_f32()
            layer.fresnel_color = record.read_vec3()
            layer.fresnel_opacity = record.read_f32()
            layer.fresnel_team_color = record.read_f32()
        if self.doc.version > 900:
            layer.shader_id = record.read_u32()
        tracks = self._read_tracks(record, "layer")
        layer.alpha_track = tracks.get("KMTA")
        layer.texture_id_track = tracks.get("KMTF")
        return layer

    def _read_materials(self, chunk: BinaryReader, tag):
        materials = []
        while not chunk.is_eof():
            record = self._read_sized_record(chunk)
            material = Material(priority_plane=record.read_i32(), flags=record.read_u32())
            if self.doc.version > 800:
                material.shader_name = record.read_fixed_string(80)
            lays = record.read_tag()
            if lays != "LAYS":
                DebugConsole.warn(f"Expected LAYS in material {len(materials)}, got {lays!r}")
            material.layer_count = record.read_u32()
            for i in range(material.layer_count):
                layer_record = self._read_sized_record(record)
                if i == 0:
                    material.layer = self._read_layer(layer_record)
            materials.append(material)
        self.doc.materials.extend(materials)

    # ---- geometry ----
    def _read_block(self, reader: BinaryReader, tag, dtype, width=1) -> Optional[np.ndarray]:
        """Reads an optional ``[tag][count][count * width elements]`` block."""
        if reader.peek_tag() != tag:
            return None
        reader.skip(4)
        count = reader.read_u32()
        arr = reader.read_array(dtype, count * width)
        return arr.reshape(-1, width) if width > 1 else arr

    def _read_geoset(self, record: BinaryReader) -> _GeosetData:
        empty_u32 = np.zeros(0, dtype=np.uint32)
        positions = self._read_block(record, "VRTX", "<f4", 3)
        normals = self._read_block(record, "NRMS", "<f4", 3)
        ptyp = self._read_block(record, "PTYP", "<u4")
        pcnt = self._read_block(record, "PCNT", "<u4")
        pvtx = self._read_block(record, "PVTX", "<u2")
        gndx = self._read_block(record, "GNDX", "u1")
        mtgc = self._read_block(record, "MTGC", "<u4")
        mats = self._read_block(record, "MATS", "<u4")
        geoset = _GeosetData(
            positions=positions if positions is not None else np.zeros((0, 3), dtype=np.float32),
            normals=normals,
            primitive_types=ptyp if ptyp is not None else empty_u32,
            primitive_counts=pcnt if pcnt is not None else empty_u32,
            index_pool=pvtx if pvtx is not None else np.zeros(0, dtype=np.uint16),
            vertex_groups=gndx if gndx is not None else np.zeros(0, dtype=np.uint8),
            group_sizes=mtgc if mtgc is not None else empty_u32,
            group_indices=mats if mats is not None else empty_u32,
        )
        geoset.material_id = record.read_u32()
        geoset.selection_group = record.read_u32()
        geoset.selection_flags = record.read_u32()
        if self.doc.version > 800:
            geoset.lod = record.read_u32()
            geoset.lod_name = record.read_fixed_string(80)
        geoset.extent = self._read_extent(record)
        extents_count = record.read_u32()
        record.skip(extents_count * 28)
        if self.doc.version > 800:
            # tangents and skin weights are optional and unused by the evaluators
            self._read_block(record, "TANG", "<f4", 4)
            self._read_block(record, "SKIN", "u1")
        if record.peek_tag() == "UVAS":
            record.skip(4)
            for _ in range(record.read_u32()):
                uv = self._read_block(record, "UVBS", "<f4", 2)
                if uv is None:
                    break
                geoset.uv_sets.append(uv)
        return geoset

    def _read_geosets(self, chunk: BinaryReader, tag):
        geosets = []
        while not chunk.is_eof():
            record = self._read_sized_record(chunk)
            try:
                geosets.append(self._read_geoset(record))
            except TruncatedDataError as e:
                DebugConsole.warn(f"Dropping truncated geoset {len(geosets)}: {e}")
                self.diagnostics.dropped_chunks.append("GEOS/geoset")
        for geoset in geosets:
            self._append_geoset(geoset)

    def _append_geoset(self, geoset: _GeosetData):
        geoset_index = self.diagnostics.geoset_count
        self.diagnostics.geoset_count += 1
        vcount = len(geoset.positions)
        diag = GeosetDiagnostics(
            vertex_count=vcount,
            material_id=geoset.material_id,
            base_vertex=self._vertex_count,
            index_offset=self._index_count,
            group_sizes=geoset.group_sizes.tolist(),
            had_normals=geoset.normals is not None,
        )
        self.diagnostics.geosets.append(diag)
        if vcount == 0:
            DebugConsole.log(f"Geoset {geoset_index} has no vertices; skipped")
            return

        triangles, unsupported = expand_primitives(
            geoset.primitive_types, geoset.primitive_counts, geoset.index_pool)
        if unsupported is not None:
            DebugConsole.warn(f"Geoset {geoset_index}: unsupported primitive type {unsupported}")
            diag.unsupported_primitive = unsupported
        in_range = (triangles < vcount).all(axis=1) if len(triangles) else np.zeros(0, dtype=bool)
        diag.dropped_triangles = int(len(triangles) - in_range.sum())
        triangles = triangles[in_range]

        positions = geoset.positions.astype(np.float32)
        if geoset.normals is not None and len(geoset.normals) == vcount:
            normals = geoset.normals.astype(np.float32)
        else:
            diag.had_normals = False
            normals = compute_face_normals(positions, triangles)
        uvs = np.zeros((vcount, 2), dtype=np.float32)
        if geoset.uv_sets and len(geoset.uv_sets[0]) == vcount:
            uvs = geoset.uv_sets[0].astype(np.float32)

        # matrix groups: MTGC sizes carve the MATS pool into bone lists
        groups = []
        cursor = 0
        for size in geoset.group_sizes.tolist():
            groups.append(SkinGroup([int(i) for i in geoset.group_indices[cursor:cursor + size]]))
            cursor += size
        local = np.zeros(vcount, dtype=np.int64)
        n = min(vcount, len(geoset.vertex_groups))
        local[:n] = geoset.vertex_groups[:n]
        invalid = local >= len(groups)
        if invalid.any():
            # out-of-range vertices get an empty group and stay at bind pose
            local[invalid] = len(groups)
            groups.append(SkinGroup())
        group_base = len(self.doc.skin_groups)
        if group_base + int(local.max()) > MAX_VERTEX_GROUP:
            DebugConsole.warn(f"Geoset {geoset_index}: skin group ids past {MAX_VERTEX_GROUP}; geoset dropped")
            self.diagnostics.dropped_chunks.append("GEOS/geoset")
            return
        self.doc.skin_groups.extend(groups)

        base_vertex = self._vertex_count
        flat = (triangles.reshape(-1) + base_vertex).astype(np.uint32)
        self._positions.append(positions)
        self._normals.append(normals)
        self._uvs.append(uvs)
        self._indices.append(flat)
        self._vertex_groups.append((local + group_base).astype(np.uint16))
        self.doc.sub_meshes.append(SubMesh(self._index_count, len(flat), geoset.material_id, geoset_index))

        diag.triangle_count = len(triangles)
        diag.group_count = len(geoset.group_sizes)
        diag.index_count = len(flat)
        diag.max_vertex_group = int(local.max()) if vcount else 0
        self._vertex_count += vcount
        self._index_count += len(flat)

    # ---- finishing ----
    def _finalize(self):
        doc = self.doc
        if self._positions:
            doc.vertices = VertexBuffer(
                np.concatenate(self._positions),
                np.concatenate(self._normals),
                np.concatenate(self._uvs),
            )
            doc.indices = np.concatenate(self._indices)
            doc.vertex_groups = np.concatenate(self._vertex_groups)
        doc.bind_vertices = doc.vertices.copy(writeable=False)

        if not doc.materials:
            doc.materials.append(Material())
        if doc.bounds.is_empty():
            doc.bounds = compute_bounds(doc.vertices.positions)

        self._build_node_arena()

    def _build_node_arena(self):
        doc = self.doc
        by_id: Dict[int, Node] = {}
        homeless: List[Node] = []
        for node in self._declared_nodes:
            if node.node_id < 0 or node.node_id > MAX_NODE_ID or node.node_id in by_id:
                homeless.append(node)
            else:
                by_id[node.node_id] = node

        size = max(len(doc.pivots), max(by_id) + 1 if by_id else 0)
        nodes = [by_id.get(i) for i in range(size)]
        for i, node in enumerate(nodes):
            if node is None:
                nodes[i] = Node(name="", kind=NodeKind.Implicit, node_id=i)
        for node in homeless:
            DebugConsole.warn(f"Node {node.name!r} has unusable id {node.node_id}; "
                              f"reassigned to {len(nodes)}")
            node.node_id = len(nodes)
            nodes.append(node)

        for node in nodes:
            if node.pivot is None:
                if node.node_id < len(doc.pivots):
                    node.pivot = np.array(doc.pivots[node.node_id], dtype=np.float64)
                else:
                    node.pivot = np.zeros(3)
        doc.nodes = nodes
        doc.bone_node_ids = [b.node.node_id for b in doc.bones]


def parse(data) -> ModelDocument:
    """Parses an in-memory MDX buffer into a ModelDocument."""
    return MDXParser(data).parse()


def parse_file(filepath) -> ModelDocument:
    if not os.path.exists(filepath):
        raise FileNotFoundError(f"File not found: {filepath}")
    with open(filepath, "rb") as f:
        data = f.read()
    return parse(data)

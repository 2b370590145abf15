import math
from dataclasses import dataclass, field, replace
from typing import List, Optional, Tuple

import numpy as np
import pyrr

from mdxlib.debug_console import DebugConsole
from mdxlib.mdx_parser import Emitter2Flags, ModelDocument, ParticleEmitter2
from mdxlib.mdx_skeleton import NodeTransforms
from mdxlib.mdx_tracks import IDENTITY_QUAT, UNIT_SCALE, sample_track

Z_AXIS = np.array([0.0, 0.0, 1.0])
SPAWN_BASE_ROTATION = pyrr.quaternion.create_from_axis_rotation([0.0, 0.0, 1.0], math.pi / 2)


class HeadOrTail:
    Head = 0
    Tail = 1
    Both = 2


# ==========================================================================
# 1. Configuration and state
# ==========================================================================
@dataclass
class ParticleConfig:
    max_spawn_per_tick: int = 200
    max_particles: int = 5000
    visibility_epsilon: float = 0.001
    min_lifespan: float = 0.01
    seed: int = 1337


@dataclass
class EmitterParams:
    """Everything ``advance`` needs from one emitter at one instant."""
    time_ms: int
    visibility: float
    emission_rate: float
    speed: float
    variation: float
    latitude: float  # degrees
    gravity: float
    lifespan: float
    width: float
    length: float
    world_matrix: np.ndarray = field(default_factory=lambda: np.identity(4))
    world_rotation: np.ndarray = field(default_factory=lambda: IDENTITY_QUAT.copy())
    world_scale: np.ndarray = field(default_factory=lambda: UNIT_SCALE.copy())
    pivot: np.ndarray = field(default_factory=lambda: np.zeros(3))


@dataclass
class Particle:
    position: np.ndarray
    velocity: np.ndarray
    life: float
    age: float = 0.0
    is_tail: bool = False
    facing: float = 0.0


@dataclass
class ParticleSnapshot:
    position: np.ndarray
    velocity: np.ndarray
    color: np.ndarray
    alpha: float
    scale: float
    sprite_cell: int
    uv_rect: Tuple[float, float, float, float]
    is_tail: bool
    facing: float
    age: float
    life: float


@dataclass
class EmitterRuntime:
    rng: np.random.Generator
    particles: List[Particle] = field(default_factory=list)
    accumulator: float = 0.0
    spawned_last_tick: int = 0
    total_spawned: int = 0
    dormant_logged: bool = False
    world_matrix: np.ndarray = field(default_factory=lambda: np.identity(4))
    world_scale: np.ndarray = field(default_factory=lambda: UNIT_SCALE.copy())

    @classmethod
    def create(cls, seed=1337) -> "EmitterRuntime":
        return cls(rng=np.random.default_rng(seed))

    def __len__(self):
        return len(self.particles)


# ==========================================================================
# 2. Sampling
# ==========================================================================
def sample_emitter_params(doc: ModelDocument, emitter: ParticleEmitter2, time_ms,
                          transforms: Optional[NodeTransforms] = None) -> EmitterParams:
    gs = doc.global_sequences
    params = EmitterParams(
        time_ms=time_ms,
        visibility=sample_track(emitter.visibility_track, time_ms, 1.0, gs),
        emission_rate=sample_track(emitter.emission_rate_track, time_ms, emitter.emission_rate, gs),
        speed=sample_track(emitter.speed_track, time_ms, emitter.speed, gs),
        variation=sample_track(emitter.variation_track, time_ms, emitter.variation, gs),
        latitude=sample_track(emitter.latitude_track, time_ms, emitter.latitude, gs),
        gravity=sample_track(emitter.gravity_track, time_ms, emitter.gravity, gs),
        lifespan=sample_track(emitter.lifespan_track, time_ms, emitter.lifespan, gs),
        width=sample_track(emitter.width_track, time_ms, emitter.width, gs),
        length=sample_track(emitter.length_track, time_ms, emitter.length, gs),
    )
    node = emitter.node
    if node.pivot is not None:
        params.pivot = np.asarray(node.pivot, dtype=np.float64)
    if transforms is not None and 0 <= node.node_id < len(transforms):
        params.world_matrix = transforms.world_matrices[node.node_id]
        params.world_rotation = transforms.world_rotations[node.node_id]
        params.world_scale = transforms.world_scales[node.node_id]
    return params


# ==========================================================================
# 3. Simulation
# ==========================================================================
def _spawn(runtime: EmitterRuntime, emitter: ParticleEmitter2, params: EmitterParams,
           config: ParticleConfig, is_tail):
    rng = runtime.rng
    model_space = bool(emitter.node.flags & Emitter2Flags.ModelSpace)

    offset = np.array([rng.uniform(-params.width, params.width) if params.width else 0.0,
                       rng.uniform(-params.length, params.length) if params.length else 0.0,
                       0.0])
    position = params.pivot + offset
    if not model_space:
        position = (np.append(position, 1.0) @ params.world_matrix)[:3]

    latitude = math.radians(params.latitude)
    rotation = pyrr.quaternion.cross(
        SPAWN_BASE_ROTATION,
        pyrr.quaternion.create_from_axis_rotation([0.0, 1.0, 0.0], rng.uniform(-latitude, latitude)))
    if not emitter.node.flags & Emitter2Flags.LineEmitter:
        rotation = pyrr.quaternion.cross(
            rotation,
            pyrr.quaternion.create_from_axis_rotation([1.0, 0.0, 0.0], rng.uniform(-latitude, latitude)))
    if not model_space:
        rotation = pyrr.quaternion.cross(params.world_rotation, rotation)

    speed = params.speed * (1.0 + rng.uniform(-params.variation, params.variation))
    velocity = np.asarray(pyrr.quaternion.apply_to_vector(rotation, Z_AXIS), dtype=np.float64) * speed
    if not model_space:
        velocity = velocity * params.world_scale

    facing = 0.0
    if emitter.node.flags & Emitter2Flags.XYQuad:
        facing = math.atan2(velocity[1], velocity[0]) - math.pi + math.pi / 8

    runtime.particles.append(Particle(
        position=position,
        velocity=velocity,
        life=max(float(params.lifespan), config.min_lifespan),
        is_tail=is_tail,
        facing=facing,
    ))


def advance(runtime: EmitterRuntime, emitter: ParticleEmitter2, params: EmitterParams, dt,
            config: Optional[ParticleConfig] = None):
    """
    Steps one emitter by ``dt`` seconds: spawn, integrate, then cull.

    Spawning goes through a fractional accumulator so low rates still emit
    on average; the remainder carries over to the next tick.
    """
    config = config or ParticleConfig()
    dt = max(0.0, float(dt))
    runtime.world_matrix = params.world_matrix
    runtime.world_scale = params.world_scale

    runtime.spawned_last_tick = 0
    if params.visibility > config.visibility_epsilon and params.emission_rate > 0:
        runtime.accumulator += params.emission_rate * dt
        whole = int(math.floor(runtime.accumulator))
        runtime.accumulator -= whole
        count = min(whole, config.max_spawn_per_tick)
        for _ in range(count):
            if emitter.head_or_tail in (HeadOrTail.Head, HeadOrTail.Both):
                _spawn(runtime, emitter, params, config, is_tail=False)
            if emitter.head_or_tail in (HeadOrTail.Tail, HeadOrTail.Both):
                _spawn(runtime, emitter, params, config, is_tail=True)
        runtime.spawned_last_tick = count
        runtime.total_spawned += count
    elif not runtime.dormant_logged:
        DebugConsole.log(f"Emitter {emitter.node.name!r} dormant at {params.time_ms} ms")
        runtime.dormant_logged = True

    gravity = params.gravity
    if not emitter.node.flags & Emitter2Flags.ModelSpace:
        gravity *= params.world_scale[2]
    for particle in runtime.particles:
        particle.velocity[2] -= gravity * dt
        particle.position += particle.velocity * dt
        particle.age += dt

    runtime.particles = [p for p in runtime.particles if p.age < p.life]
    excess = len(runtime.particles) - config.max_particles
    if excess > 0:
        del runtime.particles[:excess]


# ==========================================================================
# 4. Appearance
# ==========================================================================
def segment_position(emitter: ParticleEmitter2, life_t):
    """Returns ``(segment, factor)``: 0 covers [0, middle), 1 covers [middle, 1]."""
    middle = min(max(float(emitter.time_middle), 0.01), 0.99)
    life_t = min(max(life_t, 0.0), 1.0)
    if life_t < middle:
        return 0, life_t / middle
    return 1, min((life_t - middle) / (1.0 - middle), 1.0)


def evaluate_segments(emitter: ParticleEmitter2, life_t):
    """Colour, alpha (0..1) and scale multiplier at a normalized age."""
    segment, factor = segment_position(emitter, life_t)
    colors = np.asarray(emitter.segment_colors, dtype=np.float64)
    color = colors[segment] + (colors[segment + 1] - colors[segment]) * factor
    alphas = emitter.segment_alphas
    alpha = (alphas[segment] + (alphas[segment + 1] - alphas[segment]) * factor) / 255.0
    scaling = emitter.segment_scaling
    scale = (scaling[segment] + (scaling[segment + 1] - scaling[segment]) * factor) / 100.0
    return color, alpha, scale


def sprite_cell(emitter: ParticleEmitter2, life_t, is_tail=False):
    if emitter.replaceable_id in (1, 2):
        return 0
    total = max(1, emitter.rows * emitter.columns)
    segment, factor = segment_position(emitter, life_t)
    intervals = emitter.tail_intervals if is_tail else emitter.head_intervals
    start, end, repeat = (int(v) for v in intervals[segment])
    sprite_count = end - start
    if sprite_count > 0:
        index = int(math.floor(sprite_count * repeat * factor))
        cell = start + index % sprite_count
    else:
        cell = start
    return min(max(cell, 0), total - 1)


def cell_uv_rect(emitter: ParticleEmitter2, cell):
    columns = max(1, emitter.columns)
    rows = max(1, emitter.rows)
    col = cell % columns
    row = cell // columns
    return (col / columns, row / rows, (col + 1) / columns, (row + 1) / rows)


def snapshot(runtime: EmitterRuntime, emitter: ParticleEmitter2) -> List[ParticleSnapshot]:
    """
    Copies the live pool into render-ready records.

    Model-space particles are simulated in node space; they are posed here
    with the emitter node's world matrix from the last tick, and their size
    follows the node's x scale.
    """
    model_space = bool(emitter.node.flags & Emitter2Flags.ModelSpace)
    out = []
    for p in runtime.particles:
        life_t = p.age / p.life if p.life > 0 else 1.0
        color, alpha, scale = evaluate_segments(emitter, life_t)
        cell = sprite_cell(emitter, life_t, p.is_tail)
        position = p.position.copy()
        velocity = p.velocity.copy()
        if model_space:
            position = (np.append(position, 1.0) @ runtime.world_matrix)[:3]
            velocity = velocity @ runtime.world_matrix[:3, :3]
            scale *= float(runtime.world_scale[0])
        out.append(ParticleSnapshot(
            position=position,
            velocity=velocity,
            color=color,
            alpha=alpha,
            scale=scale,
            sprite_cell=cell,
            uv_rect=cell_uv_rect(emitter, cell),
            is_tail=p.is_tail,
            facing=p.facing,
            age=p.age,
            life=p.life,
        ))
    return out


class ParticleSystem:
    """One runtime per emitter of a document, stepped together."""

    def __init__(self, doc: ModelDocument, config: Optional[ParticleConfig] = None):
        self.doc = doc
        self.config = config or ParticleConfig()
        self.reset()

    def reset(self):
        # one independent stream per emitter, all derived from the config seed
        seeds = np.random.SeedSequence(self.config.seed).spawn(len(self.doc.particle_emitters))
        self.runtimes = [EmitterRuntime.create(s) for s in seeds]

    def tick(self, time_ms, transforms: Optional[NodeTransforms], dt, force_visible=False):
        for emitter, runtime in zip(self.doc.particle_emitters, self.runtimes):
            params = sample_emitter_params(self.doc, emitter, time_ms, transforms)
            if force_visible:
                params = replace(params, visibility=1.0)
            advance(runtime, emitter, params, dt, self.config)

    def snapshots(self) -> List[List[ParticleSnapshot]]:
        return [snapshot(r, e) for e, r in zip(self.doc.particle_emitters, self.runtimes)]

    def particle_count(self):
        return sum(len(r) for r in self.runtimes)

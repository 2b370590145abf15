from dataclasses import dataclass, field
from typing import List, Optional

from mdxlib.debug_console import DebugConsole
from mdxlib.mdx_parser import ModelDocument, Sequence
from mdxlib.mdx_particles import ParticleConfig, ParticleSnapshot, ParticleSystem
from mdxlib.mdx_skeleton import NodeTransforms, evaluate_transforms
from mdxlib.mdx_skinning import PosedVertices, SkinningEvaluator


def clip_time_ms(sequence: Optional[Sequence], elapsed_ms):
    """Maps elapsed playback time onto a looping sequence."""
    if sequence is None:
        return int(elapsed_ms)
    span = max(sequence.end_ms - sequence.start_ms, 1)
    return sequence.start_ms + int(elapsed_ms) % span


@dataclass
class FrameState:
    time_ms: int
    transforms: NodeTransforms
    posed_vertices: PosedVertices
    particles: List[List[ParticleSnapshot]] = field(default_factory=list)


class PlaybackSession:
    """
    One viewer's playback of a shared document.

    Owns the elapsed clock, the skinning evaluator and the particle pools, so
    several sessions can play the same document side by side.
    """

    def __init__(self, doc: ModelDocument, sequence_index=0, speed=1.0, max_dt=0.1,
                 force_particle_visible=False, particle_config: Optional[ParticleConfig] = None):
        self.doc = doc
        self.speed = speed
        self.max_dt = max_dt
        self.force_particle_visible = force_particle_visible
        self.elapsed_ms = 0.0
        self.skinning = SkinningEvaluator(doc)
        self.particles = ParticleSystem(doc, particle_config)
        self.sequence: Optional[Sequence] = None
        self.set_sequence(sequence_index)

    def set_sequence(self, sequence_index):
        if 0 <= sequence_index < len(self.doc.sequences):
            self.sequence = self.doc.sequences[sequence_index]
        else:
            if self.doc.sequences:
                DebugConsole.warn(f"Sequence {sequence_index} out of range; playing from time 0")
            self.sequence = None
        self.elapsed_ms = 0.0
        self.particles.reset()

    @property
    def time_ms(self):
        return clip_time_ms(self.sequence, self.elapsed_ms)

    def tick(self, dt_seconds) -> FrameState:
        dt = min(max(float(dt_seconds), 0.0), self.max_dt)
        self.elapsed_ms += dt * 1000.0 * self.speed
        time_ms = self.time_ms

        transforms = evaluate_transforms(self.doc, time_ms)
        posed = self.skinning.skin(transforms)
        self.particles.tick(time_ms, transforms, dt, self.force_particle_visible)
        return FrameState(time_ms, transforms, posed, self.particles.snapshots())

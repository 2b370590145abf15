import math
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, List, Sequence

import numpy as np
import pyrr


# ==========================================================================
# 1. ENUMS and Track Structures
# ==========================================================================
class Interpolation(IntEnum):
    NONE = 0
    LINEAR = 1
    HERMITE = 2
    BEZIER = 3


class TrackKind(IntEnum):
    FLOAT = 0
    INT = 1
    VEC3 = 2
    QUAT = 3


# Component count of a single value, per kind
KIND_COMPONENTS = {
    TrackKind.FLOAT: 1,
    TrackKind.INT: 1,
    TrackKind.VEC3: 3,
    TrackKind.QUAT: 4,
}

IDENTITY_QUAT = np.array([0.0, 0.0, 0.0, 1.0])
UNIT_SCALE = np.array([1.0, 1.0, 1.0])
ZERO_VEC3 = np.array([0.0, 0.0, 0.0])

# Below this, two quaternions are blended linearly instead of slerped
SLERP_LINEAR_THRESHOLD = 0.95


@dataclass
class TrackKey:
    time_ms: int
    value: Any
    in_tan: Any = None
    out_tan: Any = None


@dataclass
class Track:
    """A keyframe track as stored in the file (KGTR, KP2E, ...)."""
    kind: TrackKind = TrackKind.FLOAT
    interpolation: Interpolation = Interpolation.NONE
    global_sequence_id: int = -1
    keys: List[TrackKey] = field(default_factory=list)

    def __bool__(self):
        return bool(self.keys)

    @property
    def start_ms(self):
        return self.keys[0].time_ms if self.keys else 0

    @property
    def end_ms(self):
        return self.keys[-1].time_ms if self.keys else 0


# ==========================================================================
# 2. Scalar / vector curves
# ==========================================================================
def lerp(a, b, t):
    return a + (b - a) * t


def hermite(p0, m0, p1, m1, t):
    t2 = t * t
    t3 = t2 * t
    return ((2 * t3 - 3 * t2 + 1) * p0
            + (t3 - 2 * t2 + t) * m0
            + (-2 * t3 + 3 * t2) * p1
            + (t3 - t2) * m1)


def bezier(p0, c1, c2, p1, t):
    it = 1.0 - t
    return it * it * it * p0 + 3 * it * it * t * c1 + 3 * it * t * t * c2 + t * t * t * p1


# ==========================================================================
# 3. Quaternion helpers
# ==========================================================================
def normalize_quat(q) -> np.ndarray:
    q = np.asarray(q, dtype=np.float64)
    length = pyrr.vector.length(q)
    if length <= 1e-6:
        return IDENTITY_QUAT.copy()
    return q / length


def slerp_quat(a, b, t, invert_if_necessary=True) -> np.ndarray:
    """Spherical interpolation with a normalized-lerp fallback near zero angle."""
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    dot = float(np.dot(a, b))
    if invert_if_necessary and dot < 0.0:
        dot = -dot
        b = -b

    if dot > SLERP_LINEAR_THRESHOLD:
        return normalize_quat(lerp(a, b, t))

    dot = min(max(dot, -1.0), 1.0)
    theta0 = math.acos(dot)
    sin_theta0 = math.sin(theta0)
    if sin_theta0 <= 1e-6:
        return normalize_quat(lerp(a, b, t))
    theta = theta0 * t
    sin_theta = math.sin(theta)
    s0 = math.cos(theta) - dot * sin_theta / sin_theta0
    s1 = sin_theta / sin_theta0
    return a * s0 + b * s1


def _quat_hermite(k0: TrackKey, k1: TrackKey, t):
    base = slerp_quat(k0.value, k1.value, t, False)
    tangents = slerp_quat(k0.out_tan, k1.in_tan, t, False)
    return slerp_quat(base, tangents, 2.0 * t * (1.0 - t), False)


def _quat_bezier(k0: TrackKey, k1: TrackKey, t):
    s0 = slerp_quat(k0.value, k0.out_tan, t, False)
    s1 = slerp_quat(k0.out_tan, k1.in_tan, t, False)
    s2 = slerp_quat(k1.in_tan, k1.value, t, False)
    s3 = slerp_quat(s0, s1, t, False)
    s4 = slerp_quat(s1, s2, t, False)
    return slerp_quat(s3, s4, t, False)


# ==========================================================================
# 4. Sampling
# ==========================================================================
def resolve_track_time(track: Track, time_ms, global_sequences: Sequence[int] = ()):
    """Wraps ``time_ms`` against the track's global sequence, if it has one."""
    gid = track.global_sequence_id
    if 0 <= gid < len(global_sequences):
        duration = global_sequences[gid]
        if duration:
            return time_ms % duration
    return time_ms


def _finish(track: Track, value):
    if track.kind == TrackKind.QUAT:
        return normalize_quat(value)
    if track.kind == TrackKind.VEC3:
        return np.array(value, dtype=np.float64)
    return value


def sample_track(track: Track, time_ms, default, global_sequences: Sequence[int] = ()):
    """
    Samples a keyframe track at ``time_ms``.

    ``time_ms`` is clip time already computed by the caller; tracks bound to a
    global sequence wrap it against that sequence's duration instead. Outside
    the key range the first/last key is returned. Quaternions come back
    normalized, vectors as fresh float64 arrays, so callers may mutate them.
    """
    if track is None or not track.keys:
        return default

    time_ms = resolve_track_time(track, time_ms, global_sequences)

    keys = track.keys
    if time_ms <= keys[0].time_ms:
        return _finish(track, keys[0].value)
    if time_ms >= keys[-1].time_ms:
        return _finish(track, keys[-1].value)

    hi = 1
    while hi < len(keys) and time_ms > keys[hi].time_ms:
        hi += 1
    if hi >= len(keys):
        return _finish(track, keys[-1].value)

    k0 = keys[hi - 1]
    k1 = keys[hi]
    span = k1.time_ms - k0.time_ms
    t = (time_ms - k0.time_ms) / span if span > 0 else 0.0

    mode = track.interpolation
    if track.kind == TrackKind.INT or mode == Interpolation.NONE:
        return _finish(track, k0.value)

    if track.kind == TrackKind.QUAT:
        if mode == Interpolation.LINEAR:
            return normalize_quat(slerp_quat(k0.value, k1.value, t, True))
        if mode == Interpolation.HERMITE:
            return normalize_quat(_quat_hermite(k0, k1, t))
        if mode == Interpolation.BEZIER:
            return normalize_quat(_quat_bezier(k0, k1, t))
        return normalize_quat(k0.value)

    if track.kind == TrackKind.VEC3:
        v0 = np.asarray(k0.value, dtype=np.float64)
        v1 = np.asarray(k1.value, dtype=np.float64)
        if mode == Interpolation.LINEAR:
            return lerp(v0, v1, t)
        out_tan = np.asarray(k0.out_tan, dtype=np.float64)
        in_tan = np.asarray(k1.in_tan, dtype=np.float64)
        if mode == Interpolation.HERMITE:
            return hermite(v0, out_tan, v1, in_tan, t)
        return bezier(v0, out_tan, in_tan, v1, t)

    v0 = float(k0.value)
    v1 = float(k1.value)
    if mode == Interpolation.LINEAR:
        return lerp(v0, v1, t)
    if mode == Interpolation.HERMITE:
        return hermite(v0, float(k0.out_tan), v1, float(k1.in_tan), t)
    return bezier(v0, float(k0.out_tan), float(k1.in_tan), v1, t)


def make_track(kind, interpolation, keys, global_sequence_id=-1) -> Track:
    """
    Convenience constructor: ``keys`` is a list of ``(time, value)`` or
    ``(time, value, in_tan, out_tan)`` tuples.
    """
    track = Track(kind=TrackKind(kind), interpolation=Interpolation(interpolation),
                  global_sequence_id=global_sequence_id)
    for entry in keys:
        time_ms, value = entry[0], entry[1]
        in_tan = entry[2] if len(entry) > 2 else None
        out_tan = entry[3] if len(entry) > 3 else None
        if track.kind in (TrackKind.VEC3, TrackKind.QUAT):
            value = np.asarray(value, dtype=np.float64)
            in_tan = np.asarray(in_tan, dtype=np.float64) if in_tan is not None else None
            out_tan = np.asarray(out_tan, dtype=np.float64) if out_tan is not None else None
        track.keys.append(TrackKey(time_ms, value, in_tan, out_tan))
    return track

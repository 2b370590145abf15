import math

import numpy as np
import pyrr
import pytest

import mdx_builder as mb
from mdxlib.mdx_parser import Emitter2Flags, Node, NodeKind, ParticleEmitter2, parse
from mdxlib.mdx_particles import (
    EmitterParams,
    EmitterRuntime,
    ParticleConfig,
    ParticleSystem,
    advance,
    cell_uv_rect,
    evaluate_segments,
    sample_emitter_params,
    snapshot,
    sprite_cell,
)
from mdxlib.mdx_skeleton import evaluate_transforms
from mdxlib.mdx_tracks import Interpolation, TrackKind, make_track


def make_emitter(flags=0, **fields):
    node = Node(name="Emitter", kind=NodeKind.ParticleEmitter2, node_id=0, flags=flags,
                pivot=np.zeros(3))
    return ParticleEmitter2(node=node, **fields)


def make_params(**overrides):
    values = dict(time_ms=0, visibility=1.0, emission_rate=0.0, speed=0.0, variation=0.0,
                  latitude=0.0, gravity=0.0, lifespan=10.0, width=0.0, length=0.0)
    values.update(overrides)
    return EmitterParams(**values)


def test_fractional_accumulator_spawns_two_three_two_three():
    emitter = make_emitter()
    runtime = EmitterRuntime.create()
    params = make_params(emission_rate=2.5)
    counts = []
    for _ in range(4):
        advance(runtime, emitter, params, 1.0)
        counts.append(runtime.spawned_last_tick)
    assert counts == [2, 3, 2, 3]
    assert runtime.total_spawned == 10
    assert len(runtime) == 10


@pytest.mark.parametrize("visibility, rate", [(0.0, 10.0), (0.0005, 10.0), (1.0, 0.0), (1.0, -3.0)])
def test_dormant_emitter_spawns_nothing(visibility, rate):
    runtime = EmitterRuntime.create()
    advance(runtime, make_emitter(), make_params(visibility=visibility, emission_rate=rate), 1.0)
    assert len(runtime) == 0
    assert runtime.accumulator == 0.0


def test_gravity_pulls_velocity_down():
    runtime = EmitterRuntime.create()
    emitter = make_emitter()
    advance(runtime, emitter, make_params(emission_rate=1.0, gravity=10.0), 1.0)
    particle = runtime.particles[0]
    np.testing.assert_allclose(particle.velocity, [0, 0, -10])
    np.testing.assert_allclose(particle.position, [0, 0, -10])
    advance(runtime, emitter, make_params(gravity=10.0), 1.0)
    np.testing.assert_allclose(particle.velocity, [0, 0, -20])
    np.testing.assert_allclose(particle.position, [0, 0, -30])
    assert particle.age == pytest.approx(2.0)


def test_spawn_cap_per_tick_discards_overflow():
    runtime = EmitterRuntime.create()
    advance(runtime, make_emitter(), make_params(emission_rate=1000.0), 1.0)
    assert runtime.spawned_last_tick == 200
    assert runtime.accumulator == 0.0
    assert len(runtime) == 200


def test_pool_cap_drops_oldest():
    config = ParticleConfig(max_particles=50)
    runtime = EmitterRuntime.create()
    emitter = make_emitter()
    advance(runtime, emitter, make_params(emission_rate=40.0), 1.0, config)
    oldest = runtime.particles[0]
    advance(runtime, emitter, make_params(emission_rate=40.0), 1.0, config)
    assert len(runtime) == 50
    assert all(p is not oldest for p in runtime.particles)


def test_expired_particles_are_culled():
    runtime = EmitterRuntime.create()
    advance(runtime, make_emitter(), make_params(emission_rate=5.0, lifespan=0.5), 1.0)
    assert runtime.total_spawned == 5
    assert len(runtime) == 0


def test_lifespan_has_a_floor():
    runtime = EmitterRuntime.create()
    advance(runtime, make_emitter(), make_params(emission_rate=1.0, lifespan=0.0), 0.005)
    advance(runtime, make_emitter(), make_params(emission_rate=1000.0, lifespan=0.0), 0.001)
    assert all(p.life == pytest.approx(0.01) for p in runtime.particles)


def test_head_and_tail_both_spawn_a_pair():
    runtime = EmitterRuntime.create()
    advance(runtime, make_emitter(head_or_tail=2), make_params(emission_rate=3.0), 1.0)
    assert len(runtime) == 6
    assert sum(p.is_tail for p in runtime.particles) == 3


def test_tail_only():
    runtime = EmitterRuntime.create()
    advance(runtime, make_emitter(head_or_tail=1), make_params(emission_rate=2.0), 1.0)
    assert all(p.is_tail for p in runtime.particles)


def test_zero_latitude_emits_straight_up():
    runtime = EmitterRuntime.create()
    advance(runtime, make_emitter(), make_params(emission_rate=1.0, speed=5.0), 1.0)
    np.testing.assert_allclose(runtime.particles[0].velocity, [0, 0, 5], atol=1e-9)


def test_latitude_bounds_the_cone():
    runtime = EmitterRuntime.create()
    advance(runtime, make_emitter(), make_params(emission_rate=100.0, speed=1.0, latitude=30.0), 1.0)
    for p in runtime.particles:
        angle = math.degrees(math.acos(min(1.0, p.velocity[2] / np.linalg.norm(p.velocity))))
        assert angle <= 30.0 * math.sqrt(2) + 1e-6


def test_line_emitter_stays_in_one_plane():
    runtime = EmitterRuntime.create()
    emitter = make_emitter(flags=Emitter2Flags.LineEmitter)
    advance(runtime, emitter, make_params(emission_rate=50.0, speed=1.0, latitude=45.0), 1.0)
    # Y tilt then the 90 degree Z turn leaves every direction in the YZ plane
    for p in runtime.particles:
        assert p.velocity[0] == pytest.approx(0.0, abs=1e-9)


def test_speed_variation_is_relative():
    runtime = EmitterRuntime.create()
    advance(runtime, make_emitter(), make_params(emission_rate=100.0, speed=10.0, variation=0.5), 1.0)
    speeds = [np.linalg.norm(p.velocity) for p in runtime.particles]
    assert min(speeds) >= 5.0 - 1e-9
    assert max(speeds) <= 15.0 + 1e-9


def test_spawn_area_uses_width_and_length():
    runtime = EmitterRuntime.create()
    advance(runtime, make_emitter(), make_params(emission_rate=100.0, width=2.0, length=3.0), 1.0)
    positions = np.array([p.position for p in runtime.particles])
    assert np.all(np.abs(positions[:, 0]) <= 2.0)
    assert np.all(np.abs(positions[:, 1]) <= 3.0)


def test_spawn_follows_node_transform_unless_model_space():
    world = pyrr.matrix44.create_from_translation([10.0, 0.0, 0.0])
    params = make_params(emission_rate=1.0, world_matrix=world)

    runtime = EmitterRuntime.create()
    advance(runtime, make_emitter(), params, 1.0)
    np.testing.assert_allclose(runtime.particles[0].position, [10, 0, 0])

    runtime = EmitterRuntime.create()
    advance(runtime, make_emitter(flags=Emitter2Flags.ModelSpace), params, 1.0)
    np.testing.assert_allclose(runtime.particles[0].position, [0, 0, 0])


def test_node_scale_scales_velocity_and_gravity():
    params = make_params(emission_rate=1.0, speed=1.0, gravity=1.0, world_scale=np.array([1.0, 1.0, 2.0]))
    runtime = EmitterRuntime.create()
    advance(runtime, make_emitter(), params, 1.0)
    np.testing.assert_allclose(runtime.particles[0].velocity, [0, 0, 0], atol=1e-9)


def test_xy_quad_facing():
    runtime = EmitterRuntime.create()
    emitter = make_emitter(flags=Emitter2Flags.XYQuad)
    advance(runtime, emitter, make_params(emission_rate=1.0, speed=1.0, latitude=30.0), 1.0)
    p = runtime.particles[0]
    expected = math.atan2(p.velocity[1], p.velocity[0]) - math.pi + math.pi / 8
    assert p.facing == pytest.approx(expected)


def test_facing_is_zero_without_xy_quad():
    runtime = EmitterRuntime.create()
    advance(runtime, make_emitter(), make_params(emission_rate=1.0, speed=1.0, latitude=30.0), 1.0)
    assert runtime.particles[0].facing == 0.0


def test_same_seed_same_particles():
    emitter = make_emitter()
    params = make_params(emission_rate=20.0, speed=3.0, latitude=40.0, width=1.0, variation=0.2)
    a, b = EmitterRuntime.create(7), EmitterRuntime.create(7)
    advance(a, emitter, params, 1.0)
    advance(b, emitter, params, 1.0)
    for pa, pb in zip(a.particles, b.particles):
        np.testing.assert_array_equal(pa.position, pb.position)


def test_segment_interpolation():
    emitter = make_emitter(time_middle=0.5, segment_alphas=(0, 255, 0),
                           segment_scaling=(10.0, 50.0, 100.0),
                           segment_colors=np.array([[1, 0, 0], [0, 1, 0], [0, 0, 1]], dtype=float))
    color, alpha, scale = evaluate_segments(emitter, 0.25)
    np.testing.assert_allclose(color, [0.5, 0.5, 0])
    assert alpha == pytest.approx(0.5)
    assert scale == pytest.approx(0.3)
    color, alpha, scale = evaluate_segments(emitter, 0.75)
    np.testing.assert_allclose(color, [0, 0.5, 0.5])
    assert scale == pytest.approx(0.75)


def test_time_middle_is_clamped():
    emitter = make_emitter(time_middle=0.0, segment_scaling=(0.0, 100.0, 100.0))
    _, _, scale = evaluate_segments(emitter, 0.005)
    assert scale == pytest.approx(0.5)


def test_sprite_cell_selection():
    emitter = make_emitter(rows=2, columns=4, time_middle=0.5,
                           head_intervals=np.array([[0, 3, 1], [4, 7, 1]]),
                           tail_intervals=np.array([[7, 7, 1], [7, 7, 1]]))
    assert sprite_cell(emitter, 0.25) == 1
    assert sprite_cell(emitter, 0.75) == 5
    assert sprite_cell(emitter, 0.75, is_tail=True) == 7
    assert cell_uv_rect(emitter, 5) == (0.25, 0.5, 0.5, 1.0)


def test_sprite_cell_is_clamped_to_sheet():
    emitter = make_emitter(rows=1, columns=2, head_intervals=np.array([[0, 10, 1], [0, 10, 1]]))
    assert sprite_cell(emitter, 0.45) == 1


def test_replaceable_texture_uses_first_cell():
    emitter = make_emitter(rows=2, columns=2, replaceable_id=1,
                           head_intervals=np.array([[1, 3, 1], [1, 3, 1]]))
    assert sprite_cell(emitter, 0.3) == 0


def test_snapshot_is_a_copy():
    runtime = EmitterRuntime.create()
    emitter = make_emitter()
    advance(runtime, emitter, make_params(emission_rate=1.0, speed=1.0), 1.0)
    snap = snapshot(runtime, emitter)
    assert len(snap) == 1
    snap[0].position[0] = 100.0
    assert runtime.particles[0].position[0] != 100.0
    assert snap[0].alpha == pytest.approx(1.0)


def test_sample_emitter_params_uses_tracks_and_statics():
    emitter = make_emitter(speed=7.0, emission_rate=3.0)
    emitter.emission_rate_track = make_track(TrackKind.FLOAT, Interpolation.LINEAR, [(0, 0.0), (100, 10.0)])
    doc = parse(mb.mdx(mb.vers()))
    params = sample_emitter_params(doc, emitter, 50)
    assert params.emission_rate == pytest.approx(5.0)
    assert params.speed == 7.0
    assert params.visibility == 1.0


def test_particle_system_with_parsed_emitter():
    data = mb.mdx(mb.vers(), mb.pre2(mb.emitter(mb.node("Smoke", 0), emission_rate=2.5, lifespan=10.0)),
                  mb.pivt((0, 0, 0)))
    doc = parse(data)
    system = ParticleSystem(doc)
    transforms = evaluate_transforms(doc, 0)
    for _ in range(4):
        system.tick(0, transforms, 1.0)
    assert system.particle_count() == 10
    assert len(system.snapshots()[0]) == 10
    system.reset()
    assert system.particle_count() == 0


def test_particle_system_forced_visibility():
    hidden = mb.track("KP2V", [(0, 0.0)])
    data = mb.mdx(mb.vers(), mb.pre2(mb.emitter(mb.node("Smoke", 0), emission_rate=2.0, lifespan=10.0,
                                                           tracks=hidden)))
    doc = parse(data)
    system = ParticleSystem(doc)
    system.tick(0, None, 1.0)
    assert system.particle_count() == 0
    system.tick(0, None, 1.0, force_visible=True)
    assert system.particle_count() == 2


def test_model_space_particles_follow_their_node():
    moved = mb.track("KGTR", [(0, (10, 0, 0))]) + mb.track("KGSC", [(0, (2, 2, 2))])
    node = mb.node("Smoke", 0, flags=Emitter2Flags.ModelSpace, tracks=moved)
    data = mb.mdx(mb.vers(), mb.pre2(mb.emitter(node, emission_rate=10.0, lifespan=10.0)),
                  mb.pivt((0, 0, 0)))
    doc = parse(data)
    system = ParticleSystem(doc)
    transforms = evaluate_transforms(doc, 0)
    for _ in range(2):
        system.tick(0, transforms, 0.1)
    particles = system.snapshots()[0]
    assert len(particles) == 2
    for p in particles:
        np.testing.assert_allclose(p.position, [10, 0, 0], atol=1e-9)
        assert p.scale == pytest.approx(2.0)
    # simulation state itself stays in node space
    np.testing.assert_allclose(system.runtimes[0].particles[0].position, [0, 0, 0])


def test_emitters_on_one_pivot_draw_different_streams():
    emitters = [mb.emitter(mb.node(f"Smoke{i}", i), emission_rate=4.0, lifespan=10.0,
                           width=1.0, length=1.0) for i in range(2)]
    doc = parse(mb.mdx(mb.vers(), mb.pre2(*emitters), mb.pivt((0, 0, 0), (0, 0, 0))))
    system = ParticleSystem(doc)
    system.tick(0, evaluate_transforms(doc, 0), 1.0)
    first, second = system.snapshots()
    assert len(first) == len(second) == 4
    assert not np.allclose([p.position for p in first], [p.position for p in second])

    again = ParticleSystem(doc)
    again.tick(0, evaluate_transforms(doc, 0), 1.0)
    np.testing.assert_allclose([p.position for p in again.snapshots()[0]],
                               [p.position for p in first])

"""
MPM kinetic channel - packed kinetic uniforms and the per-particle force function.

Mirrors kinetic_mpm.physics_world.kinetic.kinetic_force on the compute backend.
"""
import math

import numpy as np
import taichi as ti

from .mpm_kernels import safe_normalize

# Gesture ids
GESTURE_NONE = 0
SWELL = 1
ATTACK = 2
RELEASE = 3
SUSTAIN = 4
ACCENT = 5
BREATH = 6

# Personality ids
CALM = 0
ENERGETIC = 1
FLOWING = 2
AGGRESSIVE = 3
GENTLE = 4
CHAOTIC = 5
RHYTHMIC = 6
ETHEREAL = 7

# Float uniform slots
F_GESTURE_INTENSITY = 0
F_PROGRESS = 1
F_SECONDARY_INTENSITY = 2
F_PERSONALITY_BLEND = 3
F_INTENSITY = 4
F_CHAOS = 5
F_RESPONSIVENESS = 6
F_ENERGY = 7
F_BEAT = 8
NUM_FLOATS = 9

# Int uniform slots
I_GESTURE = 0
I_SECONDARY = 1
I_PERSONALITY = 2
I_GESTURE_ON = 3
I_PERSONALITY_ON = 4
I_TURBULENCE_ON = 5
I_RESPONSIVENESS_ON = 6
NUM_INTS = 7

TWO_PI = 2.0 * math.pi


@ti.func
def smoothstep(edge0, edge1, x):
    t = ti.min(ti.max((x - edge0) / (edge1 - edge0), 0.0), 1.0)
    return t * t * (3.0 - 2.0 * t)


@ti.data_oriented
class KineticUniforms:
    """Kinetic state snapshot uploaded once per frame."""

    def __init__(self):
        self.floats = ti.field(dtype=ti.f32, shape=NUM_FLOATS)
        self.ints = ti.field(dtype=ti.i32, shape=NUM_INTS)

    def upload(self, state):
        """Pack a KineticState (validated by the caller) into the uniform fields."""
        floats = np.zeros(NUM_FLOATS, dtype=np.float32)
        floats[F_GESTURE_INTENSITY] = state.gesture_intensity
        floats[F_PROGRESS] = state.gesture_progress
        floats[F_SECONDARY_INTENSITY] = state.secondary_intensity
        floats[F_PERSONALITY_BLEND] = state.personality_blend
        floats[F_INTENSITY] = state.intensity
        floats[F_CHAOS] = state.chaos
        floats[F_RESPONSIVENESS] = state.responsiveness
        floats[F_ENERGY] = state.energy
        floats[F_BEAT] = state.beat_phase
        ints = np.zeros(NUM_INTS, dtype=np.int32)
        ints[I_GESTURE] = int(state.gesture)
        ints[I_SECONDARY] = int(state.secondary_gesture)
        ints[I_PERSONALITY] = int(state.personality)
        ints[I_GESTURE_ON] = int(state.gesture_enabled)
        ints[I_PERSONALITY_ON] = int(state.personality_enabled)
        ints[I_TURBULENCE_ON] = int(state.turbulence_enabled)
        ints[I_RESPONSIVENESS_ON] = int(state.responsiveness_enabled)
        self.floats.from_numpy(floats)
        self.ints.from_numpy(ints)

    @ti.func
    def gesture_force(self, gesture, intensity, norm_pos, vel, time):
        center_dir = safe_normalize(norm_pos)
        progress = self.floats[F_PROGRESS]
        force = ti.Vector.zero(ti.f32, 3)
        if gesture == SWELL:
            phase = ti.sin(progress * math.pi)
            force = center_dir * intensity * phase * 2.0 + ti.Vector([0.0, intensity * 0.5 * phase, 0.0])
        elif gesture == ATTACK:
            phase = smoothstep(0.0, 0.2, progress) * smoothstep(1.0, 0.3, progress)
            force = center_dir * intensity * phase * 5.0 + ti.Vector([0.0, intensity * 2.0 * phase, 0.0])
        elif gesture == RELEASE:
            phase = smoothstep(0.0, 1.0, progress)
            force = -vel * intensity * phase * 0.5 + ti.Vector([0.0, -intensity * 0.3 * phase, 0.0])
        elif gesture == SUSTAIN:
            oscillation = ti.sin(time * 2.0) * 0.5 + 0.5
            force = center_dir * intensity * oscillation * 0.8
        elif gesture == ACCENT:
            phase = smoothstep(0.0, 0.1, progress) * smoothstep(0.4, 0.1, progress)
            beat = self.floats[F_BEAT] * TWO_PI
            pulse_dir = center_dir * 0.5 + ti.Vector([ti.sin(beat), ti.cos(beat), 0.0]) * 0.5
            force = pulse_dir * intensity * phase * 8.0
        elif gesture == BREATH:
            phase = ti.sin(progress * TWO_PI)
            force = ti.Vector([
                ti.sin(time * 1.5 + norm_pos[0] * 2.0) * intensity * 0.3,
                phase * intensity * 0.6,
                0.0,
            ])
        return force

    @ti.func
    def personality(self, time):
        """(force multiplier, damping) of the active personality, blended from neutral."""
        kind = self.ints[I_PERSONALITY]
        multiplier = 1.0
        damping = 0.0
        if kind == CALM:
            multiplier, damping = 0.6, 0.7
        elif kind == ENERGETIC:
            multiplier, damping = 1.5, 0.2
        elif kind == FLOWING:
            multiplier, damping = 1.0, 0.1
        elif kind == AGGRESSIVE:
            multiplier, damping = 2.0, 0.4
        elif kind == GENTLE:
            multiplier, damping = 0.5, 0.8
        elif kind == CHAOTIC:
            multiplier, damping = (ti.sin(time * 3.7) * 0.5 + 1.0) * 1.5, 0.3
        elif kind == RHYTHMIC:
            beat_phase = self.floats[F_BEAT]
            beat = smoothstep(0.0, 0.1, beat_phase) * smoothstep(0.3, 0.1, beat_phase)
            multiplier, damping = 0.8 + beat * 0.7, 0.5
        elif kind == ETHEREAL:
            multiplier, damping = 0.4, 0.9
        blend = self.floats[F_PERSONALITY_BLEND]
        return ti.Vector([1.0 + (multiplier - 1.0) * blend, damping * blend])

    @ti.func
    def kinetic_force(self, pos, vel, center, grid_size, time):
        """
        Kinetic-channel force on one particle.

        Args:
            pos: Grid-space particle position
            vel: Particle velocity
            center: Grid-space simulation center
            grid_size: Normalisation length (largest grid axis)
            time: Elapsed simulation time
        """
        total = ti.Vector.zero(ti.f32, 3)
        norm_pos = (pos - center) / grid_size
        macro_intensity = self.floats[F_INTENSITY]

        if self.ints[I_GESTURE_ON] == 1:
            w1 = self.floats[F_GESTURE_INTENSITY]
            w2 = self.floats[F_SECONDARY_INTENSITY]
            g1 = self.ints[I_GESTURE]
            g2 = self.ints[I_SECONDARY]
            if g1 == GESTURE_NONE:
                w1 = 0.0
            if g2 == GESTURE_NONE:
                w2 = 0.0
            if w1 + w2 > 0.0:
                blended = ti.Vector.zero(ti.f32, 3)
                if w1 > 0.0:
                    blended += w1 * self.gesture_force(g1, w1 * macro_intensity * 2.0, norm_pos, vel, time)
                if w2 > 0.0:
                    blended += w2 * self.gesture_force(g2, w2 * macro_intensity * 2.0, norm_pos, vel, time)
                blended /= w1 + w2
                modulation = ti.Vector([1.0, 0.0])
                if self.ints[I_PERSONALITY_ON] == 1:
                    modulation = self.personality(time)
                intensity = ti.max(w1, w2) * macro_intensity * 2.0
                total += blended * modulation[0] - vel * modulation[1] * 0.1 * intensity

        if self.ints[I_TURBULENCE_ON] == 1:
            amplitude = self.floats[F_CHAOS] * self.floats[F_ENERGY] * 0.8
            t = time * 0.5
            total += ti.Vector([
                ti.sin(pos[0] * 0.5 + t) * ti.cos(pos[1] * 0.5),
                ti.sin(pos[0] * 1.5 + t * 1.3) * ti.cos(pos[2] * 1.5),
                ti.sin(pos[1] * 3.0 + t * 1.7) * ti.cos(pos[0] * 3.0),
            ]) * amplitude

        if self.ints[I_RESPONSIVENESS_ON] == 1:
            total *= 0.5 + 1.5 * self.floats[F_RESPONSIVENESS]
        return total

    @ti.kernel
    def _sample(self,
                positions: ti.types.ndarray(),
                velocities: ti.types.ndarray(),
                center: ti.types.ndarray(),
                grid_size: ti.f32,
                time: ti.f32,
                out: ti.types.ndarray()):
        c = ti.Vector([center[0], center[1], center[2]])
        for i in range(positions.shape[0]):
            pos = ti.Vector([positions[i, 0], positions[i, 1], positions[i, 2]])
            vel = ti.Vector([velocities[i, 0], velocities[i, 1], velocities[i, 2]])
            f = self.kinetic_force(pos, vel, c, grid_size, time)
            for d in ti.static(range(3)):
                out[i, d] = f[d]

    def sample(self, positions, velocities, center, grid_size: float, time: float = 0.0) -> np.ndarray:
        """Evaluate the kinetic force for (N, 3) probe particles."""
        positions = np.ascontiguousarray(positions, dtype=np.float32).reshape(-1, 3)
        velocities = np.ascontiguousarray(velocities, dtype=np.float32).reshape(-1, 3)
        center = np.ascontiguousarray(center, dtype=np.float32).reshape(3)
        out = np.zeros_like(positions)
        self._sample(positions, velocities, center, grid_size, time, out)
        return out

"""Kinetic force channel: gesture, personality and macro-turbulence forces driven by external state."""

from __future__ import annotations

from dataclasses import dataclass, fields, replace
from enum import IntEnum

import numpy as np


class Gesture(IntEnum):
    NONE = 0
    SWELL = 1
    ATTACK = 2
    RELEASE = 3
    SUSTAIN = 4
    ACCENT = 5
    BREATH = 6


class Personality(IntEnum):
    CALM = 0
    ENERGETIC = 1
    FLOWING = 2
    AGGRESSIVE = 3
    GENTLE = 4
    CHAOTIC = 5
    RHYTHMIC = 6
    ETHEREAL = 7


# (force multiplier, velocity damping) for the personalities with constant modulation
PERSONALITY_PROFILES = {
    Personality.CALM: (0.6, 0.7),
    Personality.ENERGETIC: (1.5, 0.2),
    Personality.FLOWING: (1.0, 0.1),
    Personality.AGGRESSIVE: (2.0, 0.4),
    Personality.GENTLE: (0.5, 0.8),
    Personality.CHAOTIC: (1.5, 0.3),
    Personality.RHYTHMIC: (0.8, 0.5),
    Personality.ETHEREAL: (0.4, 0.9),
}

TURBULENCE_AMPLITUDE = 0.8


@dataclass(frozen=True)
class KineticState:
    """Per-frame snapshot written by the audio/gesture producer before step()."""

    gesture: Gesture = Gesture.NONE
    gesture_intensity: float = 0.0  # [0, 1]
    gesture_progress: float = 0.0  # [0, 1] through the gesture
    secondary_gesture: Gesture = Gesture.NONE
    secondary_intensity: float = 0.0  # [0, 1]
    personality: Personality = Personality.FLOWING
    personality_blend: float = 1.0  # [0, 1], 0 = neutral
    intensity: float = 0.0  # macros, all [0, 1]
    chaos: float = 0.0
    smoothness: float = 0.0
    responsiveness: float = 0.0
    energy: float = 0.0
    coherence: float = 0.0
    beat_phase: float = 0.0  # [0, 1) within the beat
    downbeat_phase: float = 0.0  # [0, 1) within the measure
    groove_intensity: float = 0.0
    gesture_enabled: bool = True
    personality_enabled: bool = True
    turbulence_enabled: bool = True
    responsiveness_enabled: bool = True

    def validated(self) -> "KineticState":
        """Clamp unit-range values and replace non-finite numbers with 0."""
        values = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name in ("gesture", "secondary_gesture"):
                values[f.name] = _enum_or(Gesture, value, Gesture.NONE)
            elif f.name == "personality":
                values[f.name] = _enum_or(Personality, value, Personality.FLOWING)
            elif isinstance(value, bool):
                values[f.name] = value
            else:
                value = float(value)
                if not np.isfinite(value):
                    print(f"[KineticState] Warning: {f.name} is not finite, using 0")
                    value = 0.0
                values[f.name] = min(max(value, 0.0), 1.0)
        return replace(self, **values)


def _enum_or(enum_cls, value, default):
    if not np.isfinite(float(value)) or int(value) not in enum_cls._value2member_map_:
        return default
    return enum_cls(int(value))


def smoothstep(edge0: float, edge1: float, x: float) -> float:
    """Hermite step; reversed edges give a falling step."""
    t = min(max((x - edge0) / (edge1 - edge0), 0.0), 1.0)
    return t * t * (3.0 - 2.0 * t)


def _normalize(v: np.ndarray) -> np.ndarray:
    n = np.linalg.norm(v)
    return v / n if n > 1e-6 else np.zeros(3)


def gesture_force(gesture: Gesture, intensity: float, progress: float, norm_pos: np.ndarray,
                  velocity: np.ndarray, beat_phase: float, time: float) -> np.ndarray:
    """Closed-form force pattern of a single gesture."""
    center_dir = _normalize(norm_pos)
    force = np.zeros(3)
    if gesture == Gesture.SWELL:
        phase = np.sin(progress * np.pi)
        force = center_dir * intensity * phase * 2.0 + np.array([0.0, intensity * 0.5 * phase, 0.0])
    elif gesture == Gesture.ATTACK:
        phase = smoothstep(0.0, 0.2, progress) * smoothstep(1.0, 0.3, progress)
        force = center_dir * intensity * phase * 5.0 + np.array([0.0, intensity * 2.0 * phase, 0.0])
    elif gesture == Gesture.RELEASE:
        phase = smoothstep(0.0, 1.0, progress)
        force = -velocity * intensity * phase * 0.5 + np.array([0.0, -intensity * 0.3 * phase, 0.0])
    elif gesture == Gesture.SUSTAIN:
        oscillation = np.sin(time * 2.0) * 0.5 + 0.5
        force = center_dir * intensity * oscillation * 0.8
    elif gesture == Gesture.ACCENT:
        phase = smoothstep(0.0, 0.1, progress) * smoothstep(0.4, 0.1, progress)
        beat_dir = np.array([np.sin(beat_phase * 2.0 * np.pi), np.cos(beat_phase * 2.0 * np.pi), 0.0])
        pulse_dir = center_dir * 0.5 + beat_dir * 0.5
        force = pulse_dir * intensity * phase * 8.0
    elif gesture == Gesture.BREATH:
        phase = np.sin(progress * 2.0 * np.pi)
        force = np.array([
            np.sin(time * 1.5 + norm_pos[0] * 2.0) * intensity * 0.3,
            phase * intensity * 0.6,
            0.0,
        ])
    return force


def personality_modulation(personality: Personality, blend: float, beat_phase: float,
                           time: float) -> tuple:
    """(force multiplier, damping) of a personality, blended in from neutral (1, 0)."""
    multiplier, damping = PERSONALITY_PROFILES.get(Personality(personality), (1.0, 0.0))
    if personality == Personality.CHAOTIC:
        multiplier = (np.sin(time * 3.7) * 0.5 + 1.0) * 1.5
    elif personality == Personality.RHYTHMIC:
        beat = smoothstep(0.0, 0.1, beat_phase) * smoothstep(0.3, 0.1, beat_phase)
        multiplier = 0.8 + beat * 0.7
    multiplier = 1.0 + (multiplier - 1.0) * blend
    return multiplier, damping * blend


def macro_turbulence(position: np.ndarray, chaos: float, energy: float, time: float) -> np.ndarray:
    """Three octaves of separable sin/cos noise, amplitude chaos * energy."""
    amplitude = chaos * energy * TURBULENCE_AMPLITUDE
    t = time * 0.5
    x, y, z = position
    return np.array([
        np.sin(x * 0.5 + t) * np.cos(y * 0.5),
        np.sin(x * 1.5 + t * 1.3) * np.cos(z * 1.5),
        np.sin(y * 3.0 + t * 1.7) * np.cos(x * 3.0),
    ]) * amplitude


def kinetic_force(position, velocity, grid_center, grid_size: float, state: KineticState,
                  time: float = 0.0) -> np.ndarray:
    """
    Total kinetic-channel force on one particle.

    Args:
        position: Grid-space particle position
        velocity: Particle velocity
        grid_center: Grid-space center of the simulation
        grid_size: Normalisation length (largest grid axis)
        state: Kinetic uniforms for this frame
        time: Elapsed simulation time in seconds
    """
    position = np.asarray(position, dtype=np.float64)
    velocity = np.asarray(velocity, dtype=np.float64)
    norm_pos = (position - np.asarray(grid_center, dtype=np.float64)) / grid_size
    total = np.zeros(3)

    if state.gesture_enabled:
        weights = []
        forces = []
        for gesture, weight in ((state.gesture, state.gesture_intensity),
                                (state.secondary_gesture, state.secondary_intensity)):
            if gesture == Gesture.NONE or weight <= 0.0:
                continue
            intensity = weight * state.intensity * 2.0
            forces.append(gesture_force(gesture, intensity, state.gesture_progress, norm_pos,
                                        velocity, state.beat_phase, time))
            weights.append(weight)
        if weights:
            blended = sum(w * f for w, f in zip(weights, forces)) / sum(weights)
            multiplier, damping = 1.0, 0.0
            if state.personality_enabled:
                multiplier, damping = personality_modulation(state.personality, state.personality_blend,
                                                             state.beat_phase, time)
            intensity = max(weights) * state.intensity * 2.0
            total += blended * multiplier - velocity * damping * 0.1 * intensity

    if state.turbulence_enabled:
        total += macro_turbulence(position, state.chaos, state.energy, time)

    if state.responsiveness_enabled:
        total *= 0.5 + (2.0 - 0.5) * state.responsiveness
    return total

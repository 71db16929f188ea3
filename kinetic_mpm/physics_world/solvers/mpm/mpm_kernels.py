"""
MPM Taichi functions shared by the transfer kernels: quadratic B-spline
stencil, finite-value checks and the tri-noise field.
"""
import numpy as np
import taichi as ti


@ti.func
def stencil_base(x):
    """
    Lower corner of the 3x3x3 node neighbourhood of a grid-space position.

    Nodes sit at cell centers (i + 0.5), so the neighbourhood of x starts one
    cell below floor(x).
    """
    return ti.cast(ti.floor(x), ti.i32) - 1


@ti.func
def stencil_weights(x):
    """
    Quadratic B-spline weights for the three nodes along each axis.

    Returns:
        3x3 matrix W, W[k, d] = weight of node offset k along axis d
    """
    d = x - ti.floor(x) - 0.5
    w0 = 0.5 * (0.5 - d) ** 2
    w1 = 0.75 - d ** 2
    w2 = 0.5 * (0.5 + d) ** 2
    return ti.Matrix.rows([w0, w1, w2])


@ti.func
def is_finite(a: ti.f32) -> ti.i32:
    """1 if a is neither NaN nor infinite (exponent bits not all set)."""
    bits = ti.bit_cast(a, ti.i32)
    return ti.cast((bits & 0x7F800000) != 0x7F800000, ti.i32)


@ti.func
def is_finite_vec3(v) -> ti.i32:
    ok = 1
    for d in ti.static(range(3)):
        if is_finite(v[d]) == 0:
            ok = 0
    return ok


@ti.func
def is_finite_mat3(m) -> ti.i32:
    ok = 1
    for i, j in ti.static(ti.ndrange(3, 3)):
        if is_finite(m[i, j]) == 0:
            ok = 0
    return ok


@ti.func
def safe_normalize(v):
    """Unit vector along v, or zero when v is (nearly) zero."""
    n = v.norm()
    result = ti.Vector.zero(ti.f32, 3)
    if n > 1e-6:
        result = v / n
    return result


@ti.func
def _tri(x):
    return ti.abs(x - ti.floor(x) - 0.5)


@ti.func
def _tri3(p):
    return ti.Vector([
        _tri(p[2] + _tri(p[1])),
        _tri(p[2] + _tri(p[0])),
        _tri(p[1] + _tri(p[0])),
    ])


@ti.func
def tri_noise_3d(position, speed: ti.f32, time: ti.f32):
    """
    Cheap fractal triangle-wave noise (4 octaves), components roughly in [0, 0.6].

    Args:
        position: Sample position
        speed: Animation speed multiplier
        time: Elapsed time
    """
    p = position
    z = 1.4
    rz = ti.Vector.zero(ti.f32, 3)
    bp = position
    for _ in ti.static(range(4)):
        dg = _tri3(bp * 2.0)
        p += dg + time * 0.1 * speed
        bp *= 1.8
        z *= 1.5
        p *= 1.2
        inner = _tri(ti.Vector([p[1], p[2], p[0]]))
        middle = _tri(p + inner)
        t = _tri(ti.Vector([p[2], p[0], p[1]]) + middle)
        rz += t / z
        bp += 0.14
    return rz


def tri_noise_3d_np(position, speed: float, time: float) -> np.ndarray:
    """Host-side mirror of :func:`tri_noise_3d` for a single position."""

    def tri(x):
        return np.abs(x - np.floor(x) - 0.5)

    p = np.asarray(position, dtype=np.float64).copy()
    bp = p.copy()
    z = 1.4
    rz = np.zeros(3)
    for _ in range(4):
        bp2 = bp * 2.0
        dg = np.array([
            tri(bp2[2] + tri(bp2[1])),
            tri(bp2[2] + tri(bp2[0])),
            tri(bp2[1] + tri(bp2[0])),
        ])
        p += dg + time * 0.1 * speed
        bp *= 1.8
        z *= 1.5
        p *= 1.2
        inner = tri(p[[1, 2, 0]])
        middle = tri(p + inner)
        t = tri(p[[2, 0, 1]] + middle)
        rz += t / z
        bp += 0.14
    return rz

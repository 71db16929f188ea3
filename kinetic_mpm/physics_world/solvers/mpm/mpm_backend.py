"""
Taichi runtime initialisation shared by the CLI, the container and the tests.
"""
import os
from typing import Optional

import taichi as ti

_ACTIVE_ARCH: Optional[str] = None

_ARCHES = ("gpu", "cpu", "auto")


def init_taichi(arch: str = "auto", debug: bool = False) -> str:
    """
    Initialise Taichi once per process.

    Args:
        arch: 'gpu', 'cpu' or 'auto' (GPU with CPU fallback)
        debug: Enable Taichi bounds checking

    Returns:
        The backend actually in use ('gpu' or 'cpu')
    """
    global _ACTIVE_ARCH
    arch = arch.lower()
    if arch not in _ARCHES:
        raise ValueError(f"Unknown Taichi arch '{arch}', expected one of {_ARCHES}")
    if _ACTIVE_ARCH is not None:
        return _ACTIVE_ARCH

    os.environ.setdefault('TI_LOG_LEVEL', 'error')  # Suppress Taichi logs
    # fast_math would fold the NaN guards in the transfer kernels away
    options = dict(default_fp=ti.f32, fast_math=False, debug=debug)
    if arch == "cpu":
        ti.init(arch=ti.cpu, **options)
        _ACTIVE_ARCH = "cpu"
    else:
        try:
            ti.init(arch=ti.gpu, **options)
            _ACTIVE_ARCH = "gpu"
        except Exception as e:
            if arch == "gpu":
                print(f"[Taichi] Warning: GPU init failed: {e}, falling back to CPU")
            ti.init(arch=ti.cpu, **options)
            _ACTIVE_ARCH = "cpu"
    print(f"[Taichi] Using {_ACTIVE_ARCH.upper()} backend")
    return _ACTIVE_ARCH


def active_arch() -> Optional[str]:
    return _ACTIVE_ARCH

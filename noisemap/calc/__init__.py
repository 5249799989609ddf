"""NMPB attenuation terms, path engine and grid scheduling (no I/O)."""

from .nmpb import (
    alpha_iso9613_1,
    compute_aatm,
    compute_adiv,
    ground_attenuation_favorable,
    ground_attenuation_homogeneous,
)

__all__ = [
    "alpha_iso9613_1",
    "compute_aatm",
    "compute_adiv",
    "ground_attenuation_favorable",
    "ground_attenuation_homogeneous",
]

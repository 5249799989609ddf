"""NMPB-2008 attenuation terms, per frequency band.

Every function taking ``freqs`` is vectorised over a numpy array of band
centre frequencies and returns one value per band, in dB.
"""

from __future__ import annotations

import math

import numpy as np

from noisemap.model.settings import ROSE_SECTORS

SOUND_SPEED = 340.0
# Height of the direct-to-ground transition used by the G'path correction.
GROUND_TRANSITION = 30.0
# Ground coefficient under the source, road surfaces are reflective.
G_SOURCE = 0.0
MAX_DIFFRACTION_DB = 25.0
# Lowest ground attenuation, the favourable bound tends to -3 * 3 dB on long paths.
MAX_GROUND_GAIN = 9.0

T_REF = 293.15
T_TRIPLE = 273.16
P_REF = 101.325


def compute_adiv(d):
    return 20.0 * np.log10(d) + 11.0


def compute_aatm(alpha, d):
    return alpha * d


def alpha_iso9613_1(freq, temperature_c, humidity, pressure_kpa=P_REF):
    """Pure-tone air absorption coefficient (dB/m), ISO 9613-1 equation 5."""
    f = np.asarray(freq, dtype=np.float64)
    t = temperature_c + 273.15
    pa_pr = pressure_kpa / P_REF
    psat = 10.0 ** (-6.8346 * (T_TRIPLE / t) ** 1.261 + 4.6151)
    h = humidity * psat / pa_pr
    fr_o = pa_pr * (24.0 + 4.04e4 * h * (0.02 + h) / (0.391 + h))
    fr_n = pa_pr * (t / T_REF) ** -0.5 * (9.0 + 280.0 * h * math.exp(-4.170 * ((t / T_REF) ** (-1.0 / 3.0) - 1.0)))
    classical = 1.84e-11 / pa_pr * (t / T_REF) ** 0.5
    vib_o = 0.01275 * math.exp(-2239.1 / t) / (fr_o + f * f / fr_o)
    vib_n = 0.1068 * math.exp(-3352.0 / t) / (fr_n + f * f / fr_n)
    return 8.686 * f * f * (classical + (t / T_REF) ** -2.5 * (vib_o + vib_n))


def g_path_prime(g_path: float, zs: float, zr: float, dp: float) -> float:
    """Ground factor corrected for short paths close to the source."""
    limit = GROUND_TRANSITION * (zs + zr)
    if dp <= limit:
        ratio = dp / limit if limit > 0 else 1.0
        return g_path * ratio + G_SOURCE * (1.0 - ratio)
    return g_path


def _ground_term(gw: float, zs: float, zr: float, dp: float, freqs: np.ndarray) -> np.ndarray:
    f = freqs
    k = 2.0 * np.pi * f / SOUND_SPEED
    gw26 = gw ** 2.6
    w = 0.0185 * f ** 2.5 * gw26 / (f ** 1.5 * gw26 + 1.3e3 * f ** 0.75 * gw ** 1.3 + 1.16e6)
    cf = dp * (1.0 + 3.0 * w * dp * np.exp(-np.sqrt(w * dp))) / (1.0 + w * dp)
    root = np.sqrt(2.0 * cf / k)
    term_s = zs * zs - root * zs + cf / k
    term_r = zr * zr - root * zr + cf / k
    return -10.0 * np.log10(4.0 * k * k / (dp * dp) * term_s * term_r)


def ground_attenuation_homogeneous(
    g_path: float, zs: float, zr: float, dp: float, freqs: np.ndarray, source_side: bool = True
) -> np.ndarray:
    """Ground attenuation with straight rays.

    The ground term takes ``g_path`` as is, only the lower bound uses the
    factor corrected near the source.
    """
    zs, zr = max(zs, 0.0), max(zr, 0.0)
    if g_path == 0.0:
        return np.full(len(freqs), -3.0)
    gm = g_path_prime(g_path, zs, zr, dp) if source_side else g_path
    return np.maximum(_ground_term(g_path, zs, zr, dp, freqs), -3.0 * (1.0 - gm))


def ground_attenuation_favorable(
    g_path: float, zs: float, zr: float, dp: float, freqs: np.ndarray, source_side: bool = True
) -> np.ndarray:
    """Ground attenuation with downward refracted rays.

    ``source_side`` applies the G'path correction to the lower bound, which
    only holds when ``zs`` is an emission point standing on the road surface.
    """
    zs, zr = max(zs, 0.0), max(zr, 0.0)
    if g_path == 0.0:
        return np.full(len(freqs), -3.0)
    height = max(zs + zr, 1e-6)
    dzs = 2e-4 * (zs / height) ** 2 * dp * dp / 2.0
    dzr = 2e-4 * (zr / height) ** 2 * dp * dp / 2.0
    dzt = 6e-3 * dp / height
    gm = g_path_prime(g_path, zs, zr, dp) if source_side else g_path
    bound = -3.0 * (1.0 - gm)
    if dp > GROUND_TRANSITION * height:
        bound *= 1.0 + 2.0 * (1.0 - GROUND_TRANSITION * height / dp)
    term = _ground_term(g_path, zs + dzs + dzt, zr + dzr + dzt, dp, freqs)
    return np.maximum(term, bound)


def diffraction_delta(delta: float, freqs: np.ndarray, e: float = 0.0, ch: float = 1.0) -> np.ndarray:
    """Diffraction attenuation for path difference ``delta``.

    ``e`` is the distance between the first and the last diffraction edge,
    zero for a single edge.
    """
    lam = SOUND_SPEED / freqs
    if e > 0.0:
        r = (5.0 * lam / e) ** 2
        c2 = (1.0 + r) / (1.0 / 3.0 + r)
    else:
        c2 = np.ones_like(lam)
    x = 40.0 / lam * c2 * delta
    out = np.zeros(len(freqs))
    active = x >= -2.0
    out[active] = 10.0 * ch * np.log10(3.0 + x[active])
    return np.clip(out, 0.0, MAX_DIFFRACTION_DB)


def curved_length(chord: float, gamma: float) -> float:
    ratio = min(1.0, chord / (2.0 * gamma))
    return 2.0 * gamma * math.asin(ratio)


def path_difference(points: list[tuple[float, float]]) -> tuple[float, float]:
    """Straight path difference and edge spread ``e`` of a (distance, z) polyline."""
    legs = [math.dist(a, b) for a, b in zip(points[:-1], points[1:])]
    direct = math.dist(points[0], points[-1])
    return sum(legs) - direct, sum(legs[1:-1])


def curved_path_difference(points: list[tuple[float, float]]) -> float:
    """Path difference with rays bent downward, radius max(1000, 8d)."""
    direct = math.dist(points[0], points[-1])
    gamma = max(1000.0, 8.0 * direct)
    legs = [curved_length(math.dist(a, b), gamma) for a, b in zip(points[:-1], points[1:])]
    return sum(legs) - curved_length(direct, gamma)


def delta_ground(agr: np.ndarray, dif_image: np.ndarray, dif_direct: np.ndarray) -> np.ndarray:
    """Ground correction of one side of a diffracted path."""
    return -20.0 * np.log10(1.0 + (10.0 ** (-agr / 20.0) - 1.0) * 10.0 ** (-(dif_image - dif_direct) / 20.0))


def mean_plane(profile: list[tuple[float, float]]) -> tuple[float, float]:
    """Least squares line z = a + b*d through a piecewise linear ground profile."""
    sl = sd = sdd = sz = szd = 0.0
    for (d0, z0), (d1, z1) in zip(profile[:-1], profile[1:]):
        length = d1 - d0
        if length <= 0.0:
            continue
        m = (z1 - z0) / length
        sq = d1 * d1 - d0 * d0
        cu = d1 ** 3 - d0 ** 3
        sl += length
        sd += sq / 2.0
        sdd += cu / 3.0
        sz += length * (z0 + z1) / 2.0
        szd += z0 * sq / 2.0 + m * (cu / 3.0 - d0 * sq / 2.0)
    if sl == 0.0:
        z = profile[0][1] if profile else 0.0
        return z, 0.0
    den = sl * sdd - sd * sd
    b = (sl * szd - sd * sz) / den if den != 0.0 else 0.0
    return (sz - b * sd) / sl, b


def height_above(plane: tuple[float, float], d: float, z: float) -> float:
    a, b = plane
    return (z - (a + b * d)) / math.sqrt(1.0 + b * b)


def project_on(plane: tuple[float, float], d: float, z: float) -> tuple[float, float]:
    a, b = plane
    t = (d + b * (z - a)) / (1.0 + b * b)
    return t, a + b * t


def mirror(plane: tuple[float, float], d: float, z: float) -> tuple[float, float]:
    pd, pz = project_on(plane, d, z)
    return 2.0 * pd - d, 2.0 * pz - z


def rose_index(dx: float, dy: float) -> int:
    """Sector of the propagation bearing, sector 0 centred on north, clockwise."""
    bearing = math.degrees(math.atan2(dx, dy)) % 360.0
    return int(((bearing + 180.0 / ROSE_SECTORS) % 360.0) // (360.0 / ROSE_SECTORS))


def blend(p: float, energy_favorable: np.ndarray, energy_homogeneous: np.ndarray) -> np.ndarray:
    return p * energy_favorable + (1.0 - p) * energy_homogeneous

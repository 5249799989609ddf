"""Outdoor noise propagation (NMPB-2008) from point and line sources to receivers."""

from .calc.propagation import PropagationProcess, PropagationScene, build_scene
from .calc.scheduler import GridScheduler, RunResult, SceneData
from .errors import ConfigurationError, GeometryError, NoiseMapError
from .model.entities import (
    FREQ_BANDS,
    Building,
    Envelope,
    GroundArea,
    PathType,
    PropagationPath,
    Receiver,
    Source,
    db_from_energy,
    energy_from_db,
    energy_sum,
)
from .model.settings import PropagationSettings, build_settings

__all__ = [
    "FREQ_BANDS",
    "Building",
    "ConfigurationError",
    "Envelope",
    "GeometryError",
    "GridScheduler",
    "GroundArea",
    "NoiseMapError",
    "PathType",
    "PropagationPath",
    "PropagationProcess",
    "PropagationScene",
    "PropagationSettings",
    "Receiver",
    "RunResult",
    "SceneData",
    "Source",
    "build_scene",
    "build_settings",
    "db_from_energy",
    "energy_from_db",
    "energy_sum",
]

from __future__ import annotations

from typing import Optional, Tuple

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from noisemap.errors import ConfigurationError
from noisemap.model.entities import FREQ_BANDS

ROSE_SECTORS = 16


class PropagationSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_src_dist: float = Field(250.0, gt=0, description="Maximum source to receiver distance (m)")
    max_ref_dist: float = Field(50.0, gt=0, description="Maximum distance of reflecting walls (m)")
    reflection_order: int = Field(0, ge=0)
    horizontal_diffraction: bool = True
    vertical_diffraction: bool = True
    maximum_error: float = Field(0.0, ge=0, description="Tolerated error of the pruned sum (dB)")
    noise_floor: Optional[float] = Field(None, description="Skip emission points below this level (dB)")
    min_rec_dist: float = Field(1.0, gt=0)
    wall_alpha: float = Field(0.0, ge=0, le=1)
    default_ground_g: float = Field(0.0, ge=0, le=1)
    favorable_rose: Tuple[float, ...] = Field(default_factory=lambda: (0.5,) * ROSE_SECTORS)
    grid_dim: int = Field(1, ge=1)
    workers: int = Field(1, ge=1)
    temperature_c: float = 15.0
    humidity: float = Field(70.0, gt=0, le=100)
    pressure_kpa: float = Field(101.325, gt=0)
    line_source_step: float = Field(10.0, gt=0)
    frequencies: Tuple[int, ...] = Field(default_factory=lambda: tuple(FREQ_BANDS))

    @field_validator("favorable_rose")
    @classmethod
    def validate_rose(cls, value: Tuple[float, ...]) -> Tuple[float, ...]:
        if len(value) != ROSE_SECTORS:
            raise ValueError(f"favorable_rose needs {ROSE_SECTORS} values, got {len(value)}")
        if any(not 0.0 <= p <= 1.0 for p in value):
            raise ValueError("favorable_rose values must be in [0, 1]")
        return value

    @field_validator("frequencies")
    @classmethod
    def validate_frequencies(cls, value: Tuple[int, ...]) -> Tuple[int, ...]:
        if not value:
            raise ValueError("frequencies must not be empty")
        if any(f <= 0 for f in value) or any(b <= a for a, b in zip(value[:-1], value[1:])):
            raise ValueError("frequencies must be positive and strictly increasing")
        return value

    @model_validator(mode="after")
    def validate_distances(self) -> "PropagationSettings":
        if self.min_rec_dist >= self.max_src_dist:
            raise ValueError("min_rec_dist must be lower than max_src_dist")
        return self

    @property
    def freqs(self) -> np.ndarray:
        return np.asarray(self.frequencies, dtype=np.float64)

    @property
    def band_count(self) -> int:
        return len(self.frequencies)


def build_settings(**values) -> PropagationSettings:
    try:
        return PropagationSettings(**values)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'settings'}: {err['msg']}" for err in exc.errors()
        )
        raise ConfigurationError(f"Invalid propagation settings ({problems})") from exc
